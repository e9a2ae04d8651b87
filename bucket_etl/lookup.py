import threading
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol


class Lookup(Protocol):
    def excluded(self, key: str) -> bool:
        ...

    def attributes(self, key: str) -> Dict[str, Any]:
        ...


class ReferenceLookup:
    """Shared, read-mostly reference data: exclusion list plus enrichment attributes.

    Updates land whenever an operator makes them, so two scans of the same
    bucket may disagree if an exclusion changed in between.
    """

    def __init__(
        self,
        excluded_keys: Iterable[str] = (),
        attributes: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ):
        self._excluded = set(excluded_keys)
        self._attributes: Dict[str, Dict[str, Any]] = {
            key: dict(values) for key, values in (attributes or {}).items()
        }
        self._lock = threading.Lock()

    def excluded(self, key: str) -> bool:
        with self._lock:
            return key in self._excluded

    def attributes(self, key: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._attributes.get(key, {}))

    def exclude(self, key: str) -> None:
        with self._lock:
            self._excluded.add(key)

    def include(self, key: str) -> bool:
        with self._lock:
            if key not in self._excluded:
                return False
            self._excluded.discard(key)
            return True

    def set_attributes(self, key: str, values: Mapping[str, Any]) -> None:
        with self._lock:
            self._attributes[key] = dict(values)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"excluded_keys": len(self._excluded), "enriched_keys": len(self._attributes)}
