import asyncio

from .config import settings
from .logger import logger
from .runtime import PipelineRuntime


def main() -> None:
    runtime = PipelineRuntime(settings)
    logger.info("runtime_starting", pipelines=list(runtime.schedulers), config=runtime.config.model_dump(mode="json"))
    try:
        asyncio.run(runtime.run_all())
    except KeyboardInterrupt:
        runtime.stop()
        logger.info("runtime_interrupted")


if __name__ == "__main__":
    main()
