"""CLI entry point: python -m changetail"""

import logging
import sys

from .config.settings import load_settings
from .exceptions import ConfigError, SinkWriteError, StorageError, StreamConnectionError, StreamError
from .jobs.stream_job import StreamJob
from .logging_setup import setup_logging
from .monitoring.metrics import start_metrics_server

logger = logging.getLogger("changetail")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging()
        logger.error(str(e))
        return EXIT_CONFIG

    setup_logging(settings.log_level, settings.log_format)
    start_metrics_server(settings.metrics_port)

    logger.info(
        f"Tailing change stream of {settings.feed_identity}",
        extra={"feed": settings.feed_identity, "with_resume": settings.with_resume}
    )
    try:
        StreamJob(settings).run()
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_CONFIG
    except StreamConnectionError as e:
        logger.error(f"failed to start change stream watch: {e}")
        return EXIT_FATAL
    except StorageError as e:
        logger.error(f"failed to fetch resume token: {e}")
        return EXIT_FATAL
    except SinkWriteError as e:
        logger.error(f"failed to create output file: {e}")
        return EXIT_FATAL
    except StreamError:
        # Logged by the job after the position was saved
        return EXIT_FATAL
    except KeyboardInterrupt:
        # SIGINT outside the delivery phase, e.g. during server selection
        logger.info("interrupted, exiting")
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - script entry
    sys.exit(main())
