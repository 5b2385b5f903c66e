"""Logging setup for kore-sampler runs.

Progress and diagnostics go to stderr so that stdout stays clean for the
JSON a `kore-sampler` command prints. Piping that JSON into a consumer
that exits early (`| head`, `| jq -e ...`) must not turn a finished
sample into a traceback, hence SafeStreamHandler.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# aiohttp logs every connection at DEBUG during a category/batch fan-out
NOISY_LOGGERS = ("aiohttp", "asyncio", "urllib3")


class SafeStreamHandler(logging.StreamHandler):
    """Stream handler that stops complaining once its stream is gone."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass
        except ValueError:
            pass  # write to closed file


def configure_safe_logging(level=logging.INFO, stream=None):
    """Attach one SafeStreamHandler to the root logger.

    Repeated calls reuse the installed handler and only adjust its level,
    so `main()` can be invoked several times in one process.

    Args:
        level: Threshold for kore_sampler records (default: INFO)
        stream: Destination stream (default: sys.stderr)
    """
    root = logging.getLogger()
    handler = next((h for h in root.handlers if isinstance(h, SafeStreamHandler)), None)
    if handler is None:
        handler = SafeStreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    handler.setLevel(level)
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
