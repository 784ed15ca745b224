# log_setup.py
# Description: Loguru sink configuration and stdlib/uvicorn interception
#
# Imports
import logging
import sys
from typing import Optional
#
# 3rd-party imports
from loguru import logger
#
#######################################################################################################################

# Extra fields referenced by the text format; filled with "" when absent
_EXTRA_DEFAULTS = ("request_id", "job_id", "stage", "queue")

_configured = False


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (uvicorn, apscheduler, redis) into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        # Walk back past the logging module so loguru reports the real caller
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _ensure_log_extra_fields(record) -> bool:
    extra = record["extra"]
    for key in _EXTRA_DEFAULTS:
        extra.setdefault(key, "")
    return True


def _log_format(record) -> str:
    # Returning a template keeps braces inside messages (JSON payloads) out of the colorizer
    return (
        "<dim>{time:YYYY-MM-DD HH:mm:ss.SSS}</dim> | "
        "<level>{level: <8}</level> | "
        "<yellow>req={extra[request_id]}</yellow> <yellow>job={extra[job_id]}</yellow> "
        "<yellow>stage={extra[stage]}</yellow> <yellow>queue={extra[queue]}</yellow> | "
        "<blue>{name}</blue>:<magenta>{function}</magenta>:<cyan>{line}</cyan> - {message}\n{exception}"
    )


def setup_logging(level: str = "INFO", json_logs: bool = False, sink: Optional[object] = None) -> None:
    """Reset loguru to a single sink and intercept stdlib loggers.

    Safe to call more than once; later calls replace the sink.
    """
    global _configured
    logger.remove()
    target = sink if sink is not None else sys.stderr
    if json_logs:
        logger.add(target, level=level, serialize=True, filter=_ensure_log_extra_fields, enqueue=False)
    else:
        logger.add(
            target,
            level=level,
            format=_log_format,
            colorize=None,
            filter=_ensure_log_extra_fields,
            enqueue=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    if not _configured:
        logger.debug(f"Logging configured (level={level}, json={json_logs})")
    _configured = True

#
# End of log_setup.py
#######################################################################################################################
