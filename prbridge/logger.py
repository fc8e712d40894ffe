import logging
from typing import Any, Optional


_DEFAULT_LOGGER_NAME = "prbridge"
_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Returns a configured logger instance.

    - Uses StreamHandler
    - Prevents duplicate handlers
    - Defaults to INFO level
    - Safe to call multiple times
    """
    logger_name = name or _DEFAULT_LOGGER_NAME
    logger = logging.getLogger(logger_name)

    if not logger.handlers:
        logger.setLevel(logging.INFO)

        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)

        formatter = logging.Formatter(_LOG_FORMAT)
        handler.setFormatter(formatter)

        logger.addHandler(handler)

        # Prevent double logging if root logger is configured
        logger.propagate = False

    return logger


class ContextLogger(logging.LoggerAdapter):
    """
    Logger carrying correlation fields (trace_id, job_id, repo, pr_number,
    workspace_id, ...) that are appended to every message as key=value.

    Passed explicitly down the call chain; use bind() to derive a child
    with more fields.
    """

    def process(self, msg, kwargs):
        if self.extra:
            fields = " ".join(
                f"{k}={v}" for k, v in self.extra.items() if v is not None
            )
            if fields:
                msg = f"{msg} [{fields}]"
        return msg, kwargs

    def bind(self, **fields: Any) -> "ContextLogger":
        merged = dict(self.extra or {})
        merged.update(fields)
        return ContextLogger(self.logger, merged)


def bind(logger: logging.Logger, **fields: Any) -> ContextLogger:
    if isinstance(logger, ContextLogger):
        return logger.bind(**fields)
    return ContextLogger(logger, dict(fields))
