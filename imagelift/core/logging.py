"""
Structured Logging with structlog

Pipeline events are snake_case names (job_submitted, stage_started,
stage_completed, stage_failed, source_released, job_completed, job_failed)
with key/value fields. While a job runs, its id and the label of the stage
being rendered are attached to every event from context variables, so
concurrent jobs can be told apart in one stream.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime
from contextvars import ContextVar

job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

_QUIET_LOGGERS = ("httpx", "asyncio", "PIL", "celery", "kombu", "aiosqlite")


def _job_context_processor(app_version: str):
    def add_job_context(
        logger: logging.Logger,
        method_name: str,
        event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
        event_dict["version"] = app_version
        # Explicit fields win over the ambient job
        for key, var in (("job_id", job_id_var), ("stage", stage_var)):
            value = var.get()
            if value:
                event_dict.setdefault(key, value)
        return event_dict

    return add_job_context


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    app_version: str = "1.0.0"
):
    """
    Configure structlog for the API process or a Celery worker.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: One JSON object per line when True, colored console output otherwise
        app_version: Stamped on every event
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            _job_context_processor(app_version),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Scope job and stage fields to a block; the previous values come back on exit.

        with LogContext(job_id=job.id):
            with LogContext(stage="8K"):
                logger.info("stage_started")
    """

    def __init__(self, job_id: Optional[str] = None, stage: Optional[str] = None):
        self.job_id = job_id
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        if self.job_id:
            self._tokens.append((job_id_var, job_id_var.set(self.job_id)))
        if self.stage:
            self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
        return False


def set_job_context(job_id: str, stage: Optional[str] = None):
    """Bind a job for the rest of the current context (Celery task bodies)."""
    job_id_var.set(job_id)
    if stage:
        stage_var.set(stage)


def clear_job_context():
    job_id_var.set(None)
    stage_var.set(None)
