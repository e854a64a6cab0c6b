"""Entry point wiring for the AWS cluster operator.

Builds a ClusterReconciler from environment configuration: manifests come
from a YAML store directory and AWS clients from the default credential
chain of boto3.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .events import EventRecorder
from .reconciler import ClusterReconciler, ReconcileResult
from .store import YAMLObjectStore

# LogRecord attributes that are not user-supplied context
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_reconciler(config: Config, recorder: EventRecorder | None = None) -> ClusterReconciler:
    """Create a reconciler backed by the manifest directory and real AWS clients."""
    return ClusterReconciler(
        store=YAMLObjectStore(config.store_dir),
        recorder=recorder or EventRecorder(),
        config=config,
    )


def reconcile_once(key: str) -> tuple[int, ReconcileResult | None]:
    """Run one reconciliation of an object.

    Returns:
        Exit code (0 for done or requeue, 1 for failure) and the result.
    """
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1, None

    logger.info(
        "Starting AWS cluster operator",
        extra={
            "region": config.region,
            "store_dir": str(config.store_dir),
            "event_notifications": config.enable_event_notifications,
        },
    )

    result = build_reconciler(config).reconcile(key)
    return (0 if result.success else 1), result
