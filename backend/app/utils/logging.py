"""
Structured logging for the case lifecycle service.

Every log record passes through structlog with the active correlation id and
the name of the lifecycle operation in progress attached. Development runs
render through rich; deployments emit one JSON object per line.

Audit records are written on dedicated loggers so they can be routed apart
from diagnostics:

- ``business``: lifecycle facts (initialization, transitions, status changes)
- ``security``: authorization outcomes such as role denials
- ``routes``: request entry and exit for the lifecycle endpoints
- ``persistence``: repository writes and connection state
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from backend.config.settings import get_settings


_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_active_operation: ContextVar[Optional[Dict[str, Any]]] = ContextVar("active_operation", default=None)

console = Console()

_RESERVED_KEYS = frozenset({"timestamp", "level", "logger", "correlation_id", "event"})


def add_correlation_id(logger, method_name, event_dict):
    """Attach the correlation id of the current request or task."""
    correlation_id = _correlation_id.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def add_utc_timestamp(logger, method_name, event_dict):
    stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    event_dict.setdefault("timestamp", stamp)
    return event_dict


def add_active_operation(logger, method_name, event_dict):
    """Copy the fields of the innermost ``performance_context`` into the record."""
    for key, value in (_active_operation.get() or {}).items():
        event_dict.setdefault(key, value)
    return event_dict


class LifecycleLogRenderer:
    """Final structlog processor: a JSON line or a rich markup line."""

    level_styles = {
        "DEBUG": "dim white",
        "INFO": "blue",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold red",
    }

    def __init__(self, use_json: bool = False):
        self.use_json = use_json

    def __call__(self, logger, method_name, event_dict):
        if self.use_json:
            return json.dumps(event_dict, default=str)
        return self.render_console(event_dict)

    def render_console(self, event_dict: Dict[str, Any]) -> str:
        level = str(event_dict.get("level", "info")).upper()
        style = self.level_styles.get(level, "white")

        segments = []
        if event_dict.get("timestamp"):
            segments.append(f"[dim]{event_dict['timestamp'][:19]}[/dim]")
        segments.append(f"[{style}]{level:8}[/{style}]")
        if event_dict.get("logger"):
            segments.append(f"[cyan]{escape(str(event_dict['logger']))}[/cyan]")
        if event_dict.get("correlation_id"):
            segments.append(f"[magenta]{escape(str(event_dict['correlation_id'])[:8])}[/magenta]")
        segments.append(f"[white]{escape(str(event_dict.get('event', '')))}[/white]")

        extras = " ".join(
            f"{key}={escape(str(value))}" for key, value in event_dict.items() if key not in _RESERVED_KEYS
        )
        if extras:
            segments.append(f"[dim]{extras}[/dim]")
        return " ".join(segments)


def setup_logging(
    level: str = "INFO",
    use_json: bool = False,
    log_file: Optional[Path] = None,
    enable_correlation_ids: bool = True
) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        level: Minimum level name, e.g. ``"INFO"``
        use_json: Emit JSON lines instead of rich console output
        log_file: Optional path that additionally receives plain-text records
        enable_correlation_ids: Attach the request correlation id to records
    """
    log_level = getattr(logging, level.upper())

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        add_utc_timestamp,
    ]
    if enable_correlation_ids:
        processors.append(add_correlation_id)
    processors.extend([add_active_operation, LifecycleLogRenderer(use_json=use_json)])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    if use_json:
        handlers = [logging.StreamHandler(sys.stdout)]
    else:
        # structlog already stamps the time
        handlers = [RichHandler(console=console, show_time=False, show_path=False,
                                rich_tracebacks=True, markup=True)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    for handler in handlers:
        handler.setLevel(log_level)
        root.addHandler(handler)


def initialize_logging_from_settings() -> None:
    """Apply the ``logging`` section of the application settings."""
    config = get_settings().logging
    setup_logging(
        level=config.level,
        use_json=config.use_json,
        log_file=Path(config.log_file) if config.log_file else None,
        enable_correlation_ids=config.enable_correlation_ids
    )
    get_logger(__name__).info(
        "Logging configured",
        level=config.level,
        use_json=config.use_json,
        correlation_ids=config.enable_correlation_ids
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a correlation id for the duration of the block.

    A fresh UUID is used when none is given. Tasks spawned inside the block
    inherit the id.
    """
    token = _correlation_id.set(correlation_id or str(uuid.uuid4()))
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


@contextmanager
def performance_context(operation: str, **context: Any) -> Iterator[Dict[str, Any]]:
    """
    Time a lifecycle operation and tag every record logged inside it.

    Usage:
        with performance_context("phase_transition", case_id="CASE-1"):
            ...
    """
    logger = get_logger("performance")
    fields = {"operation": operation, **context}
    token = _active_operation.set(fields)
    started = time.perf_counter()

    logger.debug("Operation started", **fields)
    try:
        yield fields
    except Exception as e:
        logger.error(
            "Operation failed",
            duration=time.perf_counter() - started,
            error=str(e),
            error_type=type(e).__name__,
            **fields
        )
        raise
    else:
        logger.debug("Operation completed", duration=time.perf_counter() - started, **fields)
    finally:
        _active_operation.reset(token)


class PersistenceLogger:
    """Records repository writes and connection changes on the ``persistence`` logger."""

    def __init__(self):
        self.logger = get_logger("persistence")

    def operation_completed(
        self,
        backend: str,
        operation: str,
        collection: Optional[str] = None,
        documents: Optional[int] = None
    ) -> None:
        self.logger.debug(
            "Persistence operation completed",
            backend=backend,
            operation=operation,
            collection=collection,
            documents=documents
        )

    def connected(self, backend: str, database_name: str) -> None:
        self.logger.info("Persistence backend connected", backend=backend, database_name=database_name)

    def connection_failed(self, backend: str, error: str) -> None:
        self.logger.error("Persistence backend unreachable", backend=backend, error=error)


persistence_logger = PersistenceLogger()


def _describe_request(request: Any) -> Dict[str, Any]:
    if request is None:
        return {}
    described: Dict[str, Any] = {}
    url = getattr(request, "url", None)
    if url is not None:
        described["path"] = str(url.path)
    method = getattr(request, "method", None)
    if method:
        described["method"] = method
    client = getattr(request, "client", None)
    if client is not None:
        described["client_ip"] = getattr(client, "host", "unknown")
    return described


def log_business_event(
    event_type: str,
    request: Optional[Any] = None,
    user_id: Optional[str] = None,
    case_id: Optional[str] = None,
    **context: Any
) -> None:
    """
    Write an audit record for a committed lifecycle fact.

    Args:
        event_type: Short name such as ``"phase_transitioned"``
        request: FastAPI request, when the fact originates from one
        user_id: Acting user
        case_id: Case the fact belongs to
        **context: Extra fields, e.g. ``from_phase`` and ``to_phase``
    """
    fields: Dict[str, Any] = {"event_type": event_type, **_describe_request(request)}
    if user_id:
        fields["user_id"] = user_id
    if case_id:
        fields["case_id"] = case_id
    fields.update(context)
    get_logger("business").info(f"Business event: {event_type}", **fields)


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    success: bool = True,
    **context: Any
) -> None:
    """Write an authorization audit record; denials are logged as warnings."""
    fields: Dict[str, Any] = {"event_type": event_type, "success": success}
    optional = {
        "user_id": user_id,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "action": action,
    }
    fields.update({key: value for key, value in optional.items() if value})
    fields.update(context)

    log = get_logger("security")
    emit = log.info if success else log.warning
    emit(f"Security event: {event_type}", **fields)


def _log_route(stage: str, message: str, request: Any, **context: Any) -> None:
    fields: Dict[str, Any] = {"route_event": stage, **_describe_request(request)}
    fields.update({key: value for key, value in context.items() if value is not None})
    get_logger("routes").info(message, **fields)


def log_route_entry(request: Any, endpoint_name: Optional[str] = None, **context: Any) -> None:
    _log_route("entry", "Route handler entered", request, endpoint=endpoint_name, **context)


def log_route_exit(
    request: Any,
    status_code: Optional[int] = None,
    endpoint_name: Optional[str] = None,
    **context: Any
) -> None:
    _log_route(
        "exit",
        "Route handler completed",
        request,
        endpoint=endpoint_name,
        status_code=status_code,
        **context
    )
