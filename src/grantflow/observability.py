from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock

_submission_id_var: ContextVar[int | None] = ContextVar('submission_id', default=None)
_milestone_id_var: ContextVar[int | None] = ContextVar('milestone_id', default=None)
_approval_id_var: ContextVar[int | None] = ContextVar('approval_id', default=None)

_CONTEXT_FIELDS = (
    ('submission_id', _submission_id_var),
    ('milestone_id', _milestone_id_var),
    ('approval_id', _approval_id_var),
)


def set_grant_context(
    submission_id: int | None = None,
    milestone_id: int | None = None,
    approval_id: int | None = None,
) -> None:
    """Set correlation context for structured log output."""
    _submission_id_var.set(submission_id)
    _milestone_id_var.set(milestone_id)
    _approval_id_var.set(approval_id)


def clear_grant_context() -> None:
    set_grant_context(None, None, None)


def get_grant_context() -> dict[str, int]:
    out: dict[str, int] = {}
    for name, var in _CONTEXT_FIELDS:
        value = var.get(None)
        if value is not None:
            out[name] = value
    return out


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for name, var in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                value = var.get(None)
            if value is not None:
                payload[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('grantflow')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    if not otlp_endpoint:
        return
    endpoint = str(otlp_endpoint).strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger('grantflow.observability').warning(
            'OpenTelemetry import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint
