from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

from niblet.utils.env import read_float_env
from niblet.utils.logging import get_logger

try:  # pragma: no cover - optional dependency
    from opentelemetry import trace
    from opentelemetry.trace import Span
except ImportError:  # pragma: no cover - fallback when OTel missing
    trace = None
    Span = None  # type: ignore[assignment]

log = get_logger(__name__)

_CONFIGURED = False
_TRACER_NAME = "niblet.turns"


def _parse_headers(raw: str) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            continue
        headers[key.strip()] = value.strip()
    return headers


def configure_tracing(service_name: str | None = None) -> None:
    """Install an OTLP span exporter when the SDK and an endpoint are both present."""

    global _CONFIGURED
    if _CONFIGURED:
        return
    if trace is None:
        log.debug("tracing_disabled_no_sdk")
        return
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        log.debug("tracing_disabled_no_endpoint")
        return
    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
    except ImportError:  # pragma: no cover - optional extras missing
        log.info("tracing_sdk_missing")
        return

    sample_ratio = min(read_float_env("TRACING_SAMPLE_RATIO", 0.1), 1.0)
    if sample_ratio <= 0.0:
        log.debug("tracing_disabled_zero_sample")
        return

    headers_env = os.getenv("OTEL_EXPORTER_OTLP_HEADERS")
    service = service_name or os.getenv("OTEL_SERVICE_NAME", "niblet")
    try:
        provider = TracerProvider(
            resource=Resource.create({"service.name": service}),
            sampler=ParentBased(TraceIdRatioBased(sample_ratio)),
        )
        exporter = OTLPSpanExporter(
            endpoint=endpoint,
            headers=_parse_headers(headers_env) if headers_env else None,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
    except Exception as exc:  # pragma: no cover - configuration failure
        log.warning("tracing_configuration_failed", error=str(exc))
        return

    _CONFIGURED = True
    log.info("tracing_configured", endpoint=endpoint, sample_ratio=sample_ratio, service=service)


def _get_tracer():
    if trace is None:
        return None
    try:
        return trace.get_tracer(_TRACER_NAME)
    except Exception as exc:  # pragma: no cover
        log.debug("tracing_tracer_error", error=str(exc))
        return None


def _apply_attributes(span: Any, attributes: Mapping[str, Any]) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        try:
            span.set_attribute(key, value)
        except Exception:  # pragma: no cover - ignore attribute errors
            continue


@contextmanager
def start_span(name: str, attributes: Optional[Mapping[str, Any]] = None) -> Iterator[Optional["Span"]]:
    tracer = _get_tracer()
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(name, record_exception=False) as span:
        if attributes:
            _apply_attributes(span, attributes)
        try:
            yield span
        except BaseException as exc:
            span.record_exception(exc)
            span.set_attribute("error", True)
            raise


def add_span_event(span: Any, name: str, attributes: Optional[Mapping[str, Any]] = None) -> None:
    if span is None:
        return
    span.add_event(name, dict(attributes or {}))
