"""OpenTelemetry tracing for the studio service.

Nothing is exported unless ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set; without it
the API's global no-op provider stays installed and spans cost nothing.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from studiolink import __version__
from studiolink.errors import StudioError

logger = logging.getLogger(__name__)

_TRACER_NAME = "studiolink"
_ATTR_PREFIX = "studiolink."

# set_tracer_provider() may only succeed once per process.
_provider_installed = False


def otlp_endpoint() -> str | None:
    return os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or None


def service_resource(service_name: str) -> Resource:
    """Resource shared by the trace and metric providers."""
    return Resource.create({"service.name": service_name, "service.version": __version__})


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP gRPC span exporter when an endpoint is configured.

    Safe to call once per app instance; later calls reuse the provider the
    first one installed.
    """
    global _provider_installed

    endpoint = otlp_endpoint()
    if endpoint is None:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, tracing disabled")
    elif _provider_installed:
        logger.debug("TracerProvider already installed; service=%s reuses it", service_name)
    else:
        # The gRPC exporter is heavy; import it only when exporting.
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=service_resource(service_name))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _provider_installed = True
        logger.info("Tracing to %s as service=%s", endpoint, service_name)
    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def studio_span(name: str, **attributes: str | int | bool) -> Iterator[trace.Span]:
    """Run the block inside a ``studiolink.<name>`` span.

    Every ``StudioError`` tags the span with ``studiolink.error_code``.  Only
    server-side failures (5xx codes and foreign exceptions) mark the span as
    ERROR; a caller's ``NotFound`` is an ordinary outcome.
    """
    with get_tracer().start_as_current_span(
        _ATTR_PREFIX + name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        span.set_attributes({_ATTR_PREFIX + key: value for key, value in attributes.items()})
        try:
            yield span
        except StudioError as exc:
            span.set_attribute(_ATTR_PREFIX + "error_code", exc.code)
            if exc.status_code >= 500:
                span.set_status(trace.StatusCode.ERROR, exc.message)
                span.record_exception(exc)
            raise
        except BaseException as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
