"""OpenTelemetry metrics for credential refresh and busy-time sources.

Instruments
-----------
  studiolink.oauth.token_refresh_total       Counter (label: outcome)
      Token refresh attempts: success | revoked | error | conflict.

  studiolink.busy.source_failure_total       Counter (labels: source_kind, error_code)
      Busy-time sources that could not contribute to a result.

  studiolink.busy.source_latency_ms          Histogram (label: source_kind)
      Time spent fetching one busy-time source.

Every recording also carries a ``studio`` label.
"""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry import metrics

from studiolink.core.telemetry import otlp_endpoint, service_resource

logger = logging.getLogger(__name__)

_METER_NAME = "studiolink"
_EXPORT_INTERVAL_MS = 15_000

# name -> (kind, description, unit)
_INSTRUMENTS: dict[str, tuple[str, str, str]] = {
    "studiolink.oauth.token_refresh_total": (
        "counter",
        "Access-token refresh attempts by outcome",
        "refreshes",
    ),
    "studiolink.busy.source_failure_total": (
        "counter",
        "Busy-time sources that failed to contribute to a result",
        "failures",
    ),
    "studiolink.busy.source_latency_ms": (
        "histogram",
        "Time spent fetching one busy-time source in milliseconds",
        "ms",
    ),
}


def init_metrics(service_name: str) -> metrics.Meter:
    """Install a periodic OTLP gRPC metric exporter when an endpoint is set."""
    endpoint = otlp_endpoint()
    if endpoint is None:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, metrics disabled")
        return get_meter()

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=_EXPORT_INTERVAL_MS
    )
    metrics.set_meter_provider(
        MeterProvider(resource=service_resource(service_name), metric_readers=[reader])
    )
    logger.info("Metrics exported to %s as service=%s", endpoint, service_name)
    return get_meter()


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


class StudioMetrics:
    """Records the studio's instruments, creating each one on first use.

    Construction is cheap and may happen before ``init_metrics``; recordings
    are no-ops until a real provider is installed.
    """

    def __init__(self, studio_name: str = "studiolink") -> None:
        self._studio = studio_name
        self._instruments: dict[str, Any] = {}

    def _instrument(self, name: str) -> Any:
        instrument = self._instruments.get(name)
        if instrument is None:
            kind, description, unit = _INSTRUMENTS[name]
            meter = get_meter()
            create = meter.create_counter if kind == "counter" else meter.create_histogram
            instrument = create(name=name, description=description, unit=unit)
            self._instruments[name] = instrument
        return instrument

    def _labels(self, **labels: str) -> dict[str, str]:
        return {"studio": self._studio, **labels}

    def record_token_refresh(self, outcome: str) -> None:
        self._instrument("studiolink.oauth.token_refresh_total").add(
            1, self._labels(outcome=outcome)
        )

    def record_source_failure(self, source_kind: str, error_code: str) -> None:
        self._instrument("studiolink.busy.source_failure_total").add(
            1, self._labels(source_kind=source_kind, error_code=error_code)
        )

    def record_source_latency(self, source_kind: str, latency_ms: float) -> None:
        self._instrument("studiolink.busy.source_latency_ms").record(
            latency_ms, self._labels(source_kind=source_kind)
        )
