"""
Prometheus self-metrics for the exporter.

Tracks sampling cycles so scrapers can tell a fresh value from a stale one.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

CYCLE_RESULTS = ("success", "tool_error", "timeout", "io_error", "no_data", "short_record")


class ExporterMetrics:
    def __init__(self, registry: CollectorRegistry):
        # Sampling cycle outcomes
        self.cycles = Counter(
            "uprof_exporter_cycles_total",
            "Sampling cycles by result",
            labelnames=["result"],
            registry=registry,
        )
        for result in CYCLE_RESULTS:
            self.cycles.labels(result=result)

        # Cycle latency is dominated by the tool's own sampling duration
        self.cycle_duration = Histogram(
            "uprof_exporter_cycle_duration_seconds",
            "Time per sampling cycle",
            buckets=[0.5, 1, 2, 5, 10, 30, 60],
            registry=registry,
        )

        self.last_success = Gauge(
            "uprof_exporter_last_success_timestamp_seconds",
            "Unix time of the last sample applied to the gauges",
            registry=registry,
        )

    def record(self, result: str) -> None:
        self.cycles.labels(result=result).inc()
        if result == "success":
            self.last_success.set_to_current_time()
