"""
Metrics registry for sampled measurements.

Holds the last applied value of every measurement and exposes it to
prometheus_client through a custom collector. The value table is an immutable
tuple swapped under a lock, so every scrape sees one complete sample.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Sequence, Tuple

from loguru import logger
from prometheus_client import CollectorRegistry
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from uprof_exporter.core.measurements import MeasurementSpec

NODENAME_LABEL = "nodename"


@dataclass(frozen=True)
class Snapshot:
    """Consistent read of the registry: values of one apply() and when it happened."""

    values: Tuple[float, ...]
    updated_at: Optional[float] = None


class MetricsRegistry:
    """Fixed-shape table of gauges, one per measurement.

    Parameters
    ----------
    spec : MeasurementSpec
        Catalogue defining metric names and their column order.
    nodename : str, optional
        When given, every gauge carries a ``nodename`` label with this value.
    collector_registry : CollectorRegistry, optional
        Where to register; a private registry is created by default.
    """

    def __init__(
        self,
        spec: MeasurementSpec,
        *,
        nodename: Optional[str] = None,
        collector_registry: Optional[CollectorRegistry] = None,
    ) -> None:
        if nodename is not None and not nodename.strip():
            raise ValueError("nodename label value must not be empty")

        self.spec = spec
        self.nodename = nodename
        self.collector_registry = collector_registry or CollectorRegistry()

        self._lock = threading.Lock()
        self._snapshot = Snapshot(values=(0.0,) * len(spec))
        self._apply_count = 0
        self._collector: Optional[_SnapshotCollector] = None

        self.register()

    def register(self) -> None:
        """Register the gauges with the collector registry.

        Runs once, from the constructor. Name clashes with collectors already
        in the registry raise ``ValueError``.
        """
        if self._collector is not None:
            raise RuntimeError("measurement gauges are already registered")
        collector = _SnapshotCollector(self)
        self.collector_registry.register(collector)
        self._collector = collector
        logger.debug(
            "Registered {} gauges (profile={}, nodename={})",
            len(self.spec),
            self.spec.name,
            self.nodename,
        )

    @property
    def apply_count(self) -> int:
        return self._apply_count

    def apply(self, record: Sequence[float]) -> bool:
        """Overwrite all gauges from *record*.

        Records shorter than the catalogue are ignored as a whole; extra
        trailing values are dropped. Returns True if the record was applied.
        """
        expected = len(self.spec)
        if len(record) < expected:
            logger.warning(
                "Ignoring short sample: got {} values, expected {}", len(record), expected
            )
            return False

        values = tuple(float(v) for v in record[:expected])
        updated = Snapshot(values=values, updated_at=time.time())
        with self._lock:
            self._snapshot = updated
            self._apply_count += 1
        return True

    def snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot

    def as_dict(self) -> Dict[str, float]:
        """Mapping of metric name to current value, taken from one snapshot."""
        snap = self.snapshot()
        return dict(zip(self.spec.names, snap.values))


class _SnapshotCollector(Collector):
    """Yields one gauge family per measurement from a single registry snapshot."""

    def __init__(self, registry: MetricsRegistry) -> None:
        self._registry = registry

    def describe(self) -> Iterator[GaugeMetricFamily]:
        return self._families((0.0,) * len(self._registry.spec))

    def collect(self) -> Iterator[GaugeMetricFamily]:
        return self._families(self._registry.snapshot().values)

    def _families(self, values: Tuple[float, ...]) -> Iterator[GaugeMetricFamily]:
        nodename = self._registry.nodename
        for measurement, value in zip(self._registry.spec, values):
            if nodename is None:
                yield GaugeMetricFamily(measurement.name, measurement.help_text, value=value)
            else:
                family = GaugeMetricFamily(
                    measurement.name, measurement.help_text, labels=[NODENAME_LABEL]
                )
                family.add_metric([nodename], value)
                yield family
