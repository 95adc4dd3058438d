"""
Sampler Loop
------------
Runs AMDuProfPcm once per interval, parses its report and applies the sample
to the registry.

Cycles run strictly one after another on a single thread. Any failure (tool
exit status, timeout, unreadable or empty report, short sample) is logged and
counted, and the gauges keep their last applied values until a later cycle
succeeds.

Public API:
    Sampler.run_cycle()    → bool   # True if a sample was applied
    Sampler.run_forever()  → int    # number of cycles run
"""

from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from loguru import logger

from uprof_exporter.core.config import Settings
from uprof_exporter.core.parser import parse_result_file
from uprof_exporter.core.registry import MetricsRegistry
from uprof_exporter.metrics import ExporterMetrics


class SamplingError(RuntimeError):
    """A sampling cycle could not produce a sample."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class Sampler:
    def __init__(
        self,
        registry: MetricsRegistry,
        settings: Settings,
        *,
        metrics: Optional[ExporterMetrics] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if len(registry.spec) != len(settings.spec):
            raise ValueError(
                f"registry has {len(registry.spec)} gauges but profile "
                f"{settings.profile!r} expects {len(settings.spec)} columns"
            )
        self.registry = registry
        self.settings = settings
        self.metrics = metrics
        self._runner = runner
        self._clock = clock
        # The report path is shared by every invocation
        self._cycle_lock = threading.Lock()

    @property
    def output_path(self) -> Path:
        return Path(self.settings.output_path)

    def build_command(self) -> List[str]:
        s = self.settings
        return [
            s.tool_path,
            "-m",
            s.categories,
            "-d",
            str(s.tool_duration),
            *s.tool_extra_args,
            "-o",
            s.output_path,
        ]

    def prepare_output_dir(self) -> None:
        """Create the report directory if it is missing (best effort)."""
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create report directory {}: {}", self.output_path.parent, e)

    def _remove_output(self) -> None:
        try:
            self.output_path.unlink()
        except OSError as e:
            logger.debug("Could not remove report {}: {}", self.output_path, e)

    def collect(self) -> Tuple[float, ...]:
        """Run the tool and return the parsed sample.

        Raises
        ------
        SamplingError
            With ``reason`` one of ``tool_error``, ``timeout``, ``io_error``
            or ``no_data``.
        """
        cmd = self.build_command()
        timeout = self.settings.tool_timeout
        # A report left by an earlier failed run must never be read as fresh
        self._remove_output()
        try:
            result = self._runner(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise SamplingError("timeout", f"AMDuProfPcm did not finish within {timeout:g}s")
        except OSError as e:
            raise SamplingError("tool_error", f"AMDuProfPcm could not be started: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise SamplingError(
                "tool_error", f"AMDuProfPcm failed (exit {result.returncode}): {stderr}"
            )

        try:
            record = parse_result_file(
                self.output_path,
                self.settings.spec,
                header_marker=self.settings.header_marker,
                section_marker=self.settings.section_marker,
            )
        except (OSError, UnicodeError) as e:
            raise SamplingError("io_error", f"Cannot read report {self.output_path}: {e}") from e
        finally:
            self._remove_output()

        if record is None:
            raise SamplingError("no_data", f"No data row in {self.output_path}")
        return record

    def _count(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record(result)

    def run_cycle(self) -> bool:
        """Execute exactly one sampling cycle.

        Returns
        -------
        bool
            True  if a complete sample was applied to the registry
            False if the cycle failed and previous values stay published
        """
        with self._cycle_lock:
            start = self._clock()
            try:
                record = self.collect()
                if not self.registry.apply(record):
                    raise SamplingError(
                        "short_record", f"Sample with {len(record)} values was not applied"
                    )
            except SamplingError as e:
                logger.error("Error collecting metrics ({}): {}", e.reason, e)
                self._count(e.reason)
                return False
            finally:
                if self.metrics is not None:
                    self.metrics.cycle_duration.observe(self._clock() - start)

            self._count("success")
            logger.info("Metrics updated successfully ({} values)", len(record))
            return True

    def run_forever(
        self,
        stop_event: Optional[threading.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> int:
        """Run cycles until *stop_event* is set or *max_cycles* have run.

        A cycle is due ``interval`` seconds after the previous one started.
        When a cycle overruns, the next one starts immediately and missed
        ticks are dropped.
        """
        stop_event = stop_event or threading.Event()
        interval = self.settings.interval
        completed = 0

        while not stop_event.is_set():
            if max_cycles is not None and completed >= max_cycles:
                break
            next_due = self._clock() + interval
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Unexpected error in sampling cycle")
            completed += 1

            if max_cycles is not None and completed >= max_cycles:
                break
            delay = next_due - self._clock()
            if delay > 0:
                stop_event.wait(delay)

        logger.info("Sampler stopped after {} cycles", completed)
        return completed
