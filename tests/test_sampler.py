"""
Tests for the sampling cycle and loop.

The external tool is replaced by FakeTool, which writes a report file and
returns a CompletedProcess like subprocess.run would.
"""

import subprocess
import threading
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from tests.toolkit import FakeTool, data_row, full_report
from uprof_exporter.core.measurements import COMPACT, FULL
from uprof_exporter.core.registry import MetricsRegistry
from uprof_exporter.core.sampler import Sampler
from uprof_exporter.metrics import ExporterMetrics


def _make(settings, tool, nodename="n1"):
    registry = MetricsRegistry(settings.spec, nodename=nodename)
    metrics = ExporterMetrics(registry.collector_registry)
    return registry, metrics, Sampler(registry, settings, metrics=metrics, runner=tool)


def _cycles(registry, result):
    return registry.collector_registry.get_sample_value(
        "uprof_exporter_cycles_total", {"result": result}
    )


def test_command_line(settings):
    sampler = Sampler(MetricsRegistry(settings.spec), settings)
    assert sampler.build_command() == [
        "/opt/AMDuProf_Linux_x64_5.1.701/bin/AMDuProfPcm",
        "-m",
        "ipc,fp,tlb,l1,l2,l3,memory",
        "-d",
        "1",
        "-a",
        "-r",
        "--msr",
        "-o",
        settings.output_path,
    ]


@pytest.mark.parametrize(
    "profile, categories",
    [("full", "ipc,fp,tlb,l1,l2,l3,memory"), ("compact", "memory,l1,l2,l3")],
)
def test_default_categories_follow_profile(settings, profile, categories):
    settings = settings.model_copy(update={"profile": profile})
    cmd = Sampler(MetricsRegistry(settings.spec), settings).build_command()
    assert cmd[cmd.index("-m") + 1] == categories


def test_explicit_categories_win_over_profile(compact_settings):
    settings = compact_settings.model_copy(update={"tool_categories": "memory"})
    cmd = Sampler(MetricsRegistry(settings.spec), settings).build_command()
    assert cmd[cmd.index("-m") + 1] == "memory"


def test_profile_and_registry_must_agree(settings):
    with pytest.raises(ValueError):
        Sampler(MetricsRegistry(COMPACT), settings)


class TestRunCycle:
    def test_success_applies_and_removes_report(self, settings, fake_tool, full_values):
        fake_tool.report = full_report(full_values)
        registry, _, sampler = _make(settings, fake_tool)

        assert sampler.run_cycle() is True
        assert registry.snapshot().values == tuple(full_values)
        assert not Path(settings.output_path).exists()
        assert _cycles(registry, "success") == 1.0

        cmd, kwargs = fake_tool.calls[0]
        assert kwargs["timeout"] == settings.tool_timeout
        assert kwargs["capture_output"] is True

    def test_tool_failure_keeps_previous_values(self, settings, fake_tool, full_values):
        fake_tool.report = full_report(full_values)
        registry, _, sampler = _make(settings, fake_tool)
        sampler.run_cycle()

        fake_tool.report = None
        fake_tool.returncode = 1
        fake_tool.stderr = "permission denied\n"
        assert sampler.run_cycle() is False
        assert registry.snapshot().values == tuple(full_values)
        assert _cycles(registry, "tool_error") == 1.0

    def test_no_data_row_keeps_previous_values_and_removes_report(
        self, settings, fake_tool, full_values
    ):
        fake_tool.report = full_report(full_values)
        registry, _, sampler = _make(settings, fake_tool)
        sampler.run_cycle()

        fake_tool.report = "AMDuProfPcm Report\nh1,h2\n"
        assert sampler.run_cycle() is False
        assert registry.snapshot().values == tuple(full_values)
        assert not Path(settings.output_path).exists()
        assert _cycles(registry, "no_data") == 1.0

    def test_report_left_by_failed_run_is_not_read_later(self, settings, fake_tool, full_values):
        fake_tool.report = full_report(full_values)
        fake_tool.returncode = 1
        registry, _, sampler = _make(settings, fake_tool)
        assert sampler.run_cycle() is False
        assert Path(settings.output_path).exists()

        # Next run exits 0 without writing a report
        fake_tool.report = None
        fake_tool.returncode = 0
        assert sampler.run_cycle() is False
        assert not Path(settings.output_path).exists()
        assert registry.apply_count == 0
        assert registry.snapshot().values == (0.0,) * len(FULL)
        assert _cycles(registry, "io_error") == 1.0

    def test_missing_report_is_io_error(self, settings, fake_tool):
        registry, _, sampler = _make(settings, fake_tool)
        assert sampler.run_cycle() is False
        assert _cycles(registry, "io_error") == 1.0
        assert registry.apply_count == 0

    def test_timeout_is_a_failed_cycle(self, settings, full_values):
        tool = FakeTool(settings.output_path, exc=subprocess.TimeoutExpired("AMDuProfPcm", 60))
        registry, _, sampler = _make(settings, tool)
        assert sampler.run_cycle() is False
        assert _cycles(registry, "timeout") == 1.0
        assert registry.snapshot().values == (0.0,) * len(FULL)

    def test_missing_binary_is_a_failed_cycle(self, settings):
        tool = FakeTool(settings.output_path, exc=FileNotFoundError("AMDuProfPcm"))
        registry, _, sampler = _make(settings, tool)
        assert sampler.run_cycle() is False
        assert _cycles(registry, "tool_error") == 1.0

    def test_short_record_rejected_by_registry(self, settings, fake_tool, full_values, monkeypatch):
        fake_tool.report = full_report(full_values)
        registry, _, sampler = _make(settings, fake_tool)
        monkeypatch.setattr(sampler, "collect", lambda: (1.0, 2.0))
        assert sampler.run_cycle() is False
        assert _cycles(registry, "short_record") == 1.0
        assert registry.apply_count == 0

    def test_bad_cell_reads_zero(self, compact_settings, compact_values):
        row = [str(v) for v in compact_values]
        row[3] = "N/A"
        tool = FakeTool(compact_settings.output_path, report="h1,h2\n" + ",".join(row) + "\n")
        registry, _, sampler = _make(compact_settings, tool, nodename=None)
        assert sampler.run_cycle() is True
        expected = list(compact_values)
        expected[3] = 0.0
        assert registry.snapshot().values == tuple(expected)

    def test_last_success_timestamp_only_moves_on_success(self, settings, fake_tool, full_values):
        registry, _, sampler = _make(settings, fake_tool)
        fake_tool.returncode = 2
        sampler.run_cycle()
        ts = registry.collector_registry.get_sample_value(
            "uprof_exporter_last_success_timestamp_seconds"
        )
        assert ts == 0.0

        fake_tool.returncode = 0
        fake_tool.report = data_row(full_values)
        sampler.run_cycle()
        ts = registry.collector_registry.get_sample_value(
            "uprof_exporter_last_success_timestamp_seconds"
        )
        assert ts > 0.0

    def test_prepare_output_dir(self, settings):
        sampler = Sampler(MetricsRegistry(settings.spec), settings)
        sampler.prepare_output_dir()
        assert Path(settings.output_path).parent.is_dir()


class TestRunForever:
    def test_runs_exactly_max_cycles(self, settings, fake_tool, full_values):
        fake_tool.report = data_row(full_values)
        registry, _, sampler = _make(settings, fake_tool)
        assert sampler.run_forever(max_cycles=3) == 3
        assert len(fake_tool.calls) == 3
        assert registry.apply_count == 3

    def test_unexpected_error_does_not_stop_loop(self, settings, fake_tool, monkeypatch):
        registry, _, sampler = _make(settings, fake_tool)
        calls = {"n": 0}

        def boom():
            calls["n"] += 1
            raise RuntimeError("unexpected")

        monkeypatch.setattr(sampler, "run_cycle", boom)
        assert sampler.run_forever(max_cycles=2) == 2
        assert calls["n"] == 2

    def test_stop_event_ends_loop(self, settings, fake_tool):
        registry, _, sampler = _make(settings, fake_tool)
        stop = threading.Event()
        stop.set()
        assert sampler.run_forever(stop) == 0
        assert fake_tool.calls == []

    def test_overrun_starts_next_cycle_immediately(self, settings, fake_tool):
        """A cycle longer than the interval is followed without waiting."""
        now = {"t": 0.0}

        def clock():
            return now["t"]

        registry = MetricsRegistry(settings.spec)
        sampler = Sampler(
            registry,
            settings.model_copy(update={"interval": 10.0}),
            runner=fake_tool,
            clock=clock,
        )

        def slow_cycle():
            now["t"] += 25.0
            return False

        sampler.run_cycle = slow_cycle
        stop = threading.Event()
        waits = []
        stop.wait = lambda timeout=None: waits.append(timeout)
        sampler.run_forever(stop, max_cycles=3)
        assert waits == []

    def test_waits_remaining_interval(self, settings, fake_tool):
        now = {"t": 100.0}
        registry = MetricsRegistry(settings.spec)
        sampler = Sampler(
            registry,
            settings.model_copy(update={"interval": 10.0}),
            runner=fake_tool,
            clock=lambda: now["t"],
        )

        def quick_cycle():
            now["t"] += 4.0
            return True

        sampler.run_cycle = quick_cycle
        stop = threading.Event()
        waits = []

        def wait(timeout=None):
            waits.append(timeout)
            now["t"] += timeout

        stop.wait = wait
        sampler.run_forever(stop, max_cycles=3)
        assert waits == [6.0, 6.0]


def test_cycles_never_overlap(settings, full_values):
    """Concurrent run_cycle calls are serialized on the report file."""
    active = {"n": 0, "max": 0}
    lock = threading.Lock()

    class SlowTool(FakeTool):
        def __call__(self, cmd, **kwargs):
            with lock:
                active["n"] += 1
                active["max"] = max(active["max"], active["n"])
            try:
                threading.Event().wait(0.02)
                return super().__call__(cmd, **kwargs)
            finally:
                with lock:
                    active["n"] -= 1

    Path(settings.output_path).parent.mkdir(parents=True, exist_ok=True)
    tool = SlowTool(settings.output_path, report=data_row(full_values))
    registry = MetricsRegistry(settings.spec, collector_registry=CollectorRegistry())
    sampler = Sampler(registry, settings, runner=tool)

    threads = [threading.Thread(target=sampler.run_cycle) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert active["max"] == 1
    assert registry.apply_count == 4
