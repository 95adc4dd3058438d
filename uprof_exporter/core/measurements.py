"""
Measurement catalogues
======================

A catalogue is the fixed, ordered list of values AMDuProfPcm writes into each
data row of its report. The position of an entry is its column index, and its
name is the Prometheus metric name it is published under.

Two catalogues ship with the exporter:

    • ``full``     29 columns (core, cache, TLB, FP, memory), per-node label
    • ``compact``  6 columns (memory bandwidth + cache miss rates), flat gauges
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterator, Tuple

__all__ = ["Measurement", "MeasurementSpec", "FULL", "COMPACT", "PROFILES", "get_profile"]

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")


@dataclass(frozen=True)
class Measurement:
    name: str
    description: str
    unit: str

    @property
    def help_text(self) -> str:
        return f"{self.description} ({self.unit})" if self.unit else self.description


class MeasurementSpec:
    """Immutable ordered catalogue of measurements.

    Validated once on construction: it must be non-empty, names must be unique
    and each name must be a legal Prometheus metric name.
    """

    def __init__(self, name: str, entries: Tuple[Tuple[str, str, str], ...]) -> None:
        if not entries:
            raise ValueError(f"measurement catalogue {name!r} is empty")

        seen: Dict[str, int] = {}
        items = []
        for position, (metric, description, unit) in enumerate(entries):
            if not _METRIC_NAME_RE.match(metric):
                raise ValueError(f"invalid metric name {metric!r} at column {position}")
            if metric in seen:
                raise ValueError(
                    f"duplicate metric name {metric!r} at columns {seen[metric]} and {position}"
                )
            seen[metric] = position
            items.append(Measurement(metric, description, unit))

        self.name = name
        self._items: Tuple[Measurement, ...] = tuple(items)
        self._index = seen

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Measurement]:
        return iter(self._items)

    def __getitem__(self, position: int) -> Measurement:
        return self._items[position]

    def __repr__(self) -> str:
        return f"MeasurementSpec({self.name!r}, columns={len(self)})"

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(m.name for m in self._items)

    def position(self, metric: str) -> int:
        """Column index of *metric* in the tool's data row."""
        return self._index[metric]


FULL = MeasurementSpec(
    "full",
    (
        ("amd_core_utilization_percent", "Core utilization", "%"),
        ("amd_system_time_percent", "Time spent in kernel mode", "%"),
        ("amd_user_time_percent", "Time spent in user mode", "%"),
        ("amd_effective_frequency_ghz", "Effective core frequency", "GHz"),
        ("amd_ipc", "Instructions retired per cycle", ""),
        ("amd_cpi", "Cycles per instruction retired", ""),
        ("amd_branch_misprediction_ratio", "Retired branch misprediction ratio", ""),
        ("amd_giga_instructions_per_second", "Instructions retired", "G/s"),
        ("amd_l1_dc_access_pti", "L1 data cache accesses per thousand instructions", "PTI"),
        ("amd_l1_dc_miss_pti", "L1 data cache misses per thousand instructions", "PTI"),
        ("amd_l1_cache_miss_rate_percent", "L1 Cache Miss Rate", "%"),
        ("amd_l1_ic_fetch_miss_ratio", "L1 instruction cache fetch miss ratio", ""),
        ("amd_l2_access_pti", "L2 cache accesses per thousand instructions", "PTI"),
        ("amd_l2_miss_pti", "L2 cache misses per thousand instructions", "PTI"),
        ("amd_l2_hit_pti", "L2 cache hits per thousand instructions", "PTI"),
        ("amd_l2_cache_miss_rate_percent", "L2 Cache Miss Rate", "%"),
        ("amd_l3_access_pti", "L3 cache accesses per thousand instructions", "PTI"),
        ("amd_l3_miss_pti", "L3 cache misses per thousand instructions", "PTI"),
        ("amd_l3_cache_miss_rate_percent", "L3 Cache Miss Rate", "%"),
        ("amd_l3_average_miss_latency_ns", "Average L3 miss latency", "ns"),
        ("amd_dtlb_miss_pti", "Data TLB misses per thousand instructions", "PTI"),
        ("amd_itlb_miss_pti", "Instruction TLB misses per thousand instructions", "PTI"),
        ("amd_fp_gflops", "Retired floating point operations", "GFLOPS"),
        ("amd_mixed_sse_avx_stalls_pti", "Mixed SSE/AVX stalls per thousand instructions", "PTI"),
        ("amd_memory_bandwidth_total_gbps", "Total Memory Bandwidth", "GB/s"),
        ("amd_memory_bandwidth_read_gbps", "Memory Read Bandwidth", "GB/s"),
        ("amd_memory_bandwidth_write_gbps", "Memory Write Bandwidth", "GB/s"),
        ("amd_memory_bandwidth_local_read_gbps", "Local DRAM Read Bandwidth", "GB/s"),
        ("amd_memory_bandwidth_remote_read_gbps", "Remote DRAM Read Bandwidth", "GB/s"),
    ),
)

COMPACT = MeasurementSpec(
    "compact",
    (
        ("amd_memory_bandwidth_total_gbps", "Total Memory Bandwidth", "GB/s"),
        ("amd_memory_bandwidth_read_gbps", "Memory Read Bandwidth", "GB/s"),
        ("amd_memory_bandwidth_write_gbps", "Memory Write Bandwidth", "GB/s"),
        ("amd_l3_cache_miss_rate_percent", "L3 Cache Miss Rate", "%"),
        ("amd_l2_cache_miss_rate_percent", "L2 Cache Miss Rate", "%"),
        ("amd_l1_cache_miss_rate_percent", "L1 Cache Miss Rate", "%"),
    ),
)

PROFILES: Dict[str, MeasurementSpec] = {FULL.name: FULL, COMPACT.name: COMPACT}


def get_profile(name: str) -> MeasurementSpec:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(
            f"unknown measurement profile {name!r}, expected one of {sorted(PROFILES)}"
        ) from None
