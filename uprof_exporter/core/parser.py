"""
Parser for AMDuProfPcm report files.

The report is a CSV-like table with metadata and header rows mixed in. The
most recent sample is the last data row, so rows are scanned bottom-up and the
first structurally valid row wins. Individual cells that are not numbers are
read as 0.0; a row that is too short is skipped entirely.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple, Union

from loguru import logger

from uprof_exporter.core.measurements import MeasurementSpec

FIELD_SEPARATOR = ","

# AMDuProfPcm column-header row, e.g. "Utilization (%),System time (%),..."
DEFAULT_HEADER_MARKER = "Utilization"
# Section titles, e.g. "System (Aggregated)"
DEFAULT_SECTION_MARKER = "System"


def _parse_field(raw: str) -> Tuple[float, bool]:
    # float() accepts digit-group underscores ("1_000"); the report never has them
    if "_" in raw:
        return 0.0, False
    try:
        return float(raw.strip()), True
    except ValueError:
        return 0.0, False


def parse_last_row(
    text: str,
    expected_fields: int,
    *,
    header_marker: str = DEFAULT_HEADER_MARKER,
    section_marker: str = DEFAULT_SECTION_MARKER,
) -> Optional[Tuple[float, ...]]:
    """Return the values of the last data row in *text*.

    A row qualifies when it contains the field separator, contains neither
    *header_marker* nor *section_marker*, and has at least *expected_fields*
    fields. Only the first *expected_fields* fields are returned.

    Returns
    -------
    tuple of float or None
        ``None`` when no row qualifies.
    """
    if expected_fields < 1:
        raise ValueError(f"expected_fields must be positive, got {expected_fields}")

    for line in reversed(text.splitlines()):
        if FIELD_SEPARATOR not in line:
            continue
        if header_marker and header_marker in line:
            continue
        if section_marker and section_marker in line:
            continue

        fields = line.split(FIELD_SEPARATOR)
        if len(fields) < expected_fields:
            continue

        values: List[float] = []
        substituted = 0
        for raw in fields[:expected_fields]:
            value, ok = _parse_field(raw)
            if not ok:
                substituted += 1
            values.append(value)

        if substituted:
            logger.debug("Data row had {} non-numeric field(s) read as 0.0", substituted)
        return tuple(values)

    return None


def parse_result_file(
    path: Union[str, Path],
    spec: MeasurementSpec,
    *,
    header_marker: str = DEFAULT_HEADER_MARKER,
    section_marker: str = DEFAULT_SECTION_MARKER,
) -> Optional[Tuple[float, ...]]:
    """Read a report file and parse its last data row against *spec*.

    Raises ``OSError`` if the file cannot be read.
    """
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    return parse_last_row(
        text,
        len(spec),
        header_marker=header_marker,
        section_marker=section_marker,
    )
