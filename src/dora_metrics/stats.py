"""Statistics and formatting helpers for the DORA run report.

This module provides utilities for:
- Computing linear-interpolation percentiles from pre-sorted samples.
- Aggregating summary statistics (P50, P75, P90, count).
- Formatting minute-based durations as ``<d>d HH:MM``.
- Building a human-readable report of one metrics run.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Union, cast

from .bigquery_store import CORRECTIVE_DEPLOYS, RECOVERED_INCIDENTS, SUCCESSFUL_DEPLOYS
from .models import RunResult

Number = Union[float, Decimal]


def calculate_percentile(sorted_values: List[float], p: float) -> Optional[float]:
    """Calculate a percentile using linear interpolation.

    The input sequence is expected to already be sorted in ascending order.
    - Empty input returns ``None``.
    - ``p <= 0`` returns the first value.
    - ``p >= 100`` returns the last value.
    - Otherwise, percentile is linearly interpolated between adjacent ranks.

    Raises:
        ValueError: If ``p`` is outside ``[0, 100]``.
    """
    if not 0 <= p <= 100:
        raise ValueError("Percentile 'p' must be in the range [0, 100].")

    if not sorted_values:
        return None

    if p <= 0:
        return sorted_values[0]

    if p >= 100:
        return sorted_values[-1]

    position = (len(sorted_values) - 1) * (p / 100.0)
    lower_index = math.floor(position)
    upper_index = math.ceil(position)

    if lower_index == upper_index:
        return sorted_values[int(position)]

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]
    return lower_value + (upper_value - lower_value) * (position - lower_index)


def compute_statistics(samples: Sequence[Optional[Number]]) -> Dict[str, Optional[float]]:
    """Compute P50, P75, P90, and sample count for minute samples.

    ``None``, NaN and negative samples are left out; negative lead and
    recovery times are reported through warnings at derivation time instead.

    Returns:
        Dictionary with keys ``p50``, ``p75``, ``p90``, and ``count``.
    """
    clean_samples = sorted(
        float(sample)
        for sample in samples
        if sample is not None and not math.isnan(float(sample)) and sample >= 0
    )

    return {
        "p50": calculate_percentile(clean_samples, 50),
        "p75": calculate_percentile(clean_samples, 75),
        "p90": calculate_percentile(clean_samples, 90),
        "count": cast(Optional[float], len(clean_samples)),
    }


def format_minutes(minutes: Optional[float]) -> str:
    """Format minutes as ``HH:MM``, prefixed with whole days when longer.

    Returns ``"n/a"`` when ``minutes`` is ``None``.
    """
    if minutes is None:
        return "n/a"

    total_minutes = int(round(minutes))
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, remaining_minutes = divmod(remainder, 60)
    if days:
        return f"{days}d {hours:02d}:{remaining_minutes:02d}"
    return f"{hours:02d}:{remaining_minutes:02d}"


def _metric_lines(title: str, samples: Sequence[Optional[Number]]) -> List[str]:
    stats = compute_statistics(samples)
    return [
        title,
        f"   Samples: {int(cast(float, stats['count']))}",
        f"   P50: {format_minutes(stats['p50'])}",
        f"   P75: {format_minutes(stats['p75'])}",
        f"   P90: {format_minutes(stats['p90'])}",
    ]


def generate_report(result: RunResult, dry_run: bool = False) -> str:
    """Generate a human-readable report of one metrics run.

    The report has lead time and time to recovery percentiles over the rows
    derived in this run, followed by per-table insert counts.
    """
    recovery_samples: List[Optional[Number]] = [
        deploy.time_to_recovery_minutes for deploy in result.corrective_deploys
    ]
    recovery_samples.extend(incident.time_to_recovery_minutes for incident in result.recovered_incidents)

    produced = {
        SUCCESSFUL_DEPLOYS: len(result.successful_deploys),
        CORRECTIVE_DEPLOYS: len(result.corrective_deploys),
        RECOVERED_INCIDENTS: len(result.recovered_incidents),
    }

    lines = ["DORA Metrics Report" + (" (dry run)" if dry_run else ""), ""]
    lines.extend(
        _metric_lines(
            "1) Lead Time for Changes (last commit to deploy)",
            [deploy.lead_time_minutes for deploy in result.successful_deploys],
        )
    )
    lines.append("")
    lines.extend(_metric_lines("2) Time to Recovery", recovery_samples))
    lines.extend(["", "3) Rows"])

    for table, count in produced.items():
        report = result.reports.get(table)
        if report is None:
            lines.append(f"   {table}: produced={count} not written")
            continue
        verb = "would insert" if dry_run else "inserted"
        lines.append(
            f"   {table}: produced={count} new={report.attempted} "
            f"{verb}={report.inserted} failed={len(report.failures)}"
        )

    if result.skipped:
        lines.extend(["", f"Skipped repositories: {', '.join(result.skipped)}"])

    return "\n".join(lines)
