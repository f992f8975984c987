"""Command-line argument parsing for the DORA metrics job."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

from .config import DEFAULT_PROJECT_KEY, DEFAULT_SCHEME
from .strategies import STRATEGIES


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments for a metrics run."""
    parser = argparse.ArgumentParser(
        prog="dora-metrics",
        description=(
            "Derive DORA metrics (lead time for changes, corrective deploys and "
            "time to recovery) from GitHub pull requests and store them in BigQuery."
        ),
    )

    parser.add_argument(
        "--dataset",
        required=True,
        help="BigQuery dataset holding the fact tables.",
    )
    parser.add_argument(
        "--scheme",
        choices=sorted(STRATEGIES),
        default=DEFAULT_SCHEME,
        help=f"How corrective deploys reference what they fix (default: {DEFAULT_SCHEME}).",
    )
    parser.add_argument(
        "--no-fallback",
        dest="fallback",
        action="store_false",
        help="Do not fall back to the other reference kind when the primary one is missing.",
    )
    parser.add_argument(
        "--project-key",
        default=DEFAULT_PROJECT_KEY,
        help=f"Jira project key of incident tickets (default: {DEFAULT_PROJECT_KEY}).",
    )
    parser.add_argument(
        "--repo",
        dest="repositories",
        action="append",
        default=[],
        metavar="NAME:WORKFLOW:JOB",
        help="Repository to scan with its production deploy workflow and job (repeatable).",
    )
    parser.add_argument(
        "--input",
        dest="input_file",
        default=None,
        help="Read pull requests from a JSON export instead of calling GitHub.",
    )
    parser.add_argument(
        "--max-workers",
        type=_positive_int,
        default=4,
        help="Concurrent repository fetches and ticket lookups (default: 4).",
    )
    parser.add_argument(
        "--timeout",
        dest="timeout_seconds",
        type=_positive_int,
        default=300,
        help="Deadline in seconds for each concurrent phase (default: 300).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Derive and report rows without writing to BigQuery or GitHub.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )

    return parser.parse_args(argv)
