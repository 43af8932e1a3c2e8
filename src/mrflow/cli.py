"""Command-line argument parsing for the GitLab MR flow analyzer."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from .filters import SORT_KEYS
from .models import PHASE_NAMES, PhaseBounds, PhaseFilter, RowFilter, SortSpec


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Args:
        value: Raw command-line argument value.

    Returns:
        The validated positive integer.

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


def _positive_float(value: str) -> float:
    """Parse and validate a strictly positive numeric CLI value."""
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be a number") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def _non_negative_float(value: str) -> float:
    """Parse and validate a non-negative numeric CLI value."""
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be a number") from exc

    if parsed < 0:
        raise argparse.ArgumentTypeError("must not be negative")

    return parsed


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments for a batch comparison.

    Returns:
        Parsed CLI arguments: connection settings, merge request iids, bot
        settings, row and phase filters, sort, limit and output options.
    """
    parser = argparse.ArgumentParser(
        prog="gitlab-mr-flow",
        description=(
            "Compare GitLab merge requests by lifecycle phase "
            "(development, wait, review and merge time)."
        ),
    )

    parser.add_argument("--url", required=True, help="GitLab base URL, e.g. https://gitlab.com.")
    parser.add_argument("--project", required=True, help="Project path (group/name) or id.")
    parser.add_argument(
        "--mr",
        dest="mr_iids",
        type=_positive_int,
        nargs="+",
        required=True,
        metavar="IID",
        help="Merge request iids to compare.",
    )

    parser.add_argument(
        "--ai-bot",
        dest="ai_bots",
        action="append",
        default=[],
        help="Username to always treat as an AI reviewer (repeatable).",
    )
    parser.add_argument(
        "--hybrid-config",
        type=Path,
        default=None,
        help="JSON file describing hybrid (AI and human) reviewer identities.",
    )
    parser.add_argument(
        "--mr-type-threshold-hours",
        type=_positive_float,
        default=2.0,
        help="Hours after creation that mark an MR as actively developed (default: 2).",
    )

    filters = parser.add_argument_group("filters")
    filters.add_argument("--author", help="Keep MRs whose author contains this text.")
    filters.add_argument("--status", choices=("merged", "open"), help="Keep MRs in this state.")
    filters.add_argument("--min-cycle-days", type=_non_negative_float, default=None)
    filters.add_argument("--max-cycle-days", type=_non_negative_float, default=None)
    for phase in PHASE_NAMES:
        for bound in ("percent-min", "percent-max", "days-min", "days-max"):
            filters.add_argument(
                f"--{phase}-{bound}",
                type=_non_negative_float,
                default=None,
                help=f"{bound.replace('-', ' ').capitalize()} bound on {phase} time.",
            )

    parser.add_argument("--sort", choices=sorted(SORT_KEYS), default="cycle_days")
    parser.add_argument("--order", choices=("asc", "desc"), default="desc")
    parser.add_argument("--limit", type=_positive_int, default=None)
    parser.add_argument("--json", action="store_true", help="Print the result as JSON.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    return parser.parse_args(argv)


def build_phase_filter(args: argparse.Namespace) -> Optional[PhaseFilter]:
    """Collect the ``--{phase}-{bound}`` options; ``None`` when none was given."""
    phase_filter = PhaseFilter(
        **{
            phase: PhaseBounds(
                percent_min=getattr(args, f"{phase}_percent_min"),
                percent_max=getattr(args, f"{phase}_percent_max"),
                days_min=getattr(args, f"{phase}_days_min"),
                days_max=getattr(args, f"{phase}_days_max"),
            )
            for phase in PHASE_NAMES
        }
    )
    return None if phase_filter.is_empty() else phase_filter


def build_row_filter(args: argparse.Namespace) -> Optional[RowFilter]:
    """Collect the row filter options; ``None`` when no filter was given."""
    phase_filter = build_phase_filter(args)
    if (
        args.author is None
        and args.status is None
        and args.min_cycle_days is None
        and args.max_cycle_days is None
        and phase_filter is None
    ):
        return None
    return RowFilter(
        author=args.author,
        status=args.status,
        min_cycle_days=args.min_cycle_days,
        max_cycle_days=args.max_cycle_days,
        phase=phase_filter,
    )


def build_sort(args: argparse.Namespace) -> SortSpec:
    return SortSpec(field=args.sort, order=args.order)
