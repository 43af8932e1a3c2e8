"""Entry point wiring configuration, GitLab client, batch service and report."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional, Sequence

from .batch import BatchComparisonService
from .cli import build_row_filter, build_sort, parse_args
from .client import GitLabClient
from .config import load_config
from .errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    PartialFailureError,
    ValidationError,
)
from .models import BatchInput
from .report import generate_report, to_json

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INVALID_INPUT = 2
EXIT_AUTHENTICATION = 3
EXIT_API = 4
EXIT_PARTIAL_FAILURE = 5


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _report_progress(processed: int, total: int, elapsed_ms: int) -> None:
    logger.info("Loaded %d/%d merge requests (%d ms)", processed, total, elapsed_ms)


def orchestrate_batch_comparison(argv: Optional[Sequence[str]] = None) -> int:
    """Run a batch comparison end to end and return a process exit code.

    Exit codes:
        0: success, 1: unexpected error, 2: invalid input or configuration,
        3: authentication error, 4: GitLab API error, 5: every MR failed.
    """
    try:
        args = parse_args(argv)
        _configure_logging(args.verbose)

        config = load_config(
            base_url=args.url,
            project=args.project,
            ai_bots=args.ai_bots,
            hybrid_config_path=args.hybrid_config,
            mr_type_threshold_hours=args.mr_type_threshold_hours,
        )
        client = GitLabClient(config=config)
        service = BatchComparisonService(client, config)

        batch_input = BatchInput(
            project=config.project,
            mr_iids=list(args.mr_iids),
            row_filter=build_row_filter(args),
            sort=build_sort(args),
            limit=args.limit,
        )
        logger.info(
            "Comparing merge requests",
            extra={"project": config.project, "count": len(batch_input.mr_iids)},
        )
        result = asyncio.run(service.analyze(batch_input, on_progress=_report_progress))

        print(to_json(result) if args.json else generate_report(result))
        return EXIT_OK
    except (ConfigurationError, ValidationError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_INVALID_INPUT
    except AuthenticationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_AUTHENTICATION
    except ApiError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_API
    except PartialFailureError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        for sample in exc.samples:
            print(f"  - {sample}", file=sys.stderr)
        return EXIT_PARTIAL_FAILURE
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"ERROR: Unexpected failure: {exc}", file=sys.stderr)
        return EXIT_UNEXPECTED


def main(argv: Optional[Sequence[str]] = None) -> int:
    return orchestrate_batch_comparison(argv)


if __name__ == "__main__":
    raise SystemExit(main())
