#!/usr/bin/env python3
"""Command-line interface for payment recovery tools.

This CLI runs recovery sweeps over pending transactions and reconciles
single references against the payment gateway and the meter platform.

Usage:
    python -m meter_recharge.reconciliation.cli recover --since 2026-01-01 --until 2026-01-31
    python -m meter_recharge.reconciliation.cli recover --dry-run --format text
    python -m meter_recharge.reconciliation.cli reconcile AG_1700000000000_ABC123
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
)
from ..errors import ReconciliationError, TransactionNotFound
from .engine import build_engine
from .models import ReconcileOutcome
from .report import RecoveryReportGenerator, REPORT_FORMATS

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_FATAL = 2


def parse_datetime(dt_string: str) -> datetime:
    """Parse datetime string in various formats.

    Args:
        dt_string: Datetime string in ISO format or date format.

    Returns:
        Parsed datetime object.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    formats = [
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(dt_string, fmt)
        except ValueError:
            continue

    raise ValueError(
        f"Unable to parse datetime: {dt_string}. "
        f"Expected formats: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS"
    )


def write_output(output: str, output_file: Optional[str] = None) -> None:
    if output_file:
        with open(output_file, 'w') as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


async def run_recovery_async(
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    dry_run: bool = False,
    concurrency: int = 1,
    output_file: Optional[str] = None,
    output_format: str = "json",
    include_details: bool = True,
) -> int:
    """Run a recovery sweep asynchronously.

    Args:
        since: Optional lower bound on transaction creation time.
        until: Optional upper bound on transaction creation time.
        dry_run: Only list candidates.
        concurrency: Candidates reconciled in parallel.
        output_file: Optional output file path.
        output_format: Output format ('json', 'csv', 'text', 'detailed_text').
        include_details: Include itemized results in JSON output.

    Returns:
        Exit code (0 clean, 1 if any candidate failed or errored, 2 on fatal error).
    """
    database_url = get_database_url()
    db_engine = create_async_engine(database_url=database_url)

    # Create tables if they don't exist
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_async_session_factory(db_engine)

    try:
        engine = build_engine(session_factory)
        logger.info(f"Starting recovery sweep (since={since}, until={until}, dry_run={dry_run})")
        report = await engine.recover_pending(
            since=since,
            until=until,
            dry_run=dry_run,
            concurrency=concurrency,
            triggered_by="cli",
        )

        output = RecoveryReportGenerator(report).render(output_format, include_details=include_details)
        write_output(output, output_file)

        if report.failed > 0 or report.errors > 0:
            logger.warning(
                f"Recovery completed with issues: "
                f"{report.failed} failed to credit, {report.errors} errors"
            )
            return EXIT_ISSUES
        return EXIT_OK

    except ReconciliationError as e:
        logger.error(f"Recovery sweep failed: {e.message}")
        return EXIT_FATAL
    finally:
        await db_engine.dispose()


async def run_reconcile_async(reference: str, allow_failed: bool = False) -> int:
    """Reconcile a single reference and print the outcome as JSON."""
    db_engine = create_async_engine(database_url=get_database_url())
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = get_async_session_factory(db_engine)

    try:
        engine = build_engine(session_factory)
        result = await engine.reconcile(reference, allow_failed=allow_failed, trigger="cli")
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        if result.outcome in (ReconcileOutcome.CREDIT_REJECTED, ReconcileOutcome.CREDIT_AMBIGUOUS):
            return EXIT_ISSUES
        return EXIT_OK
    except TransactionNotFound as e:
        logger.error(e.message)
        return EXIT_ISSUES
    except ReconciliationError as e:
        logger.error(f"Reconciliation of {reference} failed: {e.message}")
        return EXIT_FATAL
    finally:
        await db_engine.dispose()


def run_recovery(
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    dry_run: bool = False,
    concurrency: int = 1,
    output_file: Optional[str] = None,
    output_format: str = "json",
    include_details: bool = True,
) -> int:
    """Run a recovery sweep (sync wrapper).

    Returns:
        Exit code.
    """
    return asyncio.run(run_recovery_async(
        since=since,
        until=until,
        dry_run=dry_run,
        concurrency=concurrency,
        output_file=output_file,
        output_format=output_format,
        include_details=include_details,
    ))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="meter-recharge",
        description="Recovery tools for crediting meters whose payments were never reconciled.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Recover command
    recover_parser = subparsers.add_parser(
        "recover",
        help="Run a recovery sweep over pending transactions",
    )
    recover_parser.add_argument(
        "--since", "-s",
        help="Start date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    recover_parser.add_argument(
        "--until", "-u",
        help="End date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    recover_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List candidates without reconciling them",
    )
    recover_parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=1,
        help="Candidates reconciled in parallel (default: 1)",
    )
    recover_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    recover_parser.add_argument(
        "--format", "-f",
        choices=list(REPORT_FORMATS),
        default="json",
        help="Output format (default: json)",
    )
    recover_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include summary statistics, not itemized results",
    )

    # Reconcile command
    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Reconcile a single payment reference",
    )
    reconcile_parser.add_argument("reference", help="Payment reference")
    reconcile_parser.add_argument(
        "--allow-failed",
        action="store_true",
        help="Re-verify a transaction already marked failed",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return EXIT_ISSUES

    if parsed_args.command == "recover":
        try:
            since = parse_datetime(parsed_args.since) if parsed_args.since else None
            until = parse_datetime(parsed_args.until) if parsed_args.until else None

            # A bare date as upper bound means the end of that day
            if until is not None and "T" not in parsed_args.until and ":" not in parsed_args.until:
                until = until + timedelta(days=1) - timedelta(seconds=1)

            if since and until and since > until:
                raise ValueError("--since must not be after --until")
        except ValueError as e:
            logger.error(str(e))
            return EXIT_ISSUES

        if parsed_args.concurrency < 1:
            logger.error("--concurrency must be at least 1")
            return EXIT_ISSUES

        return run_recovery(
            since=since,
            until=until,
            dry_run=parsed_args.dry_run,
            concurrency=parsed_args.concurrency,
            output_file=parsed_args.output,
            output_format=parsed_args.format,
            include_details=not parsed_args.summary_only,
        )

    if parsed_args.command == "reconcile":
        return asyncio.run(run_reconcile_async(parsed_args.reference, allow_failed=parsed_args.allow_failed))

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
