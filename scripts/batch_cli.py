#!/usr/bin/env python3
"""
Operator command line for the card batch jobs.

Launch parameters are ``name(type)=value`` tokens; type is string (default),
int or date.  The process exit status is the execution's return code
(0 completed, 4 completed with skips, 8 completed with step failures,
12 stopped, 16 failed).

Usage:
    python3 scripts/batch_cli.py [--config PATH] [--db-url URL] <command> ...

Examples:
    # Create the metadata and domain tables
    python3 scripts/batch_cli.py init-db

    # Nightly posting
    python3 scripts/batch_cli.py launch daily_posting \\
        "processing_date(date)=2024-01-15" input_file=/data/dalytran.txt

    # Resume the same instance after a failure
    python3 scripts/batch_cli.py restart daily_posting \\
        "processing_date(date)=2024-01-15" input_file=/data/dalytran.txt

    # Operator control
    python3 scripts/batch_cli.py status <execution-id>
    python3 scripts/batch_cli.py stop <execution-id>
    python3 scripts/batch_cli.py recover <execution-id>
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
from pathlib import Path
from uuid import UUID

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

EXIT_USAGE = 2
EXIT_ERROR = 16


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Launch, restart and inspect card batch jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Batch configuration YAML (default: packaged defaults/batch.yaml).",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="Database URL overriding the configured one.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create metadata and domain tables.")
    sub.add_parser("jobs", help="List registered jobs.")

    for name, text in (
        ("launch", "Run the first execution of a job instance."),
        ("restart", "Resume a FAILED or STOPPED job instance."),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("job_name")
        cmd.add_argument("parameters", nargs="*", help="name(type)=value tokens")

    for name, text in (
        ("status", "Show status, counters and first failures of an execution."),
        ("stop", "Request a stop at the next chunk boundary."),
        ("recover", "Mark an execution of a crashed process FAILED."),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("execution_id", type=UUID)

    return parser.parse_args(argv)


def _print_report(report) -> None:
    execution = report.execution
    print(f"Execution:  {execution.execution_id}")
    print(f"Job:        {execution.job_name} (attempt {execution.attempt})")
    print(f"Status:     {execution.status.value}")
    print(f"Exit code:  {execution.exit_code.value}")
    if execution.exit_description:
        print(f"Exit text:  {execution.exit_description}")
    if report.failing_step:
        print(f"Failed in:  {report.failing_step}")
    for step in report.steps:
        c = step.counters
        print(
            f"  {step.step_name:<28} {step.status.value:<10} "
            f"read={c.read_count} write={c.write_count} filter={c.filter_count} "
            f"skip={c.skip_count} commit={c.commit_count} rollback={c.rollback_count}"
        )
        for failure in step.failures:
            print(
                f"    [{failure.action.value}] {failure.phase.value} {failure.item_ref}: "
                f"{failure.exception_type} {failure.message}"
            )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from cardbatch_config import get_batch_config
    from cardbatch_engine.domain.parameters import parse_cli_parameters
    from cardbatch_engine.orchestrator import JobOrchestrator
    from cardbatch_jobs import default_job_registry
    from cardbatch_kernel.db.engine import create_tables, init_engine_from_url
    from cardbatch_kernel.exceptions import BatchKernelError
    from cardbatch_kernel.logging_config import configure_logging

    configure_logging(stream=sys.stderr)

    try:
        settings = get_batch_config(args.config)
    except Exception as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return EXIT_ERROR
    if args.db_url:
        settings = dataclasses.replace(settings, database_url=args.db_url)

    registry = default_job_registry()

    if args.command == "jobs":
        for name in registry.list_jobs():
            print(f"{name:<24} {registry.get(name).description}")
        return 0

    if args.command == "init-db":
        engine = init_engine_from_url(
            settings.database_url, io_timeout_seconds=settings.io_timeout_seconds,
        )
        create_tables(engine)
        print(f"Tables created in {settings.database_url}")
        return 0

    orchestrator = JobOrchestrator.from_settings(registry, settings=settings)

    try:
        if args.command in ("launch", "restart"):
            params = parse_cli_parameters(args.parameters, args.job_name)
            run = orchestrator.launch if args.command == "launch" else orchestrator.restart
            execution = run(args.job_name, params)
            _print_report(orchestrator.status(execution.execution_id))
            return execution.exit_code.return_code

        if args.command == "status":
            report = orchestrator.status(args.execution_id)
            _print_report(report)
            return report.execution.exit_code.return_code

        if args.command == "stop":
            execution = orchestrator.stop(args.execution_id)
            print(f"Stop requested for {execution.execution_id} ({execution.status.value})")
            return 0

        if args.command == "recover":
            execution = orchestrator.recover(args.execution_id)
            print(f"Execution {execution.execution_id} marked {execution.status.value}")
            return 0
    except BatchKernelError as e:
        print(f"ERROR [{e.code}]: {e}", file=sys.stderr)
        return EXIT_USAGE if e.code in _USAGE_CODES else EXIT_ERROR

    print(f"ERROR: unknown command {args.command!r}", file=sys.stderr)
    return EXIT_USAGE


_USAGE_CODES = frozenset({"JOB_NOT_REGISTERED", "INVALID_JOB_PARAMETERS"})


if __name__ == "__main__":
    sys.exit(main())
