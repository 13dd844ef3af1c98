"""
Operator commands for the reconciliation engine.

    python -m app.cli once
    python -m app.cli health
    python -m app.cli stats --hours 48
"""
import argparse
import asyncio
import json
import sys
from app.config import settings, validate_reconciliation_settings
from app.core.logging import setup_logging
from app.database import DatabasePool
from app.models.monitoring import HealthStatus
from app.services import monitoring_service
from app.services.reconciliation_service import run_reconciliation_pass


async def _once() -> int:
    result = await run_reconciliation_pass()
    summary = result.model_dump()
    summary["api_success_rate"] = result.api_success_rate
    print(json.dumps(summary, indent=2, default=str))
    return 0 if result.success else 1


async def _health() -> int:
    report = await monitoring_service.health_check()
    print(json.dumps(report.model_dump(mode="json"), indent=2))
    return 1 if report.status == HealthStatus.CRITICAL else 0


async def _stats(hours: int) -> int:
    stats = await monitoring_service.get_execution_stats(hours)
    print(json.dumps(stats.model_dump(mode="json"), indent=2))
    return 0


async def _run(args) -> int:
    try:
        if args.command == "once":
            return await _once()
        if args.command == "health":
            return await _health()
        return await _stats(args.hours)
    finally:
        await DatabasePool.close_pool()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reconciliation", description="Reconciliation engine commands")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("once", help="Run a single reconciliation pass")
    subparsers.add_parser("health", help="Print the health report, exit 1 when critical")

    stats = subparsers.add_parser("stats", help="Aggregate recent executions")
    stats.add_argument("--hours", type=int, default=24)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    validate_reconciliation_settings(settings)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
