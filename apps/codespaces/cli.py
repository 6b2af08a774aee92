"""
Command-line front end.

    python -m apps.codespaces.cli infrastructure <action> [--service S] [--force] [--environment E]
    python -m apps.codespaces.cli health [--service S] [--detailed]

Exit code 0 means the intended state was reached (or the operator declined
the confirmation); 1 means the action was not completed.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Callable, List, Optional

from .models.environment_models import OperationResult
from .services.container import Container, build_container
from .utils.otel import setup_logging

Output = Callable[[str], None]


def prompt_confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} (yes/no) [no]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _print_report(result: OperationResult, out: Output) -> None:
    if not result.report:
        return
    width = max(len(entry.component) for entry in result.report)
    out(f"{'Component'.ljust(width)}  Status       Details")
    for entry in result.report:
        out(f"{entry.component.ljust(width)}  {entry.status.ljust(11)}  {entry.details}")


def run_infrastructure(
    container: Container,
    action: str,
    service: Optional[str] = None,
    force: bool = False,
    environment: Optional[str] = None,
    confirm: Callable[[str], bool] = prompt_confirm,
    out: Output = print,
) -> int:
    result = container.orchestrator.execute(
        action,
        service=service,
        force=force,
        confirm=confirm,
        environment=environment,
    )
    for message in result.messages:
        out(message)
    _print_report(result, out)
    return result.exit_code


def run_health(
    container: Container,
    service: Optional[str] = None,
    detailed: bool = False,
    out: Output = print,
) -> int:
    result = asyncio.run(container.monitoring_loop.run_cycle(service))

    if result.error is not None:
        out(f"Error: {result.error}")
        return 1

    if not result.report:
        out("No services to check.")
        return 0

    for name, record in result.report.items():
        state = "healthy" if record.healthy else "UNHEALTHY"
        line = f"{name}: {state}"
        if detailed:
            line += f" ({record.details}, checked {record.last_check.isoformat()})"
        out(line)

    if result.unhealthy:
        out(f"Unhealthy services: {', '.join(result.unhealthy)}")
    return result.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codespaces", description="Codespaces infrastructure orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)

    infra = sub.add_parser("infrastructure", help="Manage Codespace infrastructure")
    # Not restricted with `choices`: an unknown action is reported as
    # "Invalid action: <value>" with exit code 1.
    infra.add_argument("action", help="status | start | stop | restart | cleanup")
    infra.add_argument("--service", default=None, help="docker | network | volume")
    infra.add_argument("--force", action="store_true", help="Skip confirmation")
    infra.add_argument("--environment", default=None, help="Environment name")

    health = sub.add_parser("health", help="Run one health monitoring cycle")
    health.add_argument("--service", default=None, help="Check a single service")
    health.add_argument("--detailed", action="store_true", help="Show probe details")
    return parser


def main(argv: Optional[List[str]] = None, container: Optional[Container] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    container = container or build_container()

    if args.command == "infrastructure":
        return run_infrastructure(
            container,
            args.action,
            service=args.service,
            force=args.force,
            environment=args.environment,
        )
    return run_health(container, service=args.service, detailed=args.detailed)


if __name__ == "__main__":
    sys.exit(main())
