"""Command-line entry point.

    provisioner apply --state started inventory.yaml
    provisioner plan --state absent inventory.yaml
    provisioner verify inventory.yaml

Exit codes: 0 all targets ok, 1 at least one target failed, 2 bad usage or
inventory.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from provisioner.client import HypervisorClient
from provisioner.fleet import FleetDriver, format_plan
from provisioner.inventory import InventoryError, load_inventory
from provisioner.logging_config import setup_logging
from provisioner.metrics import write_metrics
from provisioner.reconciler import Reconciler
from provisioner.state import DesiredState

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="provisioner", description="Reconcile containers on a hypervisor.")
    p.add_argument("--log-level", default=None, help="Override PROVISIONER_LOG_LEVEL")
    p.add_argument("--log-format", choices=("json", "text"), default=None)
    p.add_argument("--concurrency", type=int, default=None, help="Targets reconciled in parallel")
    p.add_argument("--metrics-file", default=None,
                   help="Write Prometheus metrics here when the run ends (textfile collector)")

    sub = p.add_subparsers(dest="command", required=True)
    states = [s.value for s in DesiredState]

    apply_p = sub.add_parser("apply", help="Converge every resource onto a desired state")
    apply_p.add_argument("--state", required=True, choices=states)
    apply_p.add_argument("inventory")

    plan_p = sub.add_parser("plan", help="Show the actions apply would take")
    plan_p.add_argument("--state", required=True, choices=states)
    plan_p.add_argument("inventory")

    verify_p = sub.add_parser("verify", help="Check status, spec and readiness without changes")
    verify_p.add_argument("inventory")
    return p


def _install_cancel_handlers(cancel_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop; Ctrl-C falls back to KeyboardInterrupt
            pass


async def run_command(args: argparse.Namespace) -> int:
    descriptors = load_inventory(args.inventory)
    cancel_event = asyncio.Event()
    _install_cancel_handlers(cancel_event)

    async with HypervisorClient() as client:
        driver = FleetDriver(Reconciler(client), concurrency=args.concurrency)

        if args.command == "plan":
            plans = await driver.plan_all(
                descriptors, DesiredState(args.state), cancel_event=cancel_event
            )
            for rid in sorted(plans):
                print(format_plan(plans[rid]))
            return EXIT_FAILED if any(p.error for p in plans.values()) else EXIT_OK

        if args.command == "verify":
            report = await driver.verify_all(descriptors, cancel_event=cancel_event)
        else:
            report = await driver.run(descriptors, DesiredState(args.state), cancel_event=cancel_event)

    for line in report.lines():
        print(line)
    return report.exit_code


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, log_format=args.log_format)
    try:
        code = asyncio.run(run_command(args))
    except InventoryError as e:
        logger.error(str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE
    if args.metrics_file:
        write_metrics(args.metrics_file)
    return code


if __name__ == "__main__":
    sys.exit(main())
