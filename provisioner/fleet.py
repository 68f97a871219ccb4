"""Fleet-wide fan-out of reconciliation.

Targets are independent: each runs in its own task, bounded by a semaphore,
and a failure in one never stops the others. Every target ends with a result.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, TypeVar

from provisioner.config import settings
from provisioner.reconciler import ReconcileProgress, Reconciler
from provisioner.schemas import (
    ErrorDetail,
    ReconciliationPlan,
    ReconciliationResult,
    ResourceDescriptor,
)
from provisioner.state import DesiredState, ObservedStatus, Outcome
from provisioner.timeouts import with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FleetReport:
    """Per-target results of one fleet run."""

    results: dict[int, ReconciliationResult] = field(default_factory=dict)

    @property
    def failed(self) -> list[ReconciliationResult]:
        return [r for r in self.results.values() if r.failed]

    @property
    def changed(self) -> list[ReconciliationResult]:
        return [r for r in self.results.values() if r.changed]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def lines(self) -> list[str]:
        """One line per target, ordered by identifier, then a summary line."""
        lines = [format_result(self.results[rid]) for rid in sorted(self.results)]
        lines.append(self.summary())
        return lines

    def summary(self) -> str:
        total = len(self.results)
        failed = len(self.failed)
        return (
            f"{total} target(s): {len(self.changed)} changed, "
            f"{total - failed} ok, {failed} failed"
        )


def format_result(result: ReconciliationResult) -> str:
    line = (
        f"{result.resource_id} changed={str(result.changed).lower()} "
        f"status={result.status.value}"
    )
    if result.error is not None:
        line += f" error={result.error.kind}: {result.error.message}"
    return line


def format_plan(plan: ReconciliationPlan) -> str:
    actions = ",".join(a.value for a in plan.actions) or "none"
    line = f"{plan.resource_id} observed={plan.observed.value} actions={actions}"
    if plan.error is not None:
        line += f" error={plan.error.kind}: {plan.error.message}"
    return line


def _check_unique_ids(descriptors: list[ResourceDescriptor]) -> None:
    seen: set[int] = set()
    for descriptor in descriptors:
        if descriptor.id in seen:
            raise ValueError(f"Resource {descriptor.id} appears more than once in the batch")
        seen.add(descriptor.id)


def _failed_result(descriptor: ResourceDescriptor, error: ErrorDetail) -> ReconciliationResult:
    return ReconciliationResult(
        resource_id=descriptor.id,
        outcome=Outcome.FAILED,
        status=ObservedStatus.UNKNOWN,
        error=error,
    )


def _failed_plan(desired: DesiredState) -> Callable[[ResourceDescriptor, ErrorDetail], ReconciliationPlan]:
    def _build(descriptor: ResourceDescriptor, error: ErrorDetail) -> ReconciliationPlan:
        return ReconciliationPlan(
            resource_id=descriptor.id,
            desired=desired,
            observed=ObservedStatus.UNKNOWN,
            error=error,
        )
    return _build


class FleetDriver:
    """Runs the reconciler over many descriptors with bounded parallelism."""

    def __init__(
        self,
        reconciler: Reconciler,
        concurrency: int | None = None,
        reconcile_timeout: float | None = None,
    ):
        self.reconciler = reconciler
        self.concurrency = max(1, concurrency or settings.max_concurrency)
        self.reconcile_timeout = reconcile_timeout or settings.reconcile_timeout

    async def run(
        self,
        descriptors: Iterable[ResourceDescriptor],
        desired: DesiredState,
        cancel_event: asyncio.Event | None = None,
    ) -> FleetReport:
        """Reconcile every descriptor to `desired`.

        A target that times out or is cancelled keeps the actions it completed
        and the last status it observed.
        """
        desired = DesiredState(desired)
        descriptors = list(descriptors)
        progress = {d.id: ReconcileProgress(descriptor=d, desired=desired) for d in descriptors}
        results = await self._fan_out(
            descriptors,
            lambda d: self.reconciler.reconcile(d, desired, progress=progress[d.id]),
            lambda d, error: progress[d.id].failed_result(error),
            cancel_event,
            description=f"reconcile -> {desired.value}",
        )
        report = FleetReport(results=results)
        logger.info(
            report.summary(),
            extra={"event": "fleet_done", "desired": desired.value,
                   "failed": [r.resource_id for r in report.failed]},
        )
        return report

    async def verify_all(
        self,
        descriptors: Iterable[ResourceDescriptor],
        cancel_event: asyncio.Event | None = None,
    ) -> FleetReport:
        """Verify every descriptor without mutating anything."""
        results = await self._fan_out(
            list(descriptors),
            self.reconciler.verify,
            _failed_result,
            cancel_event,
            description="verify",
        )
        return FleetReport(results=results)

    async def plan_all(
        self,
        descriptors: Iterable[ResourceDescriptor],
        desired: DesiredState,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[int, ReconciliationPlan]:
        """Dry-run every descriptor."""
        desired = DesiredState(desired)
        return await self._fan_out(
            list(descriptors),
            lambda d: self.reconciler.plan(d, desired),
            _failed_plan(desired),
            cancel_event,
            description=f"plan -> {desired.value}",
        )

    async def _fan_out(
        self,
        descriptors: list[ResourceDescriptor],
        worker: Callable[[ResourceDescriptor], Awaitable[T]],
        on_failure: Callable[[ResourceDescriptor, ErrorDetail], T],
        cancel_event: asyncio.Event | None,
        description: str,
    ) -> dict[int, T]:
        _check_unique_ids(descriptors)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(descriptor: ResourceDescriptor) -> T:
            try:
                async with semaphore:
                    return await with_timeout(
                        worker(descriptor),
                        self.reconcile_timeout,
                        f"{description} for resource {descriptor.id}",
                    )
            except asyncio.TimeoutError:
                return on_failure(descriptor, ErrorDetail(
                    kind="Timeout",
                    message=f"Gave up after {self.reconcile_timeout}s",
                ))
            except asyncio.CancelledError:
                if cancel_event is None or not cancel_event.is_set():
                    raise
                logger.warning(f"Resource {descriptor.id} cancelled")
                return on_failure(descriptor, ErrorDetail(
                    kind="Cancelled",
                    message="Cancelled before completion",
                ))
            except Exception as e:
                logger.exception(f"Unexpected error for resource {descriptor.id}: {e}")
                return on_failure(descriptor, ErrorDetail.from_exception(e))

        tasks = {
            d.id: asyncio.create_task(_guarded(d), name=f"{description}:{d.id}")
            for d in descriptors
        }

        watcher: asyncio.Task | None = None
        if cancel_event is not None and tasks:
            async def _watch() -> None:
                await cancel_event.wait()
                for task in tasks.values():
                    task.cancel()
            watcher = asyncio.create_task(_watch(), name="fleet-cancel-watcher")

        try:
            outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            if watcher is not None:
                watcher.cancel()

        results: dict[int, T] = {}
        for descriptor, outcome in zip(descriptors, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                # Cancelled before the task got to run its handler
                outcome = on_failure(descriptor, ErrorDetail(
                    kind="Cancelled",
                    message="Cancelled before completion",
                ))
            elif isinstance(outcome, BaseException):
                raise outcome
            results[descriptor.id] = outcome
        return results
