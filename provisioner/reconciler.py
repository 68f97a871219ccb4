"""Idempotent lifecycle reconciliation for a single resource.

Every call starts from a fresh status query, looks the (desired, observed)
pair up in ResourceStateMachine, and walks the resulting actions in order:

    query -> [conflict check] -> mutate -> settle -> ... -> [probe]

Usage:
    async with HypervisorClient() as client:
        reconciler = Reconciler(client)
        result = await reconciler.reconcile(descriptor, DesiredState.STARTED)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from provisioner.client import HypervisorClient
from provisioner.config import settings
from provisioner.errors import (
    AuthorizationError,
    FatalApiError,
    HypervisorError,
    ReadinessTimeout,
    ResourceConflict,
    ResourceNotFound,
    SettleTimeout,
    UnknownStatus,
)
from provisioner.metrics import reconcile_duration
from provisioner.readiness import ReadinessProbe, get_probe, wait_ready
from provisioner.retry import with_retry
from provisioner.schemas import (
    ErrorDetail,
    ReconciliationPlan,
    ReconciliationResult,
    ResourceDescriptor,
)
from provisioner.state import Action, DesiredState, ObservedStatus, Outcome, ProbeOutcome
from provisioner.state_machine import ResourceStateMachine

logger = logging.getLogger(__name__)


@dataclass
class ReconcileProgress:
    """What one reconcile call has observed and done so far.

    Passed in by callers that may abandon the call (timeout, cancellation)
    and still need to report the actions that completed.
    """

    descriptor: ResourceDescriptor
    desired: DesiredState
    status: ObservedStatus = ObservedStatus.UNKNOWN
    actions: list[Action] = field(default_factory=list)

    @property
    def resource_id(self) -> int:
        return self.descriptor.id

    def failed_result(self, error: ErrorDetail) -> ReconciliationResult:
        """Result for a call that stopped before finishing."""
        return ReconciliationResult(
            resource_id=self.descriptor.id,
            outcome=Outcome.FAILED,
            status=self.status,
            changed=bool(self.actions),
            error=error,
            actions=list(self.actions),
        )


class Reconciler:
    """Converges one resource at a time onto a desired lifecycle state.

    Owns every lifecycle decision. The client only executes calls and the
    descriptor is never modified. Concurrent calls for the same identifier
    must be serialized by the caller.
    """

    def __init__(
        self,
        client: HypervisorClient,
        *,
        probe: ReadinessProbe | None = None,
        readiness_port: int | None = None,
        readiness_interval: float | None = None,
        readiness_max_attempts: int | None = None,
        probe_when_running: bool | None = None,
        retry_max_attempts: int | None = None,
        status_poll_interval: float | None = None,
        status_poll_attempts: int | None = None,
        force_stop_fallback: bool | None = None,
        check_conflicts: bool | None = None,
    ):
        def _pick(value, default):
            return default if value is None else value

        self.client = client
        self.probe = probe or get_probe()
        self.readiness_port = _pick(readiness_port, settings.readiness_port)
        self.readiness_interval = _pick(readiness_interval, settings.readiness_interval)
        self.readiness_max_attempts = _pick(readiness_max_attempts, settings.readiness_max_attempts)
        self.probe_when_running = _pick(probe_when_running, settings.probe_when_running)
        self.retry_max_attempts = _pick(retry_max_attempts, settings.retry_max_attempts)
        self.status_poll_interval = _pick(status_poll_interval, settings.status_poll_interval)
        self.status_poll_attempts = max(1, _pick(status_poll_attempts, settings.status_poll_attempts))
        self.force_stop_fallback = _pick(force_stop_fallback, settings.force_stop_fallback)
        self.check_conflicts = _pick(check_conflicts, settings.check_conflicts)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        descriptor: ResourceDescriptor,
        desired: DesiredState,
        progress: ReconcileProgress | None = None,
    ) -> ReconciliationResult:
        """Bring one resource to `desired`.

        Never raises HypervisorError: failures are reported in the result
        together with the actions that did complete. Cancellation propagates;
        a caller that passes `progress` can still see what was done.
        """
        desired = DesiredState(desired)
        run = progress or ReconcileProgress(descriptor=descriptor, desired=desired)
        t0 = time.monotonic()
        logger.info(
            f"Reconciling resource {descriptor.id} ({descriptor.hostname}) -> {desired.value}",
            extra={"event": "reconcile_start", "resource_id": descriptor.id,
                   "desired": desired.value},
        )

        error: ErrorDetail | None = None
        try:
            actions = await self._observe_and_plan(run)
            for action in actions:
                if action == Action.PROBE:
                    await self._probe(run)
                else:
                    await self._apply(run, action)
        except HypervisorError as e:
            error = ErrorDetail.from_exception(e)

        if error is not None:
            outcome = Outcome.FAILED
        elif run.actions:
            outcome = Outcome.CHANGED
        else:
            outcome = Outcome.UNCHANGED

        elapsed = time.monotonic() - t0
        result = ReconciliationResult(
            resource_id=descriptor.id,
            outcome=outcome,
            status=run.status,
            changed=bool(run.actions),
            error=error,
            actions=list(run.actions),
            duration_ms=int(elapsed * 1000),
        )
        reconcile_duration.labels(desired=desired.value, outcome=outcome.value).observe(elapsed)
        log = logger.warning if error else logger.info
        log(
            f"Resource {descriptor.id} {outcome.value}: status={run.status.value}"
            + (f" error={error.kind}: {error.message}" if error else ""),
            extra={
                "event": "reconcile_done",
                "resource_id": descriptor.id,
                "desired": desired.value,
                "outcome": outcome.value,
                "status": run.status.value,
                "actions": [a.value for a in run.actions],
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def plan(
        self,
        descriptor: ResourceDescriptor,
        desired: DesiredState,
    ) -> ReconciliationPlan:
        """Compute what reconcile() would do, without mutating anything."""
        desired = DesiredState(desired)
        run = ReconcileProgress(descriptor=descriptor, desired=desired)
        try:
            actions = await self._observe_and_plan(run)
        except HypervisorError as e:
            return ReconciliationPlan(
                resource_id=descriptor.id,
                desired=desired,
                observed=run.status,
                error=ErrorDetail.from_exception(e),
            )
        return ReconciliationPlan(
            resource_id=descriptor.id,
            desired=desired,
            observed=run.status,
            actions=list(actions),
        )

    async def verify(self, descriptor: ResourceDescriptor) -> ReconciliationResult:
        """Check an existing resource without changing it.

        Reports the observed status, fails on a specification conflict, and
        runs the readiness probe when the resource is running.
        """
        run = ReconcileProgress(descriptor=descriptor, desired=DesiredState.PRESENT)
        t0 = time.monotonic()
        error: ErrorDetail | None = None
        try:
            run.status = await self._query(run)
            if run.status == ObservedStatus.UNKNOWN:
                raise UnknownStatus(descriptor.id)
            await self._check_conflict(run)
            if run.status == ObservedStatus.RUNNING:
                await self._probe(run)
        except HypervisorError as e:
            error = ErrorDetail.from_exception(e)
        return ReconciliationResult(
            resource_id=descriptor.id,
            outcome=Outcome.FAILED if error else Outcome.UNCHANGED,
            status=run.status,
            error=error,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _observe_and_plan(self, run: ReconcileProgress) -> tuple[Action, ...]:
        run.status = await self._query(run)
        if run.status == ObservedStatus.UNKNOWN:
            raise UnknownStatus(run.resource_id)
        if run.desired != DesiredState.ABSENT:
            await self._check_conflict(run)
        return ResourceStateMachine.actions_for(
            run.desired, run.status, probe_when_running=self.probe_when_running
        )

    async def _query(self, run: ReconcileProgress) -> ObservedStatus:
        return await with_retry(
            self.client.query,
            run.resource_id,
            max_attempts=self.retry_max_attempts,
            operation="query",
        )

    async def _check_conflict(self, run: ReconcileProgress) -> None:
        """Refuse to touch an existing resource whose spec differs from the descriptor."""
        if not self.check_conflicts or not ResourceStateMachine.exists(run.status):
            return
        config = await with_retry(
            self.client.describe,
            run.resource_id,
            max_attempts=self.retry_max_attempts,
            operation="describe",
        )
        differences = run.descriptor.spec_differences(config)
        if differences:
            raise ResourceConflict(run.resource_id, differences)

    async def _apply(self, run: ReconcileProgress, action: Action) -> None:
        resource_id = run.resource_id
        if action == Action.CREATE:
            await self._mutate(run, action, lambda: self.client.create(run.descriptor))
        elif action == Action.START:
            await self._mutate(run, action, lambda: self.client.start(resource_id))
        elif action == Action.STOP:
            await self._stop(run)
            return
        elif action == Action.DELETE:
            await self._mutate(run, action, lambda: self._delete(resource_id))
        else:
            raise ValueError(f"Not a mutating action: {action}")
        await self._settle(run, action)

    async def _delete(self, resource_id: int) -> None:
        try:
            await self.client.delete(resource_id)
        except ResourceNotFound:
            # Gone already, which is what we wanted
            logger.info(f"Resource {resource_id} already deleted")

    async def _stop(self, run: ReconcileProgress) -> None:
        """Graceful stop, falling back to a forced stop if configured."""
        resource_id = run.resource_id
        try:
            await self._mutate(
                run, Action.STOP, lambda: self.client.stop(resource_id, graceful=True)
            )
            await self._settle(run, Action.STOP)
        except (FatalApiError, SettleTimeout) as e:
            if not self.force_stop_fallback or isinstance(e, AuthorizationError):
                raise
            logger.warning(
                f"Graceful stop of resource {resource_id} failed ({e.message}), forcing",
                extra={"event": "force_stop", "resource_id": resource_id},
            )
            await self._mutate(
                run, Action.STOP, lambda: self.client.stop(resource_id, graceful=False)
            )
            await self._settle(run, Action.STOP)

    async def _mutate(
        self,
        run: ReconcileProgress,
        action: Action,
        call: Callable[[], Awaitable[None]],
    ) -> None:
        """Issue a mutating call with retry.

        Before re-issuing after a transient failure, re-query: the first
        attempt may have been applied even though its response was lost.
        """
        settled = ResourceStateMachine.settled_states(action)
        first_attempt = True

        async def _attempt() -> None:
            nonlocal first_attempt
            if not first_attempt:
                run.status = await self.client.query(run.resource_id)
                if run.status in settled:
                    logger.info(
                        f"{action.value} of resource {run.resource_id} already took effect",
                        extra={"event": "mutation_applied", "resource_id": run.resource_id},
                    )
                    return
            first_attempt = False
            await call()

        await with_retry(
            _attempt,
            max_attempts=self.retry_max_attempts,
            operation=action.value,
        )
        if not run.actions or run.actions[-1] != action:
            run.actions.append(action)

    async def _settle(self, run: ReconcileProgress, action: Action) -> None:
        """Poll status until the action's effect is visible."""
        settled = ResourceStateMachine.settled_states(action)
        for attempt in range(1, self.status_poll_attempts + 1):
            run.status = await self._query(run)
            if run.status in settled:
                return
            if attempt < self.status_poll_attempts:
                await asyncio.sleep(self.status_poll_interval)
        raise SettleTimeout(run.resource_id, set(settled), run.status)

    async def _probe(self, run: ReconcileProgress) -> None:
        address = run.descriptor.probe_address
        outcome = await wait_ready(
            address,
            self.readiness_port,
            interval=self.readiness_interval,
            max_attempts=self.readiness_max_attempts,
            probe=self.probe,
        )
        if outcome == ProbeOutcome.TIMED_OUT:
            raise ReadinessTimeout(
                run.resource_id, address, self.readiness_port, self.readiness_max_attempts
            )
