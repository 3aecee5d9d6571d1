"""
Diagnostic workflow for operator-driven role repair.

State machine per identity:

    idle -> checking -> {synced, mismatch}
    mismatch -> remediating -> rechecking -> {synced, mismatch}

While a remediation is in flight (remediating / rechecking) new checks for
the same identity are refused with the current state, until the remediation
settles or remediation_timeout_seconds pass; after that a fresh check is
forced.

Settled runs are dropped once they have been idle for
remediation_timeout_seconds, so the run table only holds recent identities.

Callers of remediate() wait at most client_timeout_seconds. If the work
takes longer they are told "pending" and the remediation finishes in the
background, moving the run to rechecking and then to a terminal state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from authz.platform.errors import IdentityNotFoundError, IdentitySourceError
from authz.services.reconciliation import (
    Diagnosis,
    ReconciliationEngine,
    RemediationDirection,
    RemediationResult,
    RemediationStatus,
)
from authz.services.role_store import Performer, SYSTEM_PERFORMER

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    SYNCED = "synced"
    MISMATCH = "mismatch"
    REMEDIATING = "remediating"
    RECHECKING = "rechecking"


ACTIVE_STATES = frozenset({WorkflowState.REMEDIATING, WorkflowState.RECHECKING})
SETTLED_STATES = frozenset({WorkflowState.IDLE, WorkflowState.SYNCED, WorkflowState.MISMATCH})


@dataclass
class WorkflowRun:
    """Mutable workflow state of one identity."""
    identity_id: str
    state: WorkflowState = WorkflowState.IDLE
    diagnosis: Optional[Diagnosis] = None
    direction: Optional[RemediationDirection] = None
    remediation_started_at: Optional[float] = None
    last_result: Optional[RemediationResult] = None
    task: Optional[asyncio.Task] = None
    touched_at: float = 0.0


@dataclass
class CheckOutcome:
    identity_id: str
    state: WorkflowState
    diagnosis: Optional[Diagnosis]
    # True when the check was refused because a remediation is in flight
    blocked: bool = False


@dataclass
class RemediationAck:
    identity_id: str
    direction: RemediationDirection
    status: RemediationStatus
    message: str
    state: WorkflowState
    in_flight_direction: Optional[RemediationDirection] = None
    conflict: bool = False


class DiagnosticWorkflow:
    """
    Drives ReconciliationEngine on behalf of the diagnostic API.

    One instance per process; it owns the background remediation tasks.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        client_timeout_seconds: float,
        remediation_timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.client_timeout_seconds = client_timeout_seconds
        self.remediation_timeout_seconds = remediation_timeout_seconds
        self._clock = clock
        self._runs: dict[str, WorkflowRun] = {}
        self._tasks: set[asyncio.Task] = set()

    def _run_for(self, identity_id: str) -> WorkflowRun:
        self.evict_settled()
        run = self._runs.get(identity_id)
        if run is None:
            run = WorkflowRun(identity_id=identity_id)
            self._runs[identity_id] = run
        run.touched_at = self._clock()
        return run

    def evict_settled(self) -> int:
        """
        Drop runs that settled more than remediation_timeout_seconds ago.

        An evicted identity reads as idle; its next check starts a new run.
        """
        cutoff = self._clock() - self.remediation_timeout_seconds
        stale = [
            identity_id
            for identity_id, run in self._runs.items()
            if run.state in SETTLED_STATES
            and (run.task is None or run.task.done())
            and run.touched_at <= cutoff
        ]
        for identity_id in stale:
            del self._runs[identity_id]
        return len(stale)

    def state_of(self, identity_id: str) -> WorkflowState:
        run = self._runs.get(identity_id)
        return run.state if run else WorkflowState.IDLE

    def _remediation_active(self, run: WorkflowRun) -> bool:
        """True while a remediation blocks checks (and has not timed out)."""
        if run.state not in ACTIVE_STATES:
            return False
        if run.remediation_started_at is None:
            return False
        elapsed = self._clock() - run.remediation_started_at
        if elapsed < self.remediation_timeout_seconds:
            return True
        logger.warning(
            "diagnostic.remediation_timeout",
            extra={
                "identity_id": run.identity_id,
                "state": run.state.value,
                "elapsed_seconds": round(elapsed, 3),
            },
        )
        return False

    async def check(self, identity_id: str) -> CheckOutcome:
        """
        Diagnose an identity.

        Raises:
            IdentityNotFoundError, IdentitySourceError: from the engine
        """
        run = self._run_for(identity_id)
        if self._remediation_active(run):
            return CheckOutcome(
                identity_id=identity_id,
                state=run.state,
                diagnosis=run.diagnosis,
                blocked=True,
            )

        previous = run.state
        run.state = WorkflowState.CHECKING
        try:
            diagnosis = await self.engine.diagnose(identity_id)
        except Exception:
            run.state = previous if previous not in ACTIVE_STATES else WorkflowState.IDLE
            raise

        run.diagnosis = diagnosis
        run.state = WorkflowState.MISMATCH if diagnosis.mismatch else WorkflowState.SYNCED
        run.touched_at = self._clock()
        return CheckOutcome(identity_id=identity_id, state=run.state, diagnosis=diagnosis)

    async def remediate(
        self,
        identity_id: str,
        direction: RemediationDirection,
        performed_by: Performer = SYSTEM_PERFORMER,
    ) -> RemediationAck:
        """
        Start a remediation and wait up to the client timeout for it.

        Raises:
            IdentityNotFoundError: If the identity does not exist (only when
                that is known within the client timeout)
        """
        run = self._run_for(identity_id)

        if run.task is not None and not run.task.done() and self._remediation_active(run):
            conflict = run.direction is not None and run.direction != direction
            return RemediationAck(
                identity_id=identity_id,
                direction=direction,
                status=RemediationStatus.IN_PROGRESS,
                message="A remediation for this identity is already in progress",
                state=run.state,
                in_flight_direction=run.direction,
                conflict=conflict,
            )

        run.state = WorkflowState.REMEDIATING
        run.direction = direction
        run.remediation_started_at = self._clock()
        task = asyncio.create_task(self._run_remediation(run, direction, performed_by))
        run.task = task
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

        try:
            result = await asyncio.wait_for(
                asyncio.shield(task), timeout=self.client_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.info(
                "diagnostic.remediation_pending",
                extra={"identity_id": identity_id, "direction": direction.value},
            )
            return RemediationAck(
                identity_id=identity_id,
                direction=direction,
                status=RemediationStatus.PENDING,
                message="Remediation is still running; check again shortly",
                state=run.state,
                in_flight_direction=direction,
            )

        return RemediationAck(
            identity_id=identity_id,
            direction=direction,
            status=result.status,
            message=result.message,
            state=run.state,
            in_flight_direction=result.in_flight_direction,
            conflict=result.conflict,
        )

    async def _run_remediation(
        self,
        run: WorkflowRun,
        direction: RemediationDirection,
        performed_by: Performer,
    ) -> RemediationResult:
        try:
            result = await self.engine.remediate(run.identity_id, direction, performed_by)
        except Exception:
            run.state = WorkflowState.MISMATCH
            run.remediation_started_at = None
            run.touched_at = self._clock()
            raise

        run.last_result = result
        if result.status is RemediationStatus.IN_PROGRESS:
            run.state = WorkflowState.MISMATCH
            run.touched_at = self._clock()
            return result

        run.state = WorkflowState.RECHECKING
        try:
            diagnosis = await self.engine.diagnose(run.identity_id)
        except (IdentitySourceError, IdentityNotFoundError) as e:
            logger.warning(
                "diagnostic.recheck_failed",
                extra={"identity_id": run.identity_id, "error": str(e)},
            )
            run.state = WorkflowState.MISMATCH
            run.remediation_started_at = None
            run.touched_at = self._clock()
            return result

        run.diagnosis = diagnosis
        if result.status is RemediationStatus.FAILED or diagnosis.mismatch:
            run.state = WorkflowState.MISMATCH
        else:
            run.state = WorkflowState.SYNCED
        run.remediation_started_at = None
        run.touched_at = self._clock()

        logger.info(
            "diagnostic.remediation_settled",
            extra={
                "identity_id": run.identity_id,
                "direction": direction.value,
                "status": result.status.value,
                "state": run.state.value,
            },
        )
        return result

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "diagnostic.remediation_failed",
                extra={"error": str(error), "error_type": type(error).__name__},
            )

    async def shutdown(self) -> None:
        """Cancel background remediations (application shutdown)."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
