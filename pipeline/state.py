"""
Persisted pipeline state machine with single-flight locking.

One row in pipeline_states per pipeline_id holds the status, the lock owner
and the outputs of completed steps. The lock is taken with a compare-and-set
on the row's version column, so two processes racing for the same pipeline
cannot both win regardless of the database's upsert features.

State machine:

    idle ──> locked ──> running ──> completed ──┐
     ^         │           │                    │
     │         │           └──> failed ─────────┤
     │         │                                │
     └─────────┴──────── (unlock) <─────────────┘

    any state ──> cancelled ──> idle
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from pydantic_core import to_jsonable_python
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.exceptions import StateTransitionError
from models.base import PipelineStatus, utcnow
from models.pipeline_state import PipelineStateRecord, PipelineTransition
from schemas.pipeline import (
    PipelineHealth,
    PipelineState,
    RecoveryPoint,
    StateTransitionInfo,
)

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    PipelineStatus.IDLE: {PipelineStatus.LOCKED},
    PipelineStatus.LOCKED: {PipelineStatus.RUNNING, PipelineStatus.IDLE},
    PipelineStatus.RUNNING: {PipelineStatus.COMPLETED, PipelineStatus.FAILED},
    PipelineStatus.COMPLETED: {PipelineStatus.IDLE},
    PipelineStatus.FAILED: {PipelineStatus.IDLE},
    PipelineStatus.CANCELLED: {PipelineStatus.IDLE},
}

TERMINAL_STATUSES = {
    PipelineStatus.COMPLETED,
    PipelineStatus.FAILED,
    PipelineStatus.CANCELLED,
}

HEALTH_WINDOW = 20

UPDATABLE_FIELDS = {
    "status",
    "current_step",
    "last_run_time",
    "last_success_time",
    "last_run_status",
    "step_data",
    "metadata",
}


def is_valid_transition(from_status: PipelineStatus, to_status: PipelineStatus) -> bool:
    if to_status == PipelineStatus.CANCELLED:
        return from_status != PipelineStatus.CANCELLED
    return to_status in VALID_TRANSITIONS.get(from_status, set())


class PipelineStateManager:
    """
    Owns the pipeline_states row of one pipeline.

    Every method opens its own short session, so one manager can be shared
    by the orchestrator and by health checks running alongside it.
    """

    def __init__(
        self,
        pipeline_id: str,
        session_maker: async_sessionmaker,
        lock_timeout_ms: Optional[int] = None,
    ):
        self.pipeline_id = pipeline_id
        self.session_maker = session_maker
        self.lock_timeout_ms = settings.LOCK_TIMEOUT_MS if lock_timeout_ms is None else lock_timeout_ms
        self.lock_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_state(self) -> PipelineState:
        """Current state. A pipeline that never ran reads as idle."""
        async with self.session_maker() as session:
            row = await self._get_row(session)
            if row is None:
                return PipelineState(pipeline_id=self.pipeline_id)
            return self._to_state(row)

    async def is_status(self, status: PipelineStatus) -> bool:
        state = await self.get_state()
        return state.status == PipelineStatus(status)

    async def get_step_data(self, step_name: str) -> Any:
        state = await self.get_state()
        return state.step_data.get(step_name)

    async def get_time_since_last_success(self) -> Optional[int]:
        """Milliseconds since the last successful run, None if it never succeeded"""
        state = await self.get_state()
        if state.last_success_time is None:
            return None
        return int((utcnow() - state.last_success_time).total_seconds() * 1000)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def update_state(
        self,
        *,
        owner_lock_id: Optional[str] = None,
        **changes: Any,
    ) -> Optional[PipelineState]:
        """
        Persist a partial update.

        A status change is validated against the state machine and appended
        to the transition history. Entering running stamps last_run_time;
        entering a terminal status records it as last_run_status.

        With owner_lock_id set the write only happens while that lock still
        holds the row. Skipped writes and store errors are logged and
        return None.

        Raises:
            StateTransitionError: The status change is not allowed
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown state fields: {', '.join(sorted(unknown))}")

        transition = None
        try:
            async with self.session_maker() as session:
                row = await self._get_or_create_row(session)
                if not self._owned_by(row, owner_lock_id, "state update"):
                    return None
                previous_status = PipelineStatus(row.status)

                if "status" in changes and changes["status"] is not None:
                    new_status = PipelineStatus(changes["status"])
                    if new_status != previous_status:
                        self._validate(previous_status, new_status)
                        transition = (previous_status, new_status)
                        row.status = new_status
                        if new_status == PipelineStatus.RUNNING:
                            row.last_run_time = utcnow()
                        if new_status in TERMINAL_STATUSES:
                            row.last_run_status = new_status

                for field in ("current_step", "last_run_time", "last_success_time", "last_run_status"):
                    if field in changes:
                        setattr(row, field, changes[field])
                if "step_data" in changes:
                    row.step_data = to_jsonable_python(changes["step_data"] or {})
                if "metadata" in changes:
                    row.state_metadata = {
                        **(row.state_metadata or {}),
                        **to_jsonable_python(changes["metadata"] or {}),
                    }

                row.version = (row.version or 0) + 1
                row.updated_at = utcnow()
                await session.commit()
                state = self._to_state(row)

        except SQLAlchemyError as e:
            logger.error(f"Failed to update state of pipeline {self.pipeline_id}: {e}")
            return None

        if transition:
            await self._record_transition(*transition, {"current_step": state.current_step})
        return state

    async def transition_state(self, from_status: PipelineStatus, to_status: PipelineStatus) -> bool:
        """
        Move from one explicit status to another.

        Returns:
            False when the pipeline is not currently in from_status

        Raises:
            StateTransitionError: The transition itself is illegal
        """
        from_status = PipelineStatus(from_status)
        to_status = PipelineStatus(to_status)
        self._validate(from_status, to_status)

        state = await self.get_state()
        if state.status != from_status:
            logger.warning(
                f"Pipeline {self.pipeline_id} is {state.status.value}, not {from_status.value}; "
                f"transition to {to_status.value} skipped"
            )
            return False

        await self.update_state(status=to_status)
        return True

    async def save_step_data(self, step_name: str, payload: Any, owner_lock_id: Optional[str] = None) -> bool:
        """Checkpoint a step's output. Returns False when the write was skipped or failed."""
        try:
            async with self.session_maker() as session:
                row = await self._get_or_create_row(session)
                if not self._owned_by(row, owner_lock_id, f"checkpoint of step {step_name}"):
                    return False
                # Reassign so the JSON column is flagged dirty
                row.step_data = {**(row.step_data or {}), step_name: to_jsonable_python(payload)}
                row.version = (row.version or 0) + 1
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to save step data of {step_name} for pipeline {self.pipeline_id}: {e}")
            return False
        return True

    async def clear_step_data(self, owner_lock_id: Optional[str] = None) -> bool:
        try:
            async with self.session_maker() as session:
                row = await self._get_or_create_row(session)
                if not self._owned_by(row, owner_lock_id, "step data reset"):
                    return False
                row.step_data = {}
                row.version = (row.version or 0) + 1
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to clear step data for pipeline {self.pipeline_id}: {e}")
            return False
        return True

    async def record_run_outcome(self, success: bool, error_count: int = 0) -> None:
        """Keep the rolling success rate and error count that get_health() reads"""
        state = await self.get_state()
        outcomes = list(state.metadata.get("recent_outcomes", []))[-(HEALTH_WINDOW - 1):]
        errors = list(state.metadata.get("recent_error_counts", []))[-(HEALTH_WINDOW - 1):]
        outcomes.append(bool(success))
        errors.append(int(error_count))

        await self.update_state(
            metadata={
                "recent_outcomes": outcomes,
                "recent_error_counts": errors,
                "success_rate": sum(outcomes) / len(outcomes),
                "recent_errors": sum(errors),
            }
        )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    async def lock_pipeline(self) -> bool:
        """
        Try to become the single active run of this pipeline.

        Succeeds when no lock is held, or when the held lock is older than
        lock_timeout_ms (the stale lock is replaced with a new lock id).
        Never blocks and never raises: store errors count as not acquired.
        """
        lock_id = str(uuid.uuid4())
        try:
            async with self.session_maker() as session:
                row = await self._get_or_create_row(session)
                now = utcnow()
                previous_status = PipelineStatus(row.status)
                previous_lock_id = row.lock_id

                if row.lock_id and row.locked_at and not self._is_stale(row.locked_at, now):
                    logger.info(
                        f"Pipeline {self.pipeline_id} is locked by {row.lock_id} "
                        f"since {row.locked_at.isoformat()}"
                    )
                    return False

                result = await session.execute(
                    update(PipelineStateRecord)
                    .where(
                        PipelineStateRecord.pipeline_id == self.pipeline_id,
                        PipelineStateRecord.version == row.version,
                    )
                    .values(
                        status=PipelineStatus.LOCKED,
                        lock_id=lock_id,
                        locked_at=now,
                        current_step=None,
                        version=row.version + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    logger.info(f"Lost the lock race for pipeline {self.pipeline_id}")
                    return False
                await session.commit()

        except SQLAlchemyError as e:
            logger.error(f"Failed to lock pipeline {self.pipeline_id}: {e}")
            return False

        self.lock_id = lock_id
        metadata = {"lock_id": lock_id}
        if previous_lock_id:
            metadata["replaced_stale_lock"] = previous_lock_id
            logger.warning(
                f"Replaced stale lock {previous_lock_id} on pipeline {self.pipeline_id}"
            )
        if previous_status != PipelineStatus.LOCKED:
            await self._record_transition(previous_status, PipelineStatus.LOCKED, metadata)

        logger.info(f"Pipeline {self.pipeline_id} locked ({lock_id})")
        return True

    async def refresh_lock(self) -> bool:
        """Heartbeat: bump locked_at so a long run is not taken over as stale"""
        if not self.lock_id:
            return False
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(PipelineStateRecord)
                    .where(
                        PipelineStateRecord.pipeline_id == self.pipeline_id,
                        PipelineStateRecord.lock_id == self.lock_id,
                    )
                    .values(locked_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Failed to refresh lock on pipeline {self.pipeline_id}: {e}")
            return False

    async def unlock_pipeline(self, force: bool = False) -> None:
        """
        Release the lock and return the pipeline to idle.

        Only the lock this manager acquired is released unless force is set,
        so a run that never got the lock cannot free somebody else's. A
        pipeline still marked running is recorded as cancelled first.
        """
        transitions = []
        try:
            async with self.session_maker() as session:
                row = await self._get_row(session)
                if row is None:
                    return
                if not force and row.lock_id != self.lock_id:
                    logger.debug(
                        f"Pipeline {self.pipeline_id} lock is held by {row.lock_id}; not releasing"
                    )
                    return

                status = PipelineStatus(row.status)
                if status == PipelineStatus.RUNNING:
                    transitions.append((status, PipelineStatus.CANCELLED))
                    row.last_run_status = PipelineStatus.CANCELLED
                    status = PipelineStatus.CANCELLED
                if status != PipelineStatus.IDLE:
                    transitions.append((status, PipelineStatus.IDLE))

                row.status = PipelineStatus.IDLE
                row.lock_id = None
                row.locked_at = None
                row.current_step = None
                row.version = (row.version or 0) + 1
                row.updated_at = utcnow()
                await session.commit()

        except SQLAlchemyError as e:
            logger.error(f"Failed to unlock pipeline {self.pipeline_id}: {e}")
            return
        finally:
            self.lock_id = None

        for from_status, to_status in transitions:
            await self._record_transition(from_status, to_status, {"unlock": True})
        logger.info(f"Pipeline {self.pipeline_id} unlocked")

    # ------------------------------------------------------------------
    # Recovery and history
    # ------------------------------------------------------------------

    async def get_recovery_point(self, step_order: Sequence[str]) -> RecoveryPoint:
        """
        Where a failed or cancelled run can pick up.

        Walks step_order over the persisted step outputs; the recovery point
        is the last step marked completed and the step right after it.
        """
        state = await self.get_state()
        if state.last_run_status not in (PipelineStatus.FAILED, PipelineStatus.CANCELLED):
            return RecoveryPoint(can_recover=False)

        step_order = list(step_order)
        completed = {
            name: payload
            for name, payload in state.step_data.items()
            if isinstance(payload, dict) and payload.get("completed")
        }
        completed_in_order = [name for name in step_order if name in completed]
        if not completed_in_order:
            return RecoveryPoint(can_recover=False)

        last_completed = completed_in_order[-1]
        remaining = step_order[step_order.index(last_completed) + 1:]
        next_step = next((name for name in remaining if name not in completed), None)
        if next_step is None:
            return RecoveryPoint(can_recover=False, last_completed_step=last_completed)

        return RecoveryPoint(
            can_recover=True,
            last_completed_step=last_completed,
            next_step=next_step,
            step_data=completed,
        )

    async def get_history(self, limit: int = 100, offset: int = 0) -> List[StateTransitionInfo]:
        """Status transitions, newest first"""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PipelineTransition)
                .where(PipelineTransition.pipeline_id == self.pipeline_id)
                .order_by(PipelineTransition.timestamp.desc(), PipelineTransition.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [
                StateTransitionInfo(
                    id=row.id,
                    pipeline_id=row.pipeline_id,
                    from_status=row.from_status,
                    to_status=row.to_status,
                    timestamp=row.timestamp,
                    metadata=row.transition_metadata or {},
                )
                for row in result.scalars().all()
            ]

    async def cleanup_history(self, days_to_keep: Optional[int] = None) -> int:
        """Delete transitions older than days_to_keep. Returns rows deleted."""
        days = settings.HISTORY_RETENTION_DAYS if days_to_keep is None else days_to_keep
        cutoff = utcnow() - timedelta(days=days)

        async with self.session_maker() as session:
            result = await session.execute(
                delete(PipelineTransition).where(
                    PipelineTransition.pipeline_id == self.pipeline_id,
                    PipelineTransition.timestamp < cutoff,
                )
            )
            await session.commit()

        logger.info(f"Removed {result.rowcount} transitions older than {days} days")
        return result.rowcount

    async def reset(self) -> None:
        """Force the pipeline back to idle, dropping lock, step data and metadata"""
        async with self.session_maker() as session:
            row = await self._get_or_create_row(session)
            previous_status = PipelineStatus(row.status)
            row.status = PipelineStatus.IDLE
            row.current_step = None
            row.lock_id = None
            row.locked_at = None
            row.step_data = {}
            row.state_metadata = {}
            row.version = (row.version or 0) + 1
            row.updated_at = utcnow()
            await session.commit()

        self.lock_id = None
        if previous_status != PipelineStatus.IDLE:
            await self._record_transition(previous_status, PipelineStatus.IDLE, {"reset": True})
        logger.info(f"Pipeline {self.pipeline_id} reset")

    async def get_health(self) -> PipelineHealth:
        """
        Health from the rolling outcome window.

        unhealthy: more than 5 recent errors or success rate below 80%
        degraded:  more than 2 recent errors, success rate below 95%, or no
                   success for over 24 hours
        """
        state = await self.get_state()
        recent_errors = int(state.metadata.get("recent_errors", 0))
        success_rate = float(state.metadata.get("success_rate", 1.0))
        since_success = await self.get_time_since_last_success()

        status = "healthy"
        if recent_errors > 5 or success_rate < 0.8:
            status = "unhealthy"
        elif (
            recent_errors > 2
            or success_rate < 0.95
            or (since_success is not None and since_success > 24 * 60 * 60 * 1000)
        ):
            status = "degraded"

        return PipelineHealth(
            status=status,
            last_success_time=state.last_success_time,
            success_rate=success_rate,
            recent_errors=recent_errors,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate(self, from_status: PipelineStatus, to_status: PipelineStatus) -> None:
        if not is_valid_transition(from_status, to_status):
            raise StateTransitionError(
                f"Invalid state transition from {from_status.value} to {to_status.value}",
                context={
                    "pipeline_id": self.pipeline_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )

    def _owned_by(self, row: PipelineStateRecord, owner_lock_id: Optional[str], action: str) -> bool:
        if owner_lock_id is None or row.lock_id == owner_lock_id:
            return True
        logger.warning(
            f"Skipping {action} on pipeline {self.pipeline_id}: "
            f"lock {owner_lock_id} is no longer held (current lock {row.lock_id})"
        )
        return False

    def _is_stale(self, locked_at, now) -> bool:
        return now - locked_at > timedelta(milliseconds=self.lock_timeout_ms)

    async def _get_row(self, session: AsyncSession) -> Optional[PipelineStateRecord]:
        result = await session.execute(
            select(PipelineStateRecord).where(PipelineStateRecord.pipeline_id == self.pipeline_id)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_row(self, session: AsyncSession) -> PipelineStateRecord:
        row = await self._get_row(session)
        if row is not None:
            return row

        session.add(
            PipelineStateRecord(
                pipeline_id=self.pipeline_id,
                status=PipelineStatus.IDLE,
                version=0,
                step_data={},
                state_metadata={},
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            # Created concurrently by another manager
            await session.rollback()
        return await self._get_row(session)

    async def _record_transition(
        self,
        from_status: PipelineStatus,
        to_status: PipelineStatus,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            async with self.session_maker() as session:
                session.add(
                    PipelineTransition(
                        pipeline_id=self.pipeline_id,
                        from_status=from_status,
                        to_status=to_status,
                        timestamp=utcnow(),
                        transition_metadata=to_jsonable_python(metadata or {}),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record transition {from_status.value} -> {to_status.value} "
                f"for {self.pipeline_id}: {e}"
            )

    def _to_state(self, row: PipelineStateRecord) -> PipelineState:
        return PipelineState(
            pipeline_id=row.pipeline_id,
            status=row.status,
            last_run_time=row.last_run_time,
            last_success_time=row.last_success_time,
            last_run_status=row.last_run_status,
            current_step=row.current_step,
            step_data=dict(row.step_data or {}),
            metadata=dict(row.state_metadata or {}),
            lock_id=row.lock_id,
            locked_at=row.locked_at,
        )
