"""
Operation lifecycle controller for one evacuation-center event.

States: ACTIVE -> END_REQUESTED -> ENDED (terminal). END_REQUESTED is the
open confirmation dialog; it is never persisted and can be cancelled back to
ACTIVE. Gating decisions are always derived from the latest applied snapshot;
snapshots whose fetch started before a write completed are discarded.
"""

import asyncio
import inspect
from datetime import datetime, tzinfo
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from models.schemas import (
    ControllerState, EndOperationResult, EndRequest, GateResult, LifecycleAction,
    LifecycleStatus, LifecycleView, RosterSnapshot
)
from services.error_handler import (
    InputValidationError, OperationEndedError, PreconditionError, TransportError
)
from services.temporal_bounds import check_bounds, describe_violation

logger = structlog.get_logger(__name__)

RefreshCallback = Callable[[], Union[None, Awaitable[Any]]]

ALREADY_ENDED_TITLE = "Evacuation Operation Already Ended"
DISABLED_WHEN_ENDED = [
    "Register Evacuee",
    "Manual Register",
    "Edit Member",
    "Transfer Head",
    "Save/Clear Decampment",
]
ALREADY_ENDED_REASON = (
    "This evacuation event has ended. You can still view data, but the following "
    "actions are disabled: " + ", ".join(DISABLED_WHEN_ENDED)
)


def local_now() -> datetime:
    return datetime.now().astimezone()


class OperationLifecycleController:
    """Owns lifecycle status, end-of-operation flow and write gating for one event."""

    def __init__(
        self,
        api,
        center_event_id: int,
        on_refresh_required: Optional[RefreshCallback] = None,
        now: Callable[[], datetime] = local_now,
        tz: Optional[tzinfo] = None
    ):
        if not center_event_id:
            raise PreconditionError("Evacuation center event id is required.")
        self.api = api
        self.center_event_id = center_event_id
        self.on_refresh_required = on_refresh_required
        self._now = now
        self.tz = tz

        self.state = ControllerState.ACTIVE
        self.status = LifecycleStatus.ACTIVE
        self.undecamped_count = 0
        self.disaster_start: Optional[datetime] = None
        self.end_timestamp: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._generation = 0
        self._write_epoch = 0
        self._write_lock = asyncio.Lock()

    # ----- Snapshot intake -----

    @property
    def write_epoch(self) -> int:
        """Incremented whenever a write completes; fetches record it when they start."""
        return self._write_epoch

    @property
    def generation(self) -> int:
        return self._generation

    def apply_snapshot(self, snapshot: RosterSnapshot) -> bool:
        """Adopt a fresh snapshot as the source of truth; returns False when discarded."""
        if snapshot.event.id != self.center_event_id:
            logger.debug("Discarding snapshot for another event", center_event_id=self.center_event_id,
                         snapshot_event_id=snapshot.event.id)
            return False
        if snapshot.generation <= self._generation:
            logger.debug("Discarding out-of-order snapshot", center_event_id=self.center_event_id,
                         generation=snapshot.generation, current=self._generation)
            return False
        if snapshot.write_epoch != self._write_epoch:
            logger.info("Discarding snapshot fetched before a write completed",
                        center_event_id=self.center_event_id, generation=snapshot.generation,
                        write_epoch=snapshot.write_epoch, current_epoch=self._write_epoch)
            return False

        self._generation = snapshot.generation
        self.status = snapshot.event.status
        self.undecamped_count = snapshot.undecamped_count
        self.disaster_start = snapshot.detail.disaster.disaster_start_date
        self.end_timestamp = snapshot.event.end_timestamp

        if self.status == LifecycleStatus.ENDED and self.state != ControllerState.ENDED:
            self._transition(ControllerState.ENDED)
        logger.info("Snapshot applied", center_event_id=self.center_event_id, generation=snapshot.generation,
                    status=self.status.value, undecamped_count=self.undecamped_count)
        return True

    # ----- Gating -----

    @property
    def is_ended(self) -> bool:
        return self.state == ControllerState.ENDED or self.status == LifecycleStatus.ENDED

    @property
    def can_end_operation(self) -> bool:
        return not self.is_ended and not self._write_lock.locked()

    def gate(self, action: LifecycleAction) -> GateResult:
        """Whether an action is permitted; ended events explain what is disabled."""
        if not self.is_ended:
            return GateResult(action=action, permitted=True)
        return GateResult(
            action=action,
            permitted=False,
            title=ALREADY_ENDED_TITLE,
            reason=ALREADY_ENDED_REASON,
            disabled_actions=list(DISABLED_WHEN_ENDED)
        )

    def ensure_permitted(self, action: LifecycleAction) -> None:
        if not self.gate(action).permitted:
            raise OperationEndedError()

    def validate_decampment(self, timestamp: datetime) -> Optional[str]:
        """User-facing reason a decampment timestamp is out of [disaster start, now]."""
        result = check_bounds(timestamp, self.disaster_start, self._now(), tz=self.tz)
        return describe_violation(result, "Decampment", tz=self.tz)

    # ----- End-of-operation flow -----

    async def request_end(self) -> Union[GateResult, EndRequest]:
        """
        Open the end-operation confirmation.

        An already-ended event yields the "already ended" gate result instead
        and no transition happens. The undecamped count is read fresh from
        the backend.
        """
        gate = self.gate(LifecycleAction.END_OPERATION)
        if not gate.permitted:
            logger.info("End requested on ended operation", center_event_id=self.center_event_id)
            return gate

        epoch = self._write_epoch
        count = await self.api.get_undecamped_count(self.center_event_id)
        if epoch == self._write_epoch:
            self.undecamped_count = count

        if self.state != ControllerState.END_REQUESTED:
            self._transition(ControllerState.END_REQUESTED)
        self.last_error = None
        return self.end_request()

    def end_request(self) -> EndRequest:
        now = self._now()
        pending = self.undecamped_count
        if pending > 0:
            message = (f"There are {pending} evacuee(s) not decamped. "
                       "You can decamp all of them and end the operation.")
        else:
            message = "All families are already decamped. Do you want to mark this evacuation operation as ended?"
        return EndRequest(
            undecamped_count=pending,
            requires_timestamp=pending > 0,
            default_timestamp=now,
            min_timestamp=self.disaster_start,
            max_timestamp=now,
            message=message
        )

    def cancel_end(self) -> None:
        """Abandon the confirmation flow without side effects."""
        if self.state == ControllerState.END_REQUESTED:
            self._transition(ControllerState.ACTIVE)
            self.last_error = None

    async def confirm_end(self, timestamp: Optional[datetime] = None) -> EndOperationResult:
        """
        Confirm ending the operation.

        With undecamped evacuees a bulk decampment at ``timestamp`` (default
        now) precedes the end write, both at the same instant. Any failure
        leaves the controller in END_REQUESTED so the operator can retry.
        """
        async with self._write_lock:
            if self.is_ended:
                logger.info("End rejected locally, operation already ended", center_event_id=self.center_event_id)
                return self._failure("OPERATION_ALREADY_ENDED", OperationEndedError().message)
            if self.state != ControllerState.END_REQUESTED:
                return self._failure("END_NOT_REQUESTED", "Open the end-operation dialog before confirming.")

            pending = self.undecamped_count
            instant = (timestamp or self._now()) if pending > 0 else self._now()

            if pending > 0:
                reason = self.validate_decampment(instant)
                if reason:
                    return self._failure("DATE_OUT_OF_BOUNDS", reason)

                try:
                    result = await self.api.decamp_all(self.center_event_id, instant)
                except TransportError as e:
                    logger.error("Bulk decampment failed", center_event_id=self.center_event_id, error=e.message)
                    return self._failure(e.error_code, e.message, retryable=e.retryable)
                finally:
                    self._write_epoch += 1
                decamped = int(result.get("updated") or 0)
                logger.info("Bulk decampment written", center_event_id=self.center_event_id, updated=decamped,
                            remaining=result.get("remaining_undecamped"))
            else:
                decamped = 0

            try:
                await self.api.end_evacuation(self.center_event_id, instant)
            except TransportError as e:
                self._write_epoch += 1
                logger.error("End operation write failed", center_event_id=self.center_event_id,
                             error=e.message, after_decampment=pending > 0)
                if pending > 0:
                    await self._force_refresh()
                    return self._failure("PARTIAL_END_FAILURE", e.message, retryable=True, decamped=decamped)
                if e.status_code == 409:
                    await self._force_refresh()
                return self._failure(e.error_code, e.message, retryable=e.retryable)
            self._write_epoch += 1

            self.status = LifecycleStatus.ENDED
            self.end_timestamp = instant
            self.undecamped_count = 0
            self.last_error = None
            self._transition(ControllerState.ENDED)
            return EndOperationResult(
                success=True,
                state=self.state,
                decamped=decamped,
                end_timestamp=instant
            )

    # ----- Single-family decampment -----

    async def decamp_family(self, family_head_id: int, timestamp: Optional[datetime]) -> dict:
        """Save (timestamp) or clear (None) one family's decampment."""
        action = LifecycleAction.SAVE_DECAMPMENT if timestamp else LifecycleAction.CLEAR_DECAMPMENT
        self.ensure_permitted(action)
        if timestamp is not None:
            reason = self.validate_decampment(timestamp)
            if reason:
                raise InputValidationError(reason, "DATE_OUT_OF_BOUNDS")
        try:
            result = await self.api.decamp_family(self.center_event_id, family_head_id, timestamp)
        finally:
            self._write_epoch += 1
        logger.info("Family decampment written", center_event_id=self.center_event_id,
                    family_head_id=family_head_id, cleared=timestamp is None)
        await self._force_refresh()
        return result

    def note_write(self) -> None:
        """Record a write made through another component (e.g. a registration)."""
        self._write_epoch += 1

    # ----- Outputs -----

    def view(self) -> LifecycleView:
        return LifecycleView(
            center_event_id=self.center_event_id,
            status=self.status,
            state=self.state,
            is_ended=self.is_ended,
            can_end_operation=self.can_end_operation,
            undecamped_count=self.undecamped_count,
            end_timestamp=self.end_timestamp,
            last_error=self.last_error
        )

    def _transition(self, new_state: ControllerState) -> None:
        logger.info("Lifecycle transition", center_event_id=self.center_event_id,
                    from_state=self.state.value, to_state=new_state.value)
        self.state = new_state

    def _failure(
        self,
        error_code: str,
        message: str,
        retryable: bool = False,
        decamped: int = 0
    ) -> EndOperationResult:
        self.last_error = message
        return EndOperationResult(
            success=False,
            state=self.state,
            error_code=error_code,
            message=message,
            retryable=retryable,
            decamped=decamped
        )

    async def _force_refresh(self) -> None:
        if self.on_refresh_required is None:
            return
        try:
            result = self.on_refresh_required()
            if inspect.isawaitable(result):
                await result
        except TransportError as e:
            logger.warning("Forced refresh failed", center_event_id=self.center_event_id, error=e.message)
