"""
Roster view session: the pipeline owned by one open evacuation-center view.

    change stream -> coalescer -> refresher -> lifecycle controller

Each session owns its subscriptions, coalescer timer, API client and cached
snapshot exclusively. Stopping a session tears all of them down.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiohttp
import structlog

from core.config import Settings, get_settings
from models.schemas import (
    ChangeEvent, DuplicateCandidate, DuplicateDialog, DuplicateKind, EndOperationResult, EndRequest,
    FamilyHeadResult, GateResult, LifecycleAction, LifecycleView, RegisterEvacueePayload,
    RegistrationOutcome, RosterPage, RosterSnapshot, SortKey, SortState
)
from services.change_stream import ChangeStreamTransport, EvacuationCenterSubscriptions, RealtimeChangeStream
from services.duplicate_guard import DuplicateRegistrationGuard, IdentityMatchPolicy, select_dialog
from services.error_handler import InputValidationError, PreconditionError, TransportError
from services.evacuees_api import EvacueesApiClient
from services.lifecycle_controller import OperationLifecycleController
from services.refresh_coalescer import RefreshCoalescer, Scheduler
from services.roster_refresher import RosterRefresher
from services.roster_sort import roster_slice, toggle_sort
from services.temporal_bounds import resolve_local_timezone

logger = structlog.get_logger(__name__)


class RosterViewSession:
    """One open view of an evacuation-center event."""

    def __init__(
        self,
        api: EvacueesApiClient,
        center_event_id: int,
        transport: Optional[ChangeStreamTransport] = None,
        settings: Optional[Settings] = None,
        scheduler: Optional[Scheduler] = None,
        now: Optional[Callable[[], datetime]] = None,
        view_id: Optional[str] = None
    ):
        if not center_event_id:
            raise PreconditionError("Evacuation center event id is required.")
        self.settings = settings or get_settings()
        self.view_id = view_id or str(uuid.uuid4())
        self.api = api
        self.center_event_id = center_event_id
        self.transport = transport

        controller_kwargs = {"now": now} if now else {}
        self.refresher = RosterRefresher(api, center_event_id)
        self.controller = OperationLifecycleController(
            api,
            center_event_id,
            on_refresh_required=self.refresh,
            tz=resolve_local_timezone(self.settings.LOCAL_TIMEZONE),
            **controller_kwargs
        )
        self.coalescer = RefreshCoalescer(
            self.refresh,
            self.settings.refresh_quiet_period_seconds,
            scheduler=scheduler,
            name=f"view-{center_event_id}"
        )
        self.subscriptions = EvacuationCenterSubscriptions(transport, self._on_stale) if transport else None
        self.guard = DuplicateRegistrationGuard(api, IdentityMatchPolicy(self.settings.duplicate_match_fields_list))

        self.sort_state: Optional[SortState] = None
        self.snapshot: Optional[RosterSnapshot] = None
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    # ----- Lifecycle of the view itself -----

    async def start(self) -> None:
        """Subscribe to changes and perform the first load."""
        self.api.require_credential()
        if self.subscriptions is not None:
            try:
                await self.subscriptions.start(self.center_event_id)
            except (aiohttp.ClientError, ConnectionError, OSError) as e:
                logger.warning("Live updates unavailable", center_event_id=self.center_event_id, error=str(e))
        await self.refresh()
        logger.info("Roster view started", view_id=self.view_id, center_event_id=self.center_event_id)

    async def stop(self) -> None:
        """Tear down subscriptions, the pending refresh timer and the API session."""
        if self._stopped:
            return
        self._stopped = True
        self.coalescer.close()
        try:
            if self.subscriptions is not None:
                await self.subscriptions.stop()
        finally:
            try:
                if self.transport is not None:
                    await self.transport.close()
            finally:
                await self.api.close()
        logger.info("Roster view stopped", view_id=self.view_id, center_event_id=self.center_event_id)

    async def update_credential(self, token: Optional[str]) -> None:
        """Carry a refreshed bearer credential to the API client and the change stream."""
        if self._stopped or token == self.api.token:
            return
        self.api.token = token
        if self.transport is not None:
            try:
                await self.transport.update_access_token(token)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.warning("Change stream credential update failed",
                               center_event_id=self.center_event_id, error=str(e))

    def _on_stale(self, event: ChangeEvent) -> None:
        self.coalescer.signal(event)

    async def refresh(self) -> bool:
        """Fetch and apply a snapshot; returns False when it was discarded."""
        if self._stopped:
            return False
        snapshot = await self.refresher.fetch(self.controller.write_epoch)
        if self._stopped or not self.controller.apply_snapshot(snapshot):
            return False
        self.snapshot = snapshot
        if self.subscriptions is not None:
            try:
                await self.subscriptions.update_meta(snapshot.event.evacuation_center_id, snapshot.event.disaster_id)
            except (aiohttp.ClientError, ConnectionError, OSError) as e:
                logger.warning("Meta subscription failed", center_event_id=self.center_event_id, error=str(e))
        return True

    async def refresh_now(self) -> bool:
        """User-initiated refresh; runs immediately and bypasses coalescing."""
        result = self.coalescer.refresh_now()
        if result is None:
            return False
        return await result

    # ----- Roster table -----

    def toggle_sort(self, key: SortKey) -> Optional[SortState]:
        self.sort_state = toggle_sort(self.sort_state, key)
        return self.sort_state

    def roster_page(self, page: int = 1, rows_per_page: Optional[int] = None, search: Optional[str] = None) -> RosterPage:
        rows_per_page = rows_per_page or self.settings.DEFAULT_ROWS_PER_PAGE
        rows_per_page = min(rows_per_page, self.settings.MAX_ROWS_PER_PAGE)
        rows = self.snapshot.roster if self.snapshot else []
        return roster_slice(rows, self.sort_state, page, rows_per_page, search)

    def summary(self) -> Dict[str, Any]:
        """Detail and statistics cards of the latest snapshot."""
        if self.snapshot is None:
            return {}
        return {
            "detail": self.snapshot.detail.model_dump(mode="json"),
            "statistics": self.snapshot.statistics.model_dump(mode="json") if self.snapshot.statistics else None,
            "generation": self.snapshot.generation,
            "fetched_at": self.snapshot.fetched_at.isoformat(),
        }

    # ----- Registration -----

    def _require_same_event(self, payload: RegisterEvacueePayload) -> None:
        if payload.disaster_evacuation_event_id != self.center_event_id:
            raise InputValidationError("The registration targets a different evacuation center event.")

    async def check_registration(
        self, payload: RegisterEvacueePayload
    ) -> Tuple[DuplicateCandidate, Optional[DuplicateDialog]]:
        self.controller.ensure_permitted(LifecycleAction.REGISTER_EVACUEE)
        self._require_same_event(payload)
        result = await self.guard.check(payload, self.center_event_id)
        return result, select_dialog(result)

    async def register_evacuee(
        self,
        payload: RegisterEvacueePayload,
        manual_override: bool = False
    ) -> RegistrationOutcome:
        """
        Register an evacuee after the duplicate check.

        ``manual_override`` affirms a same-center match is a different person;
        it never lifts a block caused by an active registration elsewhere.
        """
        action = LifecycleAction.MANUAL_REGISTER if manual_override else LifecycleAction.REGISTER_EVACUEE
        self.controller.ensure_permitted(action)
        self._require_same_event(payload)

        result = await self.guard.check(payload, self.center_event_id)
        dialog = select_dialog(result)

        if result.kind == DuplicateKind.ACTIVE_IN_OTHER_CENTER:
            return RegistrationOutcome(duplicate=result, dialog=dialog, blocked_reason=dialog.message)
        if result.kind == DuplicateKind.ACTIVE_IN_SAME_CENTER and not manual_override:
            return RegistrationOutcome(duplicate=result, dialog=dialog)

        try:
            response = await self.api.post_evacuee(payload)
        finally:
            self.controller.note_write()
        logger.info("Evacuee registered", center_event_id=self.center_event_id,
                    manual_override=manual_override, duplicate_kind=result.kind.value)
        await self._refresh_after_write()
        return RegistrationOutcome(submitted=True, duplicate=result, response=response)

    async def get_edit_evacuee(self, evacuee_resident_id: int) -> Dict[str, Any]:
        return await self.api.get_edit_evacuee(self.center_event_id, evacuee_resident_id)

    async def edit_evacuee(self, evacuee_resident_id: int, payload: RegisterEvacueePayload) -> Dict[str, Any]:
        self.controller.ensure_permitted(LifecycleAction.EDIT_MEMBER)
        self._require_same_event(payload)
        try:
            response = await self.api.put_evacuee(evacuee_resident_id, payload)
        finally:
            self.controller.note_write()
        await self._refresh_after_write()
        return response

    async def search_family_heads(self, query: str = "") -> List[FamilyHeadResult]:
        return await self.api.get_family_heads(self.center_event_id, query)

    async def _refresh_after_write(self) -> None:
        try:
            await self.refresh()
        except TransportError as e:
            logger.warning("Refresh after write failed", center_event_id=self.center_event_id, error=e.message)

    # ----- Lifecycle -----

    def gate(self, action: LifecycleAction) -> GateResult:
        return self.controller.gate(action)

    def lifecycle(self) -> LifecycleView:
        return self.controller.view()

    async def request_end(self) -> Union[GateResult, EndRequest]:
        return await self.controller.request_end()

    def cancel_end(self) -> None:
        self.controller.cancel_end()

    async def confirm_end(self, timestamp: Optional[datetime] = None) -> EndOperationResult:
        result = await self.controller.confirm_end(timestamp)
        if result.success:
            await self._refresh_after_write()
        return result

    async def decamp_family(self, family_head_id: int, timestamp: Optional[datetime]) -> Dict[str, Any]:
        return await self.controller.decamp_family(family_head_id, timestamp)


TransportFactory = Callable[[str], Optional[ChangeStreamTransport]]


def realtime_transport_factory(settings: Settings) -> TransportFactory:
    """Build one realtime stream per view, or none when no stream is configured."""

    def factory(token: str) -> Optional[ChangeStreamTransport]:
        if not settings.REALTIME_URL:
            return None
        return RealtimeChangeStream(
            settings.REALTIME_URL,
            api_key=settings.REALTIME_API_KEY,
            access_token=token,
            heartbeat_seconds=settings.REALTIME_HEARTBEAT_SECONDS,
            schema=settings.REALTIME_SCHEMA
        )

    return factory


class RosterViewRegistry:
    """Holds independent view sessions by id; sessions share no state."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport_factory: Optional[TransportFactory] = None,
        api_factory: Optional[Callable[[str], EvacueesApiClient]] = None
    ):
        self.settings = settings or get_settings()
        self.transport_factory = transport_factory or realtime_transport_factory(self.settings)
        self.api_factory = api_factory or (lambda token: EvacueesApiClient(token))
        self._views: Dict[str, RosterViewSession] = {}

    def __len__(self) -> int:
        return len(self._views)

    async def open(self, center_event_id: int, token: str) -> RosterViewSession:
        api = self.api_factory(token)
        api.require_credential()
        transport = self.transport_factory(token)
        if transport is None:
            logger.warning("No change stream configured, roster will only refresh on demand",
                           center_event_id=center_event_id)
        session = RosterViewSession(api, center_event_id, transport=transport, settings=self.settings)
        try:
            await session.start()
        except Exception:
            await session.stop()
            raise
        self._views[session.view_id] = session
        return session

    def get(self, view_id: str) -> Optional[RosterViewSession]:
        return self._views.get(view_id)

    async def close(self, view_id: str) -> bool:
        session = self._views.pop(view_id, None)
        if session is None:
            return False
        await session.stop()
        return True

    async def close_all(self) -> None:
        for view_id in list(self._views):
            await self.close(view_id)
