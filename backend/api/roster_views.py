"""
Roster view API endpoints.

A view is created per screen showing one evacuation-center event and owns its
live pipeline until it is deleted. The caller's bearer credential is forwarded
to the evacuee API.
"""

from datetime import datetime, time, tzinfo
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import structlog

from models.schemas import (
    EndOperationResult, FamilyHeadResult, LifecycleView, RegisterEvacueePayload,
    RegistrationOutcome, RosterPage, SortKey, SortState
)
from services.error_handler import (
    ConsoleError, InputValidationError, MissingCredentialError, get_error_handler, http_status_for
)
from services.roster_view import RosterViewRegistry, RosterViewSession
from services.temporal_bounds import merge_date_and_time, parse_mmddyyyy

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/views", tags=["roster-views"])
error_handler = get_error_handler("roster_views")

_registry: Optional[RosterViewRegistry] = None


def get_view_registry() -> RosterViewRegistry:
    global _registry
    if _registry is None:
        _registry = RosterViewRegistry()
    return _registry


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    """Extract the bearer credential; absence is a precondition failure."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise MissingCredentialError()
    return token.strip()


class OpenViewRequest(BaseModel):
    center_event_id: int = Field(..., gt=0)


class OpenViewResponse(BaseModel):
    view_id: str
    center_event_id: int
    lifecycle: LifecycleView


class SortRequest(BaseModel):
    key: SortKey


class SortResponse(BaseModel):
    sort: Optional[SortState] = None


class OperatorTimestampRequest(BaseModel):
    """An ISO timestamp, or the date picker's MM/DD/YYYY text plus an optional time of day."""
    timestamp: Optional[datetime] = None
    entered_date: Optional[str] = None
    entered_time: Optional[time] = None

    def resolve(self, tz: Optional[tzinfo]) -> Optional[datetime]:
        if self.timestamp is not None or not self.entered_date:
            return self.timestamp
        day = parse_mmddyyyy(self.entered_date)
        if day is None:
            raise InputValidationError(f"Invalid date '{self.entered_date}', expected MM/DD/YYYY.")
        merged = merge_date_and_time(day, self.entered_time)
        # No configured zone means the host's local zone.
        return merged.replace(tzinfo=tz) if tz is not None else merged.astimezone()


class ConfirmEndRequest(OperatorTimestampRequest):
    pass


class RegistrationRequest(BaseModel):
    payload: RegisterEvacueePayload
    manual_override: bool = False


class DecampFamilyRequest(OperatorTimestampRequest):
    pass


def error_response(error: ConsoleError, operation: str, center_event_id: Optional[int] = None) -> JSONResponse:
    standard_error = error_handler.handle_error(
        error,
        operation_name=operation,
        center_event_id=center_event_id
    )
    return JSONResponse(
        status_code=http_status_for(standard_error),
        content=error_handler.create_api_response(standard_error)
    )


async def get_view(view_id: str, token: str, registry: RosterViewRegistry) -> RosterViewSession:
    view = registry.get(view_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"View {view_id} not found")
    await view.update_credential(token)
    return view


@router.post("", response_model=OpenViewResponse, status_code=201)
async def open_view(
    request: OpenViewRequest,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    """Create a view for an evacuation-center event and perform its first load."""
    try:
        view = await registry.open(request.center_event_id, token)
    except ConsoleError as e:
        return error_response(e, "open_view", request.center_event_id)
    logger.info("View opened", view_id=view.view_id, center_event_id=request.center_event_id)
    return OpenViewResponse(view_id=view.view_id, center_event_id=view.center_event_id, lifecycle=view.lifecycle())


@router.delete("/{view_id}")
async def close_view(
    view_id: str,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
) -> Dict[str, Any]:
    if not await registry.close(view_id):
        raise HTTPException(status_code=404, detail=f"View {view_id} not found")
    return {"view_id": view_id, "closed": True}


@router.post("/{view_id}/refresh")
async def refresh_view(
    view_id: str,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    try:
        applied = await view.refresh_now()
    except ConsoleError as e:
        return error_response(e, "refresh_view", view.center_event_id)
    return {"view_id": view_id, "applied": applied, **view.summary()}


@router.get("/{view_id}/roster", response_model=RosterPage)
async def get_roster(
    view_id: str,
    page: int = Query(1, ge=1),
    rows_per_page: Optional[int] = Query(None, ge=1),
    search: Optional[str] = Query(None),
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    return view.roster_page(page=page, rows_per_page=rows_per_page, search=search)


@router.get("/{view_id}/summary")
async def get_summary(
    view_id: str,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
) -> Dict[str, Any]:
    view = await get_view(view_id, token, registry)
    return view.summary()


@router.post("/{view_id}/sort", response_model=SortResponse)
async def toggle_sort(
    view_id: str,
    request: SortRequest,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    return SortResponse(sort=view.toggle_sort(request.key))


@router.get("/{view_id}/lifecycle", response_model=LifecycleView)
async def get_lifecycle(
    view_id: str,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    return view.lifecycle()


@router.post("/{view_id}/end/request")
async def request_end(
    view_id: str,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    """Open the end-operation confirmation, or explain why the operation already ended."""
    view = await get_view(view_id, token, registry)
    try:
        result = await view.request_end()
    except ConsoleError as e:
        return error_response(e, "request_end", view.center_event_id)
    return {"lifecycle": view.lifecycle().model_dump(mode="json"), "result": result.model_dump(mode="json")}


@router.post("/{view_id}/end/cancel", response_model=LifecycleView)
async def cancel_end(
    view_id: str,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    view.cancel_end()
    return view.lifecycle()


@router.post("/{view_id}/end/confirm", response_model=EndOperationResult)
async def confirm_end(
    view_id: str,
    request: ConfirmEndRequest,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    try:
        result = await view.confirm_end(request.resolve(view.controller.tz))
    except ConsoleError as e:
        return error_response(e, "confirm_end", view.center_event_id)
    if result.success:
        return result
    # Expected failures are reported with the taxonomy's status and the full result body.
    standard_error = error_handler.handle_error(
        result.message or result.error_code,
        error_code=result.error_code,
        operation_name="confirm_end",
        center_event_id=view.center_event_id
    )
    return JSONResponse(status_code=http_status_for(standard_error), content=result.model_dump(mode="json"))


@router.post("/{view_id}/registrations/check")
async def check_registration(
    view_id: str,
    payload: RegisterEvacueePayload,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    try:
        duplicate, dialog = await view.check_registration(payload)
    except ConsoleError as e:
        return error_response(e, "check_registration", view.center_event_id)
    return {
        "duplicate": duplicate.model_dump(mode="json"),
        "override_permitted": duplicate.override_permitted,
        "dialog": dialog.model_dump(mode="json") if dialog else None,
    }


@router.post("/{view_id}/registrations", response_model=RegistrationOutcome)
async def register_evacuee(
    view_id: str,
    request: RegistrationRequest,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    try:
        return await view.register_evacuee(request.payload, manual_override=request.manual_override)
    except ConsoleError as e:
        return error_response(e, "register_evacuee", view.center_event_id)


@router.get("/{view_id}/evacuees/{evacuee_resident_id}")
async def get_edit_evacuee(
    view_id: str,
    evacuee_resident_id: int,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    try:
        return await view.get_edit_evacuee(evacuee_resident_id)
    except ConsoleError as e:
        return error_response(e, "get_edit_evacuee", view.center_event_id)


@router.put("/{view_id}/evacuees/{evacuee_resident_id}")
async def edit_evacuee(
    view_id: str,
    evacuee_resident_id: int,
    payload: RegisterEvacueePayload,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    try:
        return await view.edit_evacuee(evacuee_resident_id, payload)
    except ConsoleError as e:
        return error_response(e, "edit_evacuee", view.center_event_id)


@router.get("/{view_id}/family-heads", response_model=List[FamilyHeadResult])
async def search_family_heads(
    view_id: str,
    q: str = Query(""),
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    view = await get_view(view_id, token, registry)
    try:
        return await view.search_family_heads(q)
    except ConsoleError as e:
        return error_response(e, "search_family_heads", view.center_event_id)


@router.post("/{view_id}/families/{family_head_id}/decamp")
async def decamp_family(
    view_id: str,
    family_head_id: int,
    request: DecampFamilyRequest,
    token: str = Depends(bearer_token),
    registry: RosterViewRegistry = Depends(get_view_registry)
):
    """Save or clear (null timestamp) one family's decampment."""
    view = await get_view(view_id, token, registry)
    try:
        result = await view.decamp_family(family_head_id, request.resolve(view.controller.tz))
    except ConsoleError as e:
        return error_response(e, "decamp_family", view.center_event_id)
    return {"result": result, "lifecycle": view.lifecycle().model_dump(mode="json")}
