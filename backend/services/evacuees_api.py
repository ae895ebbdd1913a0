"""
Client for the evacuee REST API.

Every call carries the operator's bearer credential. A missing credential or
identifier is rejected before any request is made; backend rejections are
raised as ``TransportError`` with the backend's message verbatim.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from core.config import get_settings
from models.schemas import (
    EvacuationCenterDetail, EvacueeSearchResult, EvacueeStatistics,
    FamilyHeadResult, RegisterEvacueePayload, RosterEntry
)
from services.error_handler import MissingCredentialError, PreconditionError, TransportError

logger = structlog.get_logger(__name__)


def to_iso(value: datetime) -> str:
    """Serialize a timestamp the way the backend stores it."""
    return value.isoformat()


class EvacueesApiClient:
    """Async client for the evacuee endpoints of the backend API."""

    def __init__(
        self,
        token: Optional[str],
        base_url: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        settings = get_settings()
        self.token = token
        self.base_url = (base_url or settings.EVAC_API_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.EVAC_API_TIMEOUT_SECONDS
        self.session = session
        self._owns_session = session is None

    @property
    def has_credential(self) -> bool:
        return bool(self.token and self.token.strip())

    def require_credential(self) -> None:
        if not self.has_credential:
            raise MissingCredentialError()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session with proper headers."""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"Accept": "application/json"}
            )
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()

    async def __aenter__(self) -> "EvacueesApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        self.require_credential()
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        session = await self._get_session()
        try:
            async with session.request(method, url, json=json_body, params=params, headers=headers) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
                if response.status >= 400:
                    message = (data or {}).get("message") if isinstance(data, dict) else None
                    logger.warning("Backend request rejected", method=method, path=path, status=response.status)
                    raise TransportError(
                        message or f"Request failed with status {response.status}",
                        status_code=response.status,
                        payload=data if isinstance(data, dict) else None
                    )
                return data
        except aiohttp.ClientError as e:
            logger.error("Backend request failed", method=method, path=path, error=str(e))
            raise TransportError(str(e) or type(e).__name__, error_code="CONNECTION_FAILED") from e
        except TimeoutError as e:
            logger.error("Backend request timed out", method=method, path=path)
            raise TransportError("Request timed out", error_code="CONNECTION_FAILED") from e

    @staticmethod
    def _require_id(value: Optional[int], name: str) -> int:
        if not value:
            raise PreconditionError(f"{name} is required.")
        return value

    # ----- Roster reads -----

    async def get_details(self, event_id: int) -> EvacuationCenterDetail:
        event_id = self._require_id(event_id, "Evacuation center event id")
        data = await self._request("GET", f"/evacuees/{event_id}/details")
        return EvacuationCenterDetail.model_validate(data)

    async def get_statistics(self, event_id: int) -> EvacueeStatistics:
        event_id = self._require_id(event_id, "Evacuation center event id")
        data = await self._request("GET", f"/evacuees/{event_id}/evacuee-statistics")
        return EvacueeStatistics.model_validate(data or {})

    async def get_evacuees_information(self, event_id: int) -> List[RosterEntry]:
        event_id = self._require_id(event_id, "Evacuation center event id")
        data = await self._request("GET", f"/evacuees/{event_id}/evacuees-information")
        if not isinstance(data, list):
            return []
        return [RosterEntry.model_validate(row) for row in data]

    async def get_undecamped_count(self, event_id: int) -> int:
        event_id = self._require_id(event_id, "Evacuation center event id")
        data = await self._request("GET", f"/evacuees/{event_id}/undecamped-count")
        return int((data or {}).get("count") or 0)

    # ----- Lifecycle writes -----

    async def decamp_all(self, event_id: int, timestamp: datetime) -> Dict[str, Any]:
        event_id = self._require_id(event_id, "Evacuation center event id")
        return await self._request(
            "POST",
            f"/evacuees/{event_id}/decamp-all",
            json_body={"decampment_timestamp": to_iso(timestamp)}
        ) or {}

    async def end_evacuation(self, event_id: int, timestamp: datetime) -> Dict[str, Any]:
        event_id = self._require_id(event_id, "Evacuation center event id")
        return await self._request(
            "POST",
            f"/evacuees/{event_id}/end",
            json_body={"evacuation_end_date": to_iso(timestamp)}
        ) or {}

    async def decamp_family(
        self,
        event_id: int,
        family_head_id: int,
        timestamp: Optional[datetime]
    ) -> Dict[str, Any]:
        """Set (timestamp) or clear (None) the decampment of one family."""
        event_id = self._require_id(event_id, "Evacuation center event id")
        family_head_id = self._require_id(family_head_id, "Family head id")
        return await self._request(
            "POST",
            f"/evacuees/{event_id}/families/{family_head_id}/decamp",
            json_body={"decampment_timestamp": to_iso(timestamp) if timestamp else None}
        ) or {}

    # ----- Registration -----

    async def search_evacuees(self, name: str) -> List[EvacueeSearchResult]:
        if not name or not name.strip():
            raise PreconditionError("A name is required to search evacuees.")
        data = await self._request("GET", "/evacuees/search", params={"name": name.strip()})
        return [EvacueeSearchResult.model_validate(row) for row in (data or [])]

    async def get_family_heads(self, event_id: int, query: str = "") -> List[FamilyHeadResult]:
        event_id = self._require_id(event_id, "Evacuation center event id")
        data = await self._request("GET", f"/evacuees/{event_id}/family-heads", params={"q": query})
        rows = (data or {}).get("data", []) if isinstance(data, dict) else []
        return [FamilyHeadResult.model_validate(row) for row in rows]

    async def get_edit_evacuee(self, event_id: int, evacuee_resident_id: int) -> Dict[str, Any]:
        event_id = self._require_id(event_id, "Evacuation center event id")
        evacuee_resident_id = self._require_id(evacuee_resident_id, "Evacuee resident id")
        return await self._request("GET", f"/evacuees/{event_id}/{evacuee_resident_id}/edit") or {}

    async def post_evacuee(self, payload: RegisterEvacueePayload) -> Dict[str, Any]:
        return await self._request("POST", "/evacuees", json_body=payload.model_dump(mode="json")) or {}

    async def put_evacuee(self, evacuee_resident_id: int, payload: RegisterEvacueePayload) -> Dict[str, Any]:
        evacuee_resident_id = self._require_id(evacuee_resident_id, "Evacuee resident id")
        return await self._request(
            "PUT",
            f"/evacuees/{evacuee_resident_id}",
            json_body=payload.model_dump(mode="json")
        ) or {}
