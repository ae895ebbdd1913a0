"""
Pytest configuration and shared fixtures for the backend test suite.
"""

import asyncio
import heapq
import itertools
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, Mock, patch

import pytest

from core.config import Settings
from models.schemas import (
    ChangeEvent, EvacuationCenterDetail, EvacueeSearchResult, EvacueeStatistics,
    RegisterEvacueePayload, RosterEntry
)
from services.change_stream import ChangeStreamTransport, ChannelHandle
from services.error_handler import MissingCredentialError


CENTER_EVENT_ID = 7
EVACUATION_CENTER_ID = 11
DISASTER_ID = 3
NOW = datetime(2024, 10, 20, 10, 0, tzinfo=timezone.utc)
DISASTER_START = datetime(2024, 10, 1, 8, 0, tzinfo=timezone.utc)


class VirtualTimer:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """Deterministic clock for timer-driven code; time only moves on advance()."""

    def __init__(self):
        self.now = 0.0
        self._queue = []
        self._seq = itertools.count()
        self.fired_at: List[float] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> VirtualTimer:
        timer = VirtualTimer(self.now + delay, callback)
        heapq.heappush(self._queue, (timer.when, next(self._seq), timer))
        return timer

    def advance_to(self, when: float) -> None:
        while self._queue and self._queue[0][0] <= when + 1e-9:
            at, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self.now = at
            self.fired_at.append(at)
            timer.callback()
        self.now = when

    def advance(self, seconds: float) -> None:
        self.advance_to(self.now + seconds)


class FakeChangeStream(ChangeStreamTransport):
    """In-memory transport: tests emit table changes by hand."""

    def __init__(self):
        self.channels: Dict[str, tuple] = {}
        self.opened: List[ChannelHandle] = []
        self.closed: List[ChannelHandle] = []
        self.fail_next_open: Optional[Exception] = None
        self.fail_next_close: Optional[Exception] = None
        self.transport_closed = False
        self.open_delay = 0.0
        self.access_tokens: List[Optional[str]] = []
        self._tokens = itertools.count(1)

    async def open_channel(self, name, watches, on_change):
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_next_open is not None:
            error, self.fail_next_open = self.fail_next_open, None
            raise error
        handle = ChannelHandle(name=name, watches=tuple(watches), token=next(self._tokens), topic=name)
        self.channels[handle.token] = (handle, on_change)
        self.opened.append(handle)
        return handle

    async def close_channel(self, handle):
        self.channels.pop(handle.token, None)
        handle.closed = True
        self.closed.append(handle)
        if self.fail_next_close is not None:
            error, self.fail_next_close = self.fail_next_close, None
            raise error

    async def update_access_token(self, token):
        self.access_tokens.append(token)

    async def close(self):
        self.transport_closed = True

    @property
    def open_names(self) -> List[str]:
        return sorted(handle.name for handle, _ in self.channels.values())

    def emit(self, table: str) -> int:
        """Deliver a change on every open channel watching ``table``; returns deliveries."""
        delivered = 0
        for handle, on_change in list(self.channels.values()):
            for watch in handle.watches:
                if watch.table == table:
                    on_change(ChangeEvent(table=table, filter_key=watch.filter))
                    delivered += 1
        return delivered


def make_detail(
    center_event_id: int = CENTER_EVENT_ID,
    ended: bool = False,
    evacuation_center_id: int = EVACUATION_CENTER_ID,
    disaster_id: int = DISASTER_ID,
    disaster_start: datetime = DISASTER_START
) -> EvacuationCenterDetail:
    return EvacuationCenterDetail.model_validate({
        "evacuation_event": {
            "id": center_event_id,
            "evacuation_start_date": "2024-10-02T06:00:00+00:00",
            "evacuation_end_date": "2024-10-19T06:00:00+00:00" if ended else None,
            "is_event_ended": ended,
        },
        "disaster": {
            "disasters_id": disaster_id,
            "disaster_name": "Typhoon Kristine",
            "disaster_type_name": "Typhoon",
            "disaster_start_date": disaster_start.isoformat(),
        },
        "evacuation_center": {
            "evacuation_center_id": evacuation_center_id,
            "evacuation_center_name": "Bogtong Elementary School",
            "evacuation_center_barangay_name": "Bogtong",
        },
        "evacuation_summary": {
            "total_no_of_family": 4,
            "total_no_of_individuals": 13,
            "evacuation_center_capacity": 120,
        },
    })


def make_rows() -> List[RosterEntry]:
    raw = [
        {"id": 1, "family_head_full_name": "Reyes, Ana", "barangay": "Bogtong",
         "total_individuals": 4, "room_name": "Room B", "decampment_timestamp": None},
        {"id": 2, "family_head_full_name": "dela Cruz, Juan", "barangay": "Rawis",
         "total_individuals": 2, "room_name": "Room A", "decampment_timestamp": "2024-10-05T09:00:00+00:00"},
        {"id": 3, "family_head_full_name": "Álvarez, Berto", "barangay": "Bitano",
         "total_individuals": 6, "room_name": None, "decampment_timestamp": None},
        {"id": 4, "family_head_full_name": "Santos, Carla", "barangay": "Bonot",
         "total_individuals": 1, "room_name": "Room C", "decampment_timestamp": "2024-10-01T12:00:00+00:00"},
    ]
    return [RosterEntry.model_validate({**row, "disaster_evacuation_event_id": CENTER_EVENT_ID}) for row in raw]


def make_search_result(**overrides: Any) -> EvacueeSearchResult:
    data = {
        "evacuee_resident_id": 501,
        "first_name": "Juan",
        "middle_name": None,
        "last_name": "Dela Cruz",
        "birthdate": "1980-05-17",
        "is_active": True,
        "active_event_id": CENTER_EVENT_ID,
        "active_disaster_id": DISASTER_ID,
        "active_ec_id": EVACUATION_CENTER_ID,
        "active_ec_name": "Bogtong Elementary School",
    }
    data.update(overrides)
    return EvacueeSearchResult.model_validate(data)


def make_payload(**overrides: Any) -> RegisterEvacueePayload:
    data = {
        "first_name": "Juan",
        "last_name": "Dela Cruz",
        "birthdate": "1980-05-17",
        "sex": "Male",
        "disaster_evacuation_event_id": CENTER_EVENT_ID,
    }
    data.update(overrides)
    return RegisterEvacueePayload.model_validate(data)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with safe defaults."""
    return Settings(
        DEBUG=True,
        HOST="127.0.0.1",
        PORT=8001,
        ALLOWED_ORIGINS="http://localhost:5173",
        EVAC_API_BASE_URL="http://evac.test/api/v1",
        REALTIME_URL=None,
        REFRESH_QUIET_PERIOD_MS=50,
        DEFAULT_ROWS_PER_PAGE=5,
        MAX_ROWS_PER_PAGE=100,
        DUPLICATE_MATCH_FIELDS="birthdate",
        LOCAL_TIMEZONE="UTC"
    )


@pytest.fixture
def mock_settings(test_settings: Settings):
    """Mock the get_settings function to return test settings."""
    with patch('core.config.get_settings', return_value=test_settings):
        yield test_settings


@pytest.fixture
def virtual_scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def fake_transport() -> FakeChangeStream:
    return FakeChangeStream()


@pytest.fixture
def roster_rows() -> List[RosterEntry]:
    return make_rows()


@pytest.fixture
def fake_api() -> Mock:
    """Evacuee API double serving one active event with two undecamped families."""
    api = Mock()
    api.token = "test-token"

    def require_credential():
        if not api.token:
            raise MissingCredentialError()

    api.require_credential = Mock(side_effect=require_credential)
    api.get_details = AsyncMock(return_value=make_detail())
    api.get_statistics = AsyncMock(return_value=EvacueeStatistics(title="Evacuees Statistics",
                                                                  summary={"total_no_of_male": 6}))
    api.get_evacuees_information = AsyncMock(return_value=make_rows())
    api.get_undecamped_count = AsyncMock(return_value=2)
    api.decamp_all = AsyncMock(return_value={"message": "Decamped", "updated": 2, "remaining_undecamped": 0})
    api.end_evacuation = AsyncMock(return_value={"message": "Ended"})
    api.decamp_family = AsyncMock(return_value={"message": "Family decamped"})
    api.search_evacuees = AsyncMock(return_value=[])
    api.get_family_heads = AsyncMock(return_value=[])
    api.get_edit_evacuee = AsyncMock(return_value={"evacuee_resident_id": 501})
    api.post_evacuee = AsyncMock(return_value={"message": "Registered", "data": {"id": 900}})
    api.put_evacuee = AsyncMock(return_value={"message": "Updated"})
    api.close = AsyncMock()
    return api


@pytest.fixture
def fixed_now() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def detail_factory() -> Callable[..., EvacuationCenterDetail]:
    return make_detail


@pytest.fixture
def search_result_factory() -> Callable[..., EvacueeSearchResult]:
    return make_search_result


@pytest.fixture
def payload_factory() -> Callable[..., RegisterEvacueePayload]:
    return make_payload


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
