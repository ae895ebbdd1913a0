"""
Pydantic schemas for the Evacuation Roster Console.

These schemas mirror the payloads of the evacuee REST API and the view-facing
outputs of the roster pipeline (sorted pages, lifecycle gating, duplicate
dialogs).
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator


class LifecycleStatus(str, Enum):
    """Persisted status of an evacuation-center event."""
    ACTIVE = "active"
    ENDED = "ended"


class ControllerState(str, Enum):
    """Client-side state of the end-of-operation flow."""
    ACTIVE = "active"
    END_REQUESTED = "end_requested"
    ENDED = "ended"


class SortKey(str, Enum):
    """Sortable roster columns."""
    FAMILY_HEAD_FULL_NAME = "family_head_full_name"
    BARANGAY = "barangay"
    TOTAL_INDIVIDUALS = "total_individuals"
    ROOM_NAME = "room_name"
    DECAMPMENT_TIMESTAMP = "decampment_timestamp"


class SortDirection(str, Enum):
    """Sort direction."""
    ASC = "asc"
    DESC = "desc"


class DuplicateKind(str, Enum):
    """Classification of a registration attempt against active registrations."""
    NO_CONFLICT = "no_conflict"
    ACTIVE_IN_SAME_CENTER = "active_in_same_center"
    ACTIVE_IN_OTHER_CENTER = "active_in_other_center"


class DialogAction(str, Enum):
    """Recovery actions offered by a duplicate-registration dialog."""
    CLOSE = "close"
    MANUAL_REGISTER = "manual_register"
    VIEW_IN_OTHER_CENTER = "view_in_other_center"


class LifecycleAction(str, Enum):
    """Operator actions gated by the lifecycle status of an event."""
    REGISTER_EVACUEE = "register_evacuee"
    MANUAL_REGISTER = "manual_register"
    EDIT_MEMBER = "edit_member"
    TRANSFER_HEAD = "transfer_head"
    SAVE_DECAMPMENT = "save_decampment"
    CLEAR_DECAMPMENT = "clear_decampment"
    END_OPERATION = "end_operation"


# ===== Roster Models =====

class SortState(BaseModel):
    """Single active sort key; absence (None) means insertion order."""
    model_config = ConfigDict(frozen=True)

    key: SortKey
    direction: SortDirection = SortDirection.ASC


class RosterEntry(BaseModel):
    """One family-level roster row for an evacuation-center event."""
    model_config = ConfigDict(extra="ignore")

    id: int
    disaster_evacuation_event_id: Optional[int] = None
    family_head_full_name: str = ""
    barangay: str = ""
    total_individuals: int = 0
    room_name: Optional[str] = None
    decampment_timestamp: Optional[datetime] = None

    @field_validator('decampment_timestamp', mode='before')
    @classmethod
    def blank_timestamp_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def is_decamped(self) -> bool:
        return self.decampment_timestamp is not None


class RosterPage(BaseModel):
    """A sorted, filtered and paginated slice of the roster."""
    rows: List[RosterEntry] = Field(default_factory=list)
    page: int = 1
    rows_per_page: int
    total_rows: int = 0
    total_pages: int = 0
    sort: Optional[SortState] = None
    search: str = ""


# ===== Event Detail Models =====

class EvacuationEventMeta(BaseModel):
    """Lifecycle metadata of a disaster evacuation event."""
    model_config = ConfigDict(extra="ignore")

    id: int
    evacuation_start_date: Optional[datetime] = None
    evacuation_end_date: Optional[datetime] = None
    is_event_ended: bool = False


class DisasterInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    disasters_id: int
    disaster_name: str = ""
    disaster_types_id: Optional[int] = None
    disaster_type_name: str = ""
    disaster_start_date: Optional[datetime] = None
    disaster_end_date: Optional[datetime] = None


class CenterInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    evacuation_center_id: int
    evacuation_center_name: str = ""
    evacuation_center_barangay_id: Optional[int] = None
    evacuation_center_barangay_name: str = ""


class EvacuationSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total_no_of_family: int = 0
    total_no_of_individuals: int = 0
    evacuation_center_capacity: int = 0


class EvacuationCenterDetail(BaseModel):
    """Detail payload of one evacuation-center event."""
    model_config = ConfigDict(extra="ignore")

    evacuation_event: Optional[EvacuationEventMeta] = None
    disaster: DisasterInfo
    evacuation_center: CenterInfo
    evacuation_summary: EvacuationSummary = Field(default_factory=EvacuationSummary)


class EvacuationCenterEvent(BaseModel):
    """One evacuation center paired with one disaster occurrence."""
    id: int
    evacuation_center_id: Optional[int] = None
    disaster_id: Optional[int] = None
    status: LifecycleStatus = LifecycleStatus.ACTIVE
    start_timestamp: Optional[datetime] = None
    end_timestamp: Optional[datetime] = None

    @classmethod
    def from_detail(cls, event_id: int, detail: EvacuationCenterDetail) -> "EvacuationCenterEvent":
        meta = detail.evacuation_event
        ended = bool(meta and (meta.is_event_ended or meta.evacuation_end_date))
        return cls(
            id=event_id,
            evacuation_center_id=detail.evacuation_center.evacuation_center_id,
            disaster_id=detail.disaster.disasters_id,
            status=LifecycleStatus.ENDED if ended else LifecycleStatus.ACTIVE,
            start_timestamp=meta.evacuation_start_date if meta else None,
            end_timestamp=meta.evacuation_end_date if meta else None,
        )


class EvacueeStatistics(BaseModel):
    """Gender and vulnerability counters for the statistics card."""
    model_config = ConfigDict(extra="ignore")

    title: str = ""
    summary: Dict[str, int] = Field(default_factory=dict)


class RosterSnapshot(BaseModel):
    """Result of one full re-fetch of the view's data."""
    generation: int
    write_epoch: int = 0
    fetched_at: datetime
    event: EvacuationCenterEvent
    detail: EvacuationCenterDetail
    statistics: Optional[EvacueeStatistics] = None
    roster: List[RosterEntry] = Field(default_factory=list)
    undecamped_count: int = 0


# ===== Change Stream Models =====

class ChangeEvent(BaseModel):
    """Opaque 'something in this filter changed' notification."""
    table: str
    filter_key: Optional[str] = None
    received_at: datetime = Field(default_factory=datetime.now)


# ===== Registration Models =====

class EvacueeSearchResult(BaseModel):
    """Evacuee record returned by the search endpoint, with active flags."""
    model_config = ConfigDict(extra="ignore")

    evacuee_resident_id: int
    first_name: str = ""
    middle_name: Optional[str] = None
    last_name: str = ""
    suffix: Optional[str] = None
    birthdate: Optional[date] = None
    sex: Optional[str] = None
    barangay_of_origin: Optional[Any] = None
    decampment_timestamp: Optional[datetime] = None
    is_active: bool = False
    active_event_id: Optional[int] = None
    active_disaster_id: Optional[int] = None
    active_ec_id: Optional[int] = None
    active_ec_name: Optional[str] = None
    family_head_full_name: Optional[str] = None

    @field_validator('birthdate', mode='before')
    @classmethod
    def trim_birthdate(cls, v):
        if isinstance(v, str):
            v = v.strip()[:10]
            return v or None
        return v


class RegisterEvacueePayload(BaseModel):
    """Payload submitted to register one evacuee."""
    first_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    last_name: str = Field(..., min_length=1)
    suffix: Optional[str] = None
    birthdate: Optional[date] = None
    sex: str = ""
    barangay_of_origin: Optional[int] = None
    marital_status: str = ""
    educational_attainment: str = ""
    school_of_origin: Optional[str] = None
    occupation: Optional[str] = None
    purok: Optional[str] = None
    relationship_to_family_head: str = "Head"
    family_head_id: Optional[int] = None
    date_registered: Optional[datetime] = None
    is_infant: bool = False
    is_children: bool = False
    is_youth: bool = False
    is_adult: bool = False
    is_senior: bool = False
    is_pwd: bool = False
    is_pregnant: bool = False
    is_lactating: bool = False
    ec_rooms_id: Optional[int] = None
    disaster_evacuation_event_id: int
    existing_evacuee_resident_id: Optional[int] = None

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name, self.suffix]
        return " ".join(p.strip() for p in parts if p and p.strip())


class FamilyHeadResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    family_head_id: int
    family_head_full_name: str
    barangay: str = ""
    barangay_id: Optional[int] = None
    purok: Optional[str] = None
    evacuation_room: Optional[str] = None


class DuplicateCandidate(BaseModel):
    """Outcome of the duplicate check for one registration attempt."""
    kind: DuplicateKind
    person_name: Optional[str] = None
    center_name: Optional[str] = None
    event_id: Optional[int] = None
    disaster_id: Optional[int] = None
    evacuee_resident_id: Optional[int] = None

    @property
    def override_permitted(self) -> bool:
        return self.kind == DuplicateKind.ACTIVE_IN_SAME_CENTER


class DuplicateDialog(BaseModel):
    """Presentation and recovery actions for a duplicate-registration outcome."""
    dialog: str
    title: str
    message: str
    actions: List[DialogAction]
    override_permitted: bool = False
    navigate_to_event_id: Optional[int] = None


class RegistrationOutcome(BaseModel):
    """Result of a guarded registration attempt."""
    submitted: bool = False
    duplicate: Optional[DuplicateCandidate] = None
    dialog: Optional[DuplicateDialog] = None
    blocked_reason: Optional[str] = None
    response: Optional[Dict[str, Any]] = None


# ===== Lifecycle Models =====

class GateResult(BaseModel):
    """Whether a lifecycle-gated action is permitted."""
    action: LifecycleAction
    permitted: bool
    title: Optional[str] = None
    reason: Optional[str] = None
    disabled_actions: List[str] = Field(default_factory=list)


class EndRequest(BaseModel):
    """State of an open end-operation confirmation."""
    undecamped_count: int
    requires_timestamp: bool
    default_timestamp: datetime
    min_timestamp: Optional[datetime] = None
    max_timestamp: datetime
    message: str


class EndOperationResult(BaseModel):
    """Outcome of confirming the end of an operation."""
    success: bool
    state: ControllerState
    error_code: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    decamped: int = 0
    end_timestamp: Optional[datetime] = None


class LifecycleView(BaseModel):
    """Lifecycle status and gating booleans for action buttons."""
    center_event_id: int
    status: LifecycleStatus
    state: ControllerState
    is_ended: bool
    can_end_operation: bool
    undecamped_count: int
    end_timestamp: Optional[datetime] = None
    last_error: Optional[str] = None
