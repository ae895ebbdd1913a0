"""
Duplicate registration guard.

Classifies a registration candidate against existing evacuee records and picks
the dialog (and recovery actions) the operator is shown. A match in the same
center may be overridden via manual registration; a match that is still active
in another center blocks registration entirely.
"""

import re
import unicodedata
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

import structlog

from core.config import get_settings
from models.schemas import (
    DialogAction, DuplicateCandidate, DuplicateDialog, DuplicateKind,
    EvacueeSearchResult, RegisterEvacueePayload
)

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_name(*parts: Optional[str]) -> str:
    """Fold case, accents and whitespace of a full name."""
    joined = " ".join(p for p in parts if p)
    decomposed = unicodedata.normalize("NFKD", joined).casefold()
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", stripped).strip()


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        value = value.strip()
        return value.casefold() if value else None
    return value


class IdentityMatchPolicy:
    """
    Decides whether a record describes the same person as a candidate.

    Identity is the normalized full name plus every configured disambiguating
    field. A record (or candidate) lacking a configured field never matches,
    so a common name alone cannot block a registration.
    """

    def __init__(self, fields: Optional[Sequence[str]] = None):
        if fields is None:
            fields = get_settings().duplicate_match_fields_list
        self.fields = tuple(fields)

    def is_same_person(self, candidate: RegisterEvacueePayload, record: EvacueeSearchResult) -> bool:
        if normalize_name(candidate.first_name, candidate.middle_name, candidate.last_name, candidate.suffix) != \
                normalize_name(record.first_name, record.middle_name, record.last_name, record.suffix):
            return False
        for field in self.fields:
            expected = _comparable(getattr(candidate, field, None))
            actual = _comparable(getattr(record, field, None))
            if expected is None or actual is None or expected != actual:
                return False
        return True


def classify(
    candidate: RegisterEvacueePayload,
    records: Iterable[EvacueeSearchResult],
    target_event_id: int,
    policy: Optional[IdentityMatchPolicy] = None
) -> DuplicateCandidate:
    """
    Classify a registration candidate against existing records.

    A match that is active in another event wins over one in the target
    event; decamped (inactive) matches never conflict.
    """
    policy = policy or IdentityMatchPolicy()
    same_center: Optional[EvacueeSearchResult] = None
    other_center: Optional[EvacueeSearchResult] = None

    for record in records:
        if not record.is_active or record.active_event_id is None:
            continue
        if not policy.is_same_person(candidate, record):
            continue
        if record.active_event_id == target_event_id:
            same_center = same_center or record
        else:
            other_center = other_center or record

    match = other_center or same_center
    if match is None:
        return DuplicateCandidate(kind=DuplicateKind.NO_CONFLICT, person_name=candidate.full_name)

    kind = DuplicateKind.ACTIVE_IN_OTHER_CENTER if other_center else DuplicateKind.ACTIVE_IN_SAME_CENTER
    return DuplicateCandidate(
        kind=kind,
        person_name=candidate.full_name,
        center_name=match.active_ec_name,
        event_id=match.active_event_id,
        disaster_id=match.active_disaster_id,
        evacuee_resident_id=match.evacuee_resident_id
    )


def select_dialog(result: DuplicateCandidate) -> Optional[DuplicateDialog]:
    """Dialog shown for a classification; None when there is no conflict."""
    name = result.person_name or "This evacuee"

    if result.kind == DuplicateKind.ACTIVE_IN_SAME_CENTER:
        center = result.center_name or "this evacuation center"
        return DuplicateDialog(
            dialog="duplicate_warning",
            title="Already registered",
            message=(
                f"{name} is already registered in {center}. If this is a different "
                "individual with the same name, proceed with manual registration."
            ),
            actions=[DialogAction.CLOSE, DialogAction.MANUAL_REGISTER],
            override_permitted=True
        )

    if result.kind == DuplicateKind.ACTIVE_IN_OTHER_CENTER:
        center = result.center_name or "another evacuation center"
        actions = [DialogAction.CLOSE]
        if result.event_id:
            actions.append(DialogAction.VIEW_IN_OTHER_CENTER)
        return DuplicateDialog(
            dialog="duplicate_in_other_center",
            title="Already registered in another center",
            message=(
                f"{name} is already registered in {center} for this disaster. "
                "Please decamp them there first before registering here."
            ),
            actions=actions,
            override_permitted=False,
            navigate_to_event_id=result.event_id
        )

    return None


class DuplicateRegistrationGuard:
    """Runs the duplicate check for a registration against fresh search results."""

    def __init__(self, api, policy: Optional[IdentityMatchPolicy] = None):
        self.api = api
        self.policy = policy or IdentityMatchPolicy()

    async def check(self, candidate: RegisterEvacueePayload, target_event_id: int) -> DuplicateCandidate:
        # The search endpoint substring-matches each name part.
        records: List[EvacueeSearchResult] = await self.api.search_evacuees(candidate.last_name.strip())
        result = classify(candidate, records, target_event_id, self.policy)
        logger.info(
            "Duplicate check classified",
            center_event_id=target_event_id,
            kind=result.kind.value,
            matched_event_id=result.event_id,
            candidates=len(records)
        )
        return result
