"""
Fetcher stage of the roster pipeline: one full re-fetch of a view's data.
"""

import asyncio
import itertools
from datetime import datetime

import structlog

from models.schemas import EvacuationCenterEvent, RosterSnapshot
from services.error_handler import PreconditionError

logger = structlog.get_logger(__name__)


class RosterRefresher:
    """Fetches detail, statistics, roster and undecamped count concurrently."""

    def __init__(self, api, center_event_id: int):
        if not center_event_id:
            raise PreconditionError("Evacuation center event id is required.")
        self.api = api
        self.center_event_id = center_event_id
        self._generations = itertools.count(1)

    async def fetch(self, write_epoch: int = 0) -> RosterSnapshot:
        """
        Fetch a new snapshot stamped with a monotonically increasing generation.

        ``write_epoch`` is the controller's epoch at the moment the fetch
        started; it lets the controller discard results that raced a write.
        """
        self.api.require_credential()
        generation = next(self._generations)
        event_id = self.center_event_id

        detail, statistics, roster, undecamped = await asyncio.gather(
            self.api.get_details(event_id),
            self.api.get_statistics(event_id),
            self.api.get_evacuees_information(event_id),
            self.api.get_undecamped_count(event_id),
        )

        snapshot = RosterSnapshot(
            generation=generation,
            write_epoch=write_epoch,
            fetched_at=datetime.now(),
            event=EvacuationCenterEvent.from_detail(event_id, detail),
            detail=detail,
            statistics=statistics,
            roster=roster,
            undecamped_count=undecamped
        )
        logger.debug("Roster fetched", center_event_id=event_id, generation=generation,
                     rows=len(roster), undecamped_count=undecamped)
        return snapshot
