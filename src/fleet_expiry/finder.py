"""Pages through reservations whose hold deadline has passed."""
from __future__ import annotations

from datetime import datetime
from typing import Sequence

from .constants import SchedulerDefaults
from .exceptions import ExpirationFetchError
from .logging import get_logger
from .models import Reservation
from .stores.base import ReservationStore

logger = get_logger(__name__)


class ExpirationFinder:
    """Read-only access to the expirable set, one fixed-size page at a time.

    Pages are ordered by hold deadline, oldest first, so a growing backlog is
    always worked from its oldest end.
    """

    def __init__(
        self,
        reservation_store: ReservationStore,
        page_size: int = SchedulerDefaults.BATCH_SIZE,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be a positive integer")
        self._store = reservation_store
        self.page_size = page_size

    async def fetch_page(self, now: datetime, offset: int) -> list[Reservation]:
        """Fetch the page starting at ``offset``.

        Raises:
            ExpirationFetchError: the store failed. Fatal for the run.
        """
        try:
            page = await self._store.list_expirable(now, offset, self.page_size)
        except Exception as e:
            raise ExpirationFetchError(
                f"Failed to fetch expirable bookings: {e}", offset=offset
            ) from e

        if page:
            logger.debug(
                "Fetched page of expirable bookings",
                offset=offset,
                count=len(page),
            )
        return page

    def is_exhausted(self, page: Sequence[Reservation]) -> bool:
        """A short page means no rows exist past it."""
        return len(page) < self.page_size
