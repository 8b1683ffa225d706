"""
TrackingNumberService -- human-readable ``YYYY-NNNNN`` request numbers.

Responsibility:
    Allocate the next tracking number for the current calendar year from
    a locked per-year counter row.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Called by
    RegistrationService when a draft is created.

Invariants enforced:
    - Numbers are unique and strictly increasing within a year.  The
      counter row is locked with SELECT ... FOR UPDATE; the aggregate
      max-plus-one pattern is never used.
    - The increment is transactional: a rolled-back draft does not
      consume its number.

Failure modes:
    - IntegrityError on a concurrent first-use race for a year (handled
      via savepoint rollback and re-read).
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from registration_kernel.domain.clock import Clock, SystemClock
from registration_kernel.logging_config import get_logger
from registration_kernel.models.tracking_sequence import TrackingSequenceModel

logger = get_logger("services.tracking")


def format_tracking_number(year: int, value: int) -> str:
    """``2024-00042`` style number."""
    return f"{year}-{value:05d}"


class TrackingNumberService:
    """
    Allocates tracking numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    def next_tracking_number(self) -> str:
        year = self._clock.now_utc().year
        value = self._next_value(year)
        number = format_tracking_number(year, value)
        logger.debug("tracking_number_allocated", extra={"tracking_number": number})
        return number

    def _lock_counter(self, year: int) -> TrackingSequenceModel | None:
        return self._session.execute(
            select(TrackingSequenceModel)
            .where(TrackingSequenceModel.year == year)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _next_value(self, year: int) -> int:
        counter = self._lock_counter(year)

        if counter is None:
            # First number of the year; another writer may create it first
            savepoint = self._session.begin_nested()
            try:
                self._session.add(TrackingSequenceModel(year=year, last_value=1))
                self._session.flush()
                savepoint.commit()
                return 1
            except IntegrityError:
                logger.debug(
                    "tracking_counter_race_retry", extra={"year": year},
                )
                savepoint.rollback()
                counter = self._lock_counter(year)
                if counter is None:
                    raise

        counter.last_value += 1
        self._session.flush()
        return counter.last_value
