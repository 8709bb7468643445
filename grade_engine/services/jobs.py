"""Job context shared by the steps of one course recomputation.

A ``JobContext`` is the cancellation token of a course job: workers call
``checkpoint()`` between per-learner aggregation steps. It raises
``JobCancelled`` once the course is gone (or ``cancel()`` was called) and
``RecomputeTimeout`` once the deadline has passed. Retrying transient
failures lives here as well.
"""

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.orm import Session

from grade_engine.config import settings
from grade_engine.core.errors import ConcurrencyConflict, JobCancelled, RecomputeTimeout
from grade_engine.db.models import Course

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobContext:
    def __init__(
        self,
        db: Session,
        course_id: int,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.course_id = course_id
        self._clock = clock
        timeout = settings.JOB_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.deadline = clock() + timeout
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def course_alive(self) -> bool:
        row = self.db.query(Course.deleted_at).filter(Course.id == self.course_id).first()
        return row is not None and row.deleted_at is None

    def checkpoint(self) -> None:
        if self._cancelled or not self.course_alive():
            self._cancelled = True
            raise JobCancelled("course", self.course_id, "course deleted during job")
        if self._clock() > self.deadline:
            raise RecomputeTimeout("course", self.course_id, "job deadline exceeded")


def with_retry(
    func: Callable[[], T],
    max_retries: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func``; retry ``ConcurrencyConflict`` with exponential backoff.

    After the last attempt the conflict is re-raised to the caller as a
    transient failure.
    """
    attempts = settings.RECOMPUTE_MAX_RETRIES if max_retries is None else max_retries
    delay = settings.RECOMPUTE_RETRY_BASE_DELAY if base_delay is None else base_delay
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrencyConflict as e:
            if attempt < attempts - 1:
                wait_time = delay * (2**attempt)
                logger.warning(
                    "Conflict on %s[%s] (attempt %d/%d), retrying in %.2fs",
                    e.entity, e.entity_id, attempt + 1, attempts, wait_time,
                )
                sleep(wait_time)
            else:
                logger.error("Giving up on %s[%s] after %d attempts", e.entity, e.entity_id, attempts)
                raise
    return func()  # max_retries <= 0: single unguarded attempt
