"""Backoff computation shared by job retries and webhook redeliveries.

Retries are plain state: a record carries its attempt count and the time
at which it becomes eligible again. Whatever loop claims fresh work also
picks up due retries, so nothing is lost across restarts.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from receipt_vault.common.models import utcnow


class RetryScheduler:
    def __init__(
        self,
        cap: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cap = cap
        self.clock = clock

    @staticmethod
    def next_delay(
        attempts: int, base_delay: float, backoff_multiplier: float, cap: float
    ) -> float:
        """Seconds to wait after ``attempts`` previous retries.

        ``min(base_delay * backoff_multiplier ** attempts, cap)``. There is no
        jitter, so consecutive delays never decrease.
        """
        attempts = max(0, attempts)
        try:
            delay = base_delay * (backoff_multiplier ** attempts)
        except OverflowError:
            return cap
        return min(delay, cap)

    def next_eligible_at(
        self,
        attempts: int,
        base_delay: float,
        backoff_multiplier: float,
        cap: Optional[float] = None,
    ) -> datetime:
        delay = self.next_delay(
            attempts, base_delay, backoff_multiplier, self.cap if cap is None else cap
        )
        return self.clock() + timedelta(seconds=delay)

    def is_eligible(self, eligible_at: Optional[datetime]) -> bool:
        if eligible_at is None:
            return True
        return self.clock() >= eligible_at
