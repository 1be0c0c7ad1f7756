"""Status machine for scheduled activities (planned tasks in a target zone)."""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from .config import ActivityConfig
from .models import ActivityState, ActivityStatus, ScheduledActivity
from .storage import Clock

logger = logging.getLogger(__name__)

# Statuses a zone-less tick keeps while the window is open
_HELD_STATUSES = (ActivityState.IN_PROGRESS, ActivityState.STOPPED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_status(previous: ActivityState, now: datetime, window_start: datetime,
                window_end: datetime, is_currently_in_zone: Optional[bool]) -> ActivityState:
    """Pure transition over ``[window_start, window_end)``."""
    if now < window_start:
        return ActivityState.NOT_STARTED
    if now >= window_end:
        return ActivityState.FINISHED
    if is_currently_in_zone is True:
        return ActivityState.IN_PROGRESS
    if is_currently_in_zone is None:
        # plain tick: no containment signal
        return previous if previous in _HELD_STATUSES else ActivityState.NOT_STARTED
    if previous is ActivityState.NOT_STARTED:
        return ActivityState.NOT_STARTED
    return ActivityState.STOPPED


class ActivityStatusMachine:
    """Evaluates scheduled activities against wall-clock time and containment.

    Periodic ticks and the zone entered/exited nudges all go through
    ``update`` so there is one place where status changes.
    """

    def __init__(self, clock: Optional[Clock] = None, config: Optional[ActivityConfig] = None):
        self.clock = clock or utc_now
        self.config = config or ActivityConfig()

    def update(self, activity: ScheduledActivity, now: Optional[datetime] = None,
               is_currently_in_zone: Optional[bool] = None) -> ActivityStatus:
        """Compute the activity's status at *now* (the clock if omitted)."""
        now = now or self.clock()
        window_start, window_end = activity.window(now.tzinfo)
        status = next_status(activity.status, now, window_start, window_end, is_currently_in_zone)
        if status is not activity.status:
            logger.info("Activity %s: %s -> %s", activity.activity_id,
                        activity.status.value, status.value)
        return ActivityStatus(activity.activity_id, status, window_start, window_end)

    def advance(self, activity: ScheduledActivity, now: Optional[datetime] = None,
                is_currently_in_zone: Optional[bool] = None) -> ScheduledActivity:
        """``update`` and return a copy of *activity* carrying the new status."""
        result = self.update(activity, now, is_currently_in_zone)
        return replace(activity, status=result.status)

    # ------------------------------------------------------------------
    # Event nudges
    # ------------------------------------------------------------------

    def tick(self, activity: ScheduledActivity) -> ActivityStatus:
        return self.update(activity)

    def on_zone_entered(self, activity: ScheduledActivity,
                        now: Optional[datetime] = None) -> ActivityStatus:
        return self.update(activity, now, True)

    def on_zone_exited(self, activity: ScheduledActivity,
                       now: Optional[datetime] = None) -> ActivityStatus:
        return self.update(activity, now, False)

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def resolve_outcome(self, status: ActivityStatus, in_zone_seconds: float) -> ActivityState:
        """Reclassify a finished activity as not_done when presence was too low.

        The activity counts as done when the entity spent at least
        ``minimum_presence_percentage`` of the window inside the zone.
        Statuses other than finished are returned unchanged.
        """
        if status.status is not ActivityState.FINISHED:
            return status.status
        window_seconds = (status.window_end - status.window_start).total_seconds()
        if in_zone_seconds <= 0 or window_seconds <= 0:
            return ActivityState.NOT_DONE
        if in_zone_seconds * 100 >= self.config.minimum_presence_percentage * window_seconds:
            return ActivityState.FINISHED
        return ActivityState.NOT_DONE
