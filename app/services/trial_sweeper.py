import datetime as dt
import logging

from app.data import profiles
from app.data.profiles import to_utc, utc_now

log = logging.getLogger(__name__)


def sweep_expired_trials(now: dt.datetime | None = None) -> int:
    """Move expired trials to ``trial_ended``. Safe to run repeatedly.

    One UPDATE statement selects and transitions the rows, so concurrent runs
    cannot double-apply; a run with nothing newly expired updates zero rows.
    """
    now_dt = to_utc(now) or utc_now()
    updated = profiles.mark_expired_trials(now_dt)
    log.info("trials.sweep now=%s updated=%d", now_dt.isoformat(), updated)
    return updated
