# service/reminder_service.py
# python-for-android background service: keeps medication reminders firing
# while the UI is closed.  Re-fetches the medication list now and then and
# posts a notification when a dose comes due.
import time
import asyncio
import logging
from datetime import datetime, timedelta

import httpx

from healthtracker import android
from healthtracker.api import ApiError, HealthApi
from healthtracker.applog import setup_logging
from healthtracker.config import Settings
from healthtracker.models import InvalidPayload
from healthtracker.reminders import ReminderScheduler, request_code

logger = logging.getLogger("healthtracker.service")

REFETCH_EVERY = timedelta(minutes=15)
# a due dose is re-checked against the server when the list is older than this
CONFIRM_AFTER = timedelta(minutes=1)


class ReminderService:
    def __init__(self, api: HealthApi, notify=android.notify, refetch_every: timedelta = REFETCH_EVERY,
                 confirm_after: timedelta = CONFIRM_AFTER):
        self.api = api
        self.notify = notify
        self.refetch_every = refetch_every
        self.confirm_after = confirm_after
        # alarms belong to the UI process; here reminders are only tracked
        self.reminders = ReminderScheduler(use_android=False)
        self.last_fetch = None
        self.open_codes = set()

    def refetch(self, now: datetime) -> bool:
        try:
            meds = asyncio.run(self.api.fetch_medications())
        except (ApiError, httpx.HTTPError, InvalidPayload) as e:
            logger.warning(f"service fetch failed: {e}")
            return False
        finally:
            self.last_fetch = now
        self.open_codes = {request_code(m.id) for m in meds if not m.is_completed}
        self.reminders.resync(meds, now=now)
        return True

    def _needs_fetch(self, now: datetime, have_due: bool) -> bool:
        if self.last_fetch is None:
            return True
        age = now - self.last_fetch
        return age >= self.refetch_every or (have_due and age >= self.confirm_after)

    def tick(self, now: datetime = None) -> int:
        now = now or datetime.now()
        # collect before refetching so a resync cannot drop a dose that just came due
        due = self.reminders.collect_due(now)
        if self._needs_fetch(now, bool(due)) and self.refetch(now):
            skipped = [r for r in due if r.request_code not in self.open_codes]
            if skipped:
                logger.info(f"skipping {len(skipped)} reminders completed since last fetch")
            due = [r for r in due if r.request_code in self.open_codes]
        for r in due:
            self.notify(r.title, r.body, r.request_code)
        return len(due)


def main_loop():
    settings = Settings.from_env()
    setup_logging(settings.log_path, settings.log_lines)
    svc = ReminderService(HealthApi(settings.api_base, timeout_s=settings.timeout_s))
    logger.info("reminder service loop started")

    while True:
        try:
            svc.tick()
        except Exception:
            logger.exception("reminder service tick failed")
        time.sleep(20)


if __name__ == "__main__":
    main_loop()
