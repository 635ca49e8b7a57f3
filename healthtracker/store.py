# healthtracker/store.py
# What the home screen holds: the last fetched lists and the loading flag.
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

import httpx

from .api import ApiError, ApiStatusError, HealthApi
from .models import (
    HealthMetric,
    HealthMetricDraft,
    InvalidPayload,
    Medication,
    MedicationDraft,
    sort_health_metrics,
    sort_medications,
)
from .reminders import ReminderScheduler

logger = logging.getLogger("healthtracker.store")

FETCH_MEDICATIONS_FAILED = "Failed to fetch medications. Please try again."
FETCH_MEDICATIONS_ERROR = "Error fetching medications. Please check your connection."


class HealthStore:
    def __init__(self, api: HealthApi, reminders: Optional[ReminderScheduler] = None,
                 on_error: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.api = api
        self.reminders = reminders
        self.on_error = on_error
        self.clock = clock

        self.medications: List[Medication] = []
        self.health_metrics: List[HealthMetric] = []
        self.is_loading = False

    def _report(self, message: str):
        if self.on_error is not None:
            self.on_error(message)

    # -------------------------
    # Refresh
    # -------------------------
    async def refresh(self):
        self.is_loading = True
        try:
            async with self.api:
                await asyncio.gather(
                    self.load_medications(),
                    self.load_health_metrics(),
                )
        finally:
            self.is_loading = False

    async def load_medications(self):
        try:
            meds = await self.api.fetch_medications()
        except ApiStatusError as e:
            logger.warning(f"Failed to fetch medications: {e.status_code}")
            self._report(FETCH_MEDICATIONS_FAILED)
            return
        except (httpx.HTTPError, InvalidPayload) as e:
            logger.error(f"Error fetching medications: {e}")
            self._report(FETCH_MEDICATIONS_ERROR)
            return

        self.medications = sort_medications(meds)
        if self.reminders is not None:
            try:
                self.reminders.resync(self.medications, now=self.clock())
            except Exception:
                logger.exception("reminder resync failed")

    async def load_health_metrics(self):
        try:
            metrics = await self.api.fetch_health_metrics()
        except ApiStatusError as e:
            logger.warning(f"Failed to fetch health metrics: {e.body[:200]}")
            return
        except (httpx.HTTPError, InvalidPayload) as e:
            logger.error(f"Error fetching health metrics: {e}")
            return
        self.health_metrics = sort_health_metrics(metrics)

    # -------------------------
    # Round trips (post, then full re-fetch)
    # -------------------------
    async def _post_then_refresh(self, post, failed: str, error: str) -> bool:
        async with self.api:
            try:
                await post()
            except ApiStatusError:
                self._report(failed)
                return False
            except (ApiError, httpx.HTTPError) as e:
                self._report(f"{error}: {e}")
                return False
            await self.refresh()
        return True

    async def add_medication(self, draft: MedicationDraft) -> bool:
        return await self._post_then_refresh(
            lambda: self.api.add_medication(draft),
            "Failed to add medication",
            "Error adding medication",
        )

    async def add_health_metric(self, draft: HealthMetricDraft) -> bool:
        return await self._post_then_refresh(
            lambda: self.api.add_health_metric(draft),
            "Failed to add health metric",
            "Error adding health metric",
        )

    async def toggle_completion(self, medication: Medication) -> bool:
        return await self._post_then_refresh(
            lambda: self.api.toggle_medication(medication),
            "Failed to update medication status",
            "Error updating medication status",
        )
