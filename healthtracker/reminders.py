# healthtracker/reminders.py
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, Set

from .android import AndroidAlarm, android_ready
from .models import Medication

logger = logging.getLogger("healthtracker.reminders")

REMINDER_TITLE = "Medication Reminder"
ONE_DAY = timedelta(days=1)


def request_code(medication_id: int) -> int:
    return int(medication_id) & 0x7FFFFFFF


@dataclass(frozen=True)
class Reminder:
    request_code: int
    title: str
    body: str
    fire_at: datetime
    repeat_daily: bool = True

    def latest_occurrence(self, now: datetime) -> Optional[datetime]:
        """Most recent fire time at or before now, or None if it has not fired yet."""
        if self.fire_at > now:
            return None
        if not self.repeat_daily:
            return self.fire_at
        return self.fire_at + ONE_DAY * ((now - self.fire_at) // ONE_DAY)

    def next_occurrence(self, now: datetime) -> Optional[datetime]:
        if self.fire_at > now:
            return self.fire_at
        if not self.repeat_daily:
            return None
        return self.latest_occurrence(now) + ONE_DAY


def reminder_for(medication: Medication) -> Reminder:
    return Reminder(
        request_code=request_code(medication.id),
        title=REMINDER_TITLE,
        body=f"Time to take {medication.name}",
        fire_at=medication.next_due_time,
    )


def build_reminders(medications: Iterable[Medication], now: Optional[datetime] = None) -> List[Reminder]:
    """One reminder per medication that is still ahead and not completed."""
    now = now or datetime.now()
    return [reminder_for(m) for m in medications
            if m.next_due_time > now and not m.is_completed]


class ReminderScheduler:
    """
    Hands reminders to the platform. Every resync cancels what was scheduled
    before and schedules the new set; on desktop the set is only kept in
    memory for the in-app thread to fire.

    With a state_path the scheduled request codes are also written to disk,
    so a later process can cancel alarms it never scheduled itself.
    """

    def __init__(self, use_android: Optional[bool] = None, state_path: Optional[Path] = None,
                 grace: timedelta = timedelta(seconds=90)):
        self.use_android = android_ready() if use_android is None else bool(use_android)
        self.state_path = Path(state_path) if state_path is not None else None
        self.grace = grace
        self._lock = RLock()
        self._scheduled: Dict[int, Reminder] = {}
        # one-shot occurrences that came due right before a resync replaced them
        self._pending: Dict[int, Reminder] = {}
        self._fired: Dict[int, datetime] = {}

    @property
    def scheduled(self) -> List[Reminder]:
        with self._lock:
            return sorted(self._scheduled.values(), key=lambda r: r.fire_at)

    def _load_codes(self) -> Set[int]:
        if self.state_path is None or not self.state_path.exists():
            return set()
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
            return {int(c) for c in data.get("request_codes", [])}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"ignoring unreadable reminder state {self.state_path}: {e}")
            return set()

    def _save_codes(self, codes: Iterable[int]):
        if self.state_path is None:
            return
        try:
            tmp = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
            tmp.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps({"request_codes": sorted(codes)}), encoding="utf-8")
            tmp.replace(self.state_path)
        except OSError:
            logger.exception(f"could not write reminder state {self.state_path}")

    def cancel_all(self):
        with self._lock:
            codes = set(self._scheduled) | self._load_codes()
            self._scheduled.clear()
            self._pending.clear()
            self._save_codes(())
        if self.use_android:
            for code in sorted(codes):
                AndroidAlarm.cancel(code)

    def _carry_over(self, medications: List[Medication], now: datetime) -> Dict[int, Reminder]:
        """Occurrences inside the grace window that have not fired yet and are still wanted."""
        wanted = {request_code(m.id) for m in medications if not m.is_completed}
        carried = {}
        for r in list(self._pending.values()) + list(self._scheduled.values()):
            occ = r.latest_occurrence(now)
            if occ is None or now - occ > self.grace:
                continue
            if r.request_code not in wanted or self._fired.get(r.request_code) == occ:
                continue
            carried[r.request_code] = Reminder(r.request_code, r.title, r.body, occ, repeat_daily=False)
        return carried

    def resync(self, medications: Iterable[Medication], now: Optional[datetime] = None) -> List[Reminder]:
        now = now or datetime.now()
        medications = list(medications)
        reminders = build_reminders(medications, now)
        with self._lock:
            carried = self._carry_over(medications, now)
            self.cancel_all()
            self._pending.update(carried)
            for r in reminders:
                self._scheduled[r.request_code] = r
                if self.use_android:
                    AndroidAlarm.schedule(r.fire_at, r.title, r.body, r.request_code, r.repeat_daily)
                else:
                    logger.info(f"[Simulated alarm] {r.title} - {r.body} @ {r.fire_at}")
            self._save_codes(self._scheduled)
        logger.info(f"scheduled {len(reminders)} medication reminders")
        return reminders

    def collect_due(self, now: Optional[datetime] = None,
                    grace: Optional[timedelta] = None) -> List[Reminder]:
        """Reminders whose latest occurrence fell within grace of now, each occurrence once."""
        now = now or datetime.now()
        grace = self.grace if grace is None else grace
        due = []
        with self._lock:
            for code, r in list(self._pending.items()):
                del self._pending[code]
                if now - r.fire_at > grace or self._fired.get(code) == r.fire_at:
                    continue
                self._fired[code] = r.fire_at
                due.append(r)
            for code, r in self._scheduled.items():
                occ = r.latest_occurrence(now)
                if occ is None or now - occ > grace:
                    continue
                if self._fired.get(code) == occ:
                    continue
                self._fired[code] = occ
                due.append(r)
        return due


# -------------------------
# In-app scheduler thread (desktop / fallback)
# -------------------------
class BackgroundScheduler:
    def __init__(self, scheduler: ReminderScheduler, on_fire: Callable[[Reminder], None],
                 interval_s: float = 30.0):
        self.scheduler = scheduler
        self.on_fire = on_fire
        self.interval_s = float(interval_s)
        self.thread = None
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self._loop, daemon=True)
        self.thread.start()
        logger.info("background reminder scheduler started")

    def stop(self):
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=2)
            self.thread = None

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("background reminder check failed")
            self._stop.wait(self.interval_s)

    def check(self, now: Optional[datetime] = None) -> List[Reminder]:
        due = self.scheduler.collect_due(now)
        for r in due:
            logger.info(f"[in-app reminder] {r.body}")
            self.on_fire(r)
        return due
