import json
import asyncio
import logging
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock
from urllib.parse import parse_qs

import httpx

from healthtracker import android
from healthtracker.api import ApiStatusError, HealthApi
from healthtracker.applog import FileAndRingHandler, RingLog, clear_log, setup_logging
from healthtracker.config import DEFAULT_API_BASE, Settings
from healthtracker.models import (
    HealthMetric,
    HealthMetricDraft,
    InvalidPayload,
    Medication,
    MedicationDraft,
    ValidationError,
    format_clock,
    format_date_time,
    parse_timestamp,
    sort_health_metrics,
    sort_medications,
)
from healthtracker.reminders import (
    BackgroundScheduler,
    Reminder,
    ReminderScheduler,
    build_reminders,
)
from healthtracker.store import FETCH_MEDICATIONS_ERROR, FETCH_MEDICATIONS_FAILED, HealthStore
from service.reminder_service import ReminderService


def _run(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=30)
    return asyncio.run(coro)


NOW = datetime(2030, 3, 14, 12, 0)
BASE = "https://tracker.test/med"


def med_json(id, name="Metformin", due="2030-03-14 18:30:00", overdue=0, completed=0, **extra):
    d = {
        "id": id,
        "name": name,
        "dosage": "500mg",
        "time": "6:30 PM",
        "next_due_time": due,
        "repeat_type": "daily",
        "custom_days": [False] * 7,
        "is_completed": completed,
        "is_overdue": overdue,
    }
    d.update(extra)
    return d


def metric_json(id, type="blood_sugar", value="110", ts="2030-03-14 07:45:00"):
    return {"id": id, "type": type, "value": value, "timestamp": ts}


def med(id, due, overdue=False, completed=False, name="Metformin"):
    return Medication(id=id, name=name, dosage="500mg", time="", next_due_time=due,
                      repeat_type="daily", is_overdue=overdue, is_completed=completed)


class FakeBackend:
    """Routes requests by path; records what the client sent."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.rsplit("/", 1)[-1]
        route = self.routes.get(path, (200, []))
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        status, body = route
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def paths(self):
        return [r.url.path.rsplit("/", 1)[-1] for r in self.requests]

    def form(self, index=-1):
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}


def make_api(backend):
    return HealthApi(BASE, timeout_s=5, transport=httpx.MockTransport(backend))


class TestModels(unittest.TestCase):
    def test_medication_from_json(self):
        m = Medication.from_json(med_json(7, completed=1, custom_days=[True, False, True, False, False, False, False]))
        self.assertEqual(m.id, 7)
        self.assertEqual(m.next_due_time, datetime(2030, 3, 14, 18, 30))
        self.assertTrue(m.is_completed)
        self.assertFalse(m.is_overdue)
        self.assertEqual(m.custom_weekdays, ["Mon", "Wed"])

    def test_php_style_values(self):
        m = Medication.from_json(med_json("12", overdue="1", custom_days="[false,false,false,false,false,true,true]"))
        self.assertEqual(m.id, 12)
        self.assertTrue(m.is_overdue)
        self.assertEqual(m.custom_weekdays, ["Sat", "Sun"])

    def test_flags_only_true_for_one(self):
        m = Medication.from_json(med_json(1, completed=2, overdue=None))
        self.assertFalse(m.is_completed)
        self.assertFalse(m.is_overdue)

    def test_missing_key(self):
        d = med_json(1)
        del d["next_due_time"]
        with self.assertRaises(InvalidPayload):
            Medication.from_json(d)

    def test_bad_timestamp(self):
        with self.assertRaises(InvalidPayload):
            Medication.from_json(med_json(1, due="tomorrow"))
        with self.assertRaises(InvalidPayload):
            HealthMetric.from_json(metric_json(1, ts=""))

    def test_offset_timestamp_becomes_local(self):
        expected = datetime(2030, 3, 14, 8, 0, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        self.assertEqual(parse_timestamp("2030-03-14T08:00:00Z"), expected)
        self.assertIsNone(parse_timestamp("2030-03-14T08:00:00+00:00").tzinfo)

    def test_metric_value_kept_as_text(self):
        sugar = HealthMetric.from_json(metric_json(1, value=95))
        self.assertEqual(sugar.value, "95")
        self.assertEqual(sugar.title, "Blood Sugar: 95 mg/dL")
        bp = HealthMetric.from_json(metric_json(2, type="blood_pressure", value="120/80"))
        self.assertEqual(bp.title, "Blood Pressure: 120/80")
        self.assertEqual(bp.subtitle, "Mar 14, 2030 - 7:45 AM")

    def test_sort_medications_overdue_first(self):
        meds = [
            med(1, NOW + timedelta(hours=3)),
            med(2, NOW - timedelta(hours=1), overdue=True),
            med(3, NOW + timedelta(hours=1)),
            med(4, NOW - timedelta(hours=5), overdue=True),
        ]
        self.assertEqual([m.id for m in sort_medications(meds)], [4, 2, 3, 1])

    def test_sort_metrics_newest_first(self):
        metrics = [HealthMetric(i, "blood_sugar", "100", NOW + timedelta(minutes=m))
                   for i, m in ((1, 0), (2, 30), (3, -30))]
        self.assertEqual([m.id for m in sort_health_metrics(metrics)], [2, 1, 3])

    def test_display_text(self):
        self.assertEqual(format_clock(0, 5), "12:05 AM")
        self.assertEqual(format_clock(12, 0), "12:00 PM")
        self.assertEqual(format_clock(23, 59), "11:59 PM")
        self.assertEqual(format_date_time(datetime(2024, 1, 5, 20, 5)), "Jan 5, 2024 - 8:05 PM")

        m = Medication.from_json(med_json(1, overdue=1, repeat_type="never"))
        self.assertEqual(m.subtitle_lines(), ["Dosage: 500mg", "Next: 6:30 PM (Once)", "OVERDUE"])
        odd = Medication.from_json(med_json(2, repeat_type="hourly"))
        self.assertEqual(odd.repeat_label, "")

    def test_past_due(self):
        m = med(1, NOW)
        self.assertTrue(m.past_due(NOW))
        self.assertFalse(m.past_due(NOW - timedelta(seconds=1)))


class TestDrafts(unittest.TestCase):
    def test_medication_form_fields(self):
        d = MedicationDraft(name="Aspirin", dosage="81mg", hour=8, minute=30, repeat_type="custom")
        d.custom_days[1] = True
        fields = d.form_fields()
        self.assertEqual(fields, {
            "name": "Aspirin",
            "dosage": "81mg",
            "time": "8:30 AM",
            "repeat_type": "custom",
            "custom_days": "[false,true,false,false,false,false,false]",
        })
        self.assertEqual(d.next_due_time(NOW), datetime(2030, 3, 14, 8, 30))

    def test_medication_required_fields(self):
        with self.assertRaises(ValidationError) as cm:
            MedicationDraft().validate()
        self.assertEqual(cm.exception.errors, {
            "name": "Please enter a name",
            "dosage": "Please enter a dosage",
        })

    def test_medication_rejects_unknown_repeat(self):
        with self.assertRaises(ValidationError) as cm:
            MedicationDraft(name="a", dosage="b", repeat_type="monthly").validate()
        self.assertIn("repeat_type", cm.exception.errors)

    def test_metric_validation(self):
        cases = [
            ("blood_sugar", "", "Please enter a value"),
            ("blood_sugar", "abc", "Please enter a valid number"),
            ("blood_pressure", "120", "Please use format: systolic/diastolic"),
        ]
        for type_, value, message in cases:
            with self.subTest(type=type_, value=value):
                with self.assertRaises(ValidationError) as cm:
                    HealthMetricDraft(type=type_, value=value, timestamp=NOW).validate(NOW)
                self.assertEqual(cm.exception.errors["value"], message)

        HealthMetricDraft(type="blood_sugar", value="98.5", timestamp=NOW).validate(NOW)
        HealthMetricDraft(type="blood_pressure", value="120/80", timestamp=NOW).validate(NOW)

    def test_metric_timestamp_range(self):
        for ts in (datetime(1999, 12, 31), NOW + timedelta(days=2)):
            with self.assertRaises(ValidationError) as cm:
                HealthMetricDraft(value="100", timestamp=ts).validate(NOW)
            self.assertIn("timestamp", cm.exception.errors)

    def test_metric_form_fields(self):
        d = HealthMetricDraft(type="blood_pressure", value="130/85", timestamp=datetime(2030, 3, 14, 7, 5))
        self.assertEqual(d.form_fields(NOW), {
            "type": "blood_pressure",
            "value": "130/85",
            "timestamp": "2030-03-14T07:05:00",
        })
        self.assertEqual(d.value_hint, "120/80")


class TestApi(unittest.TestCase):
    def test_fetch_medications(self):
        backend = FakeBackend({"medications.php": (200, [med_json(1), med_json(2, name="Lisinopril")])})
        meds = _run(make_api(backend).fetch_medications())
        self.assertEqual([m.name for m in meds], ["Metformin", "Lisinopril"])
        self.assertEqual(backend.requests[0].method, "GET")
        self.assertEqual(str(backend.requests[0].url), f"{BASE}/medications.php")

    def test_only_200_is_success(self):
        backend = FakeBackend({"health_metrics.php": (201, [])})
        with self.assertRaises(ApiStatusError) as cm:
            _run(make_api(backend).fetch_health_metrics())
        self.assertEqual(cm.exception.status_code, 201)

    def test_non_list_payload(self):
        backend = FakeBackend({"medications.php": (200, {"error": "db down"})})
        with self.assertRaises(InvalidPayload):
            _run(make_api(backend).fetch_medications())
        backend = FakeBackend({"medications.php": (200, "<html>oops</html>")})
        with self.assertRaises(InvalidPayload):
            _run(make_api(backend).fetch_medications())

    def test_add_medication_posts_form(self):
        backend = FakeBackend()
        draft = MedicationDraft(name="Aspirin", dosage="81mg", hour=21, minute=0)
        _run(make_api(backend).add_medication(draft))
        req = backend.requests[0]
        self.assertEqual(req.method, "POST")
        self.assertEqual(backend.paths(), ["add_medication.php"])
        self.assertTrue(req.headers["content-type"].startswith("application/x-www-form-urlencoded"))
        form = backend.form()
        self.assertEqual(form["time"], "9:00 PM")
        self.assertEqual(json.loads(form["custom_days"]), [False] * 7)
        self.assertNotIn("next_due_time", form)

    def test_add_metric_posts_form(self):
        backend = FakeBackend()
        draft = HealthMetricDraft(type="blood_sugar", value="101", timestamp=datetime(2030, 3, 14, 7, 0))
        _run(make_api(backend).add_health_metric(draft))
        self.assertEqual(backend.paths(), ["add_health_metric.php"])
        self.assertEqual(backend.form(), {
            "type": "blood_sugar", "value": "101", "timestamp": "2030-03-14T07:00:00",
        })

    def test_invalid_draft_is_not_sent(self):
        backend = FakeBackend()
        with self.assertRaises(ValidationError):
            _run(make_api(backend).add_health_metric(HealthMetricDraft(value="x/y", type="nope")))
        self.assertEqual(backend.requests, [])

    def test_toggle_sends_negated_flag(self):
        backend = FakeBackend()
        api = make_api(backend)
        _run(api.toggle_medication(med(5, NOW, completed=True)))
        _run(api.toggle_medication(med(6, NOW, completed=False)))
        self.assertEqual(backend.form(0), {"medication_id": "5", "completed": "false"})
        self.assertEqual(backend.form(1), {"medication_id": "6", "completed": "true"})

    def test_shared_client_context(self):
        backend = FakeBackend({"medications.php": (200, [med_json(1)])})

        async def go():
            async with make_api(backend) as api:
                a = await api.fetch_medications()
                b = await api.fetch_health_metrics()
                return a, b

        meds, metrics = _run(go())
        self.assertEqual(len(meds), 1)
        self.assertEqual(metrics, [])
        self.assertEqual(backend.paths(), ["medications.php", "health_metrics.php"])


class TestStore(unittest.TestCase):
    def make_store(self, backend, reminders=None):
        errors = []
        store = HealthStore(make_api(backend), reminders, on_error=errors.append, clock=lambda: NOW)
        return store, errors

    def test_refresh_sorts_and_schedules(self):
        backend = FakeBackend({
            "medications.php": (200, [
                med_json(1, due="2030-03-14 18:00:00"),
                med_json(2, due="2030-03-14 09:00:00", overdue=1),
                med_json(3, due="2030-03-14 13:00:00", completed=1),
            ]),
            "health_metrics.php": (200, [
                metric_json(10, ts="2030-03-13 08:00:00"),
                metric_json(11, ts="2030-03-14 08:00:00"),
            ]),
        })
        reminders = ReminderScheduler(use_android=False)
        store, errors = self.make_store(backend, reminders)
        _run(store.refresh())

        self.assertEqual([m.id for m in store.medications], [2, 3, 1])
        self.assertEqual([m.id for m in store.health_metrics], [11, 10])
        self.assertEqual([r.request_code for r in reminders.scheduled], [1])
        self.assertFalse(store.is_loading)
        self.assertEqual(errors, [])

    def test_loading_flag_while_fetching(self):
        seen = []
        store = None

        def watch(request):
            seen.append(store.is_loading)
            return httpx.Response(200, json=[])

        backend = FakeBackend({"medications.php": watch, "health_metrics.php": watch})
        store, _ = self.make_store(backend)
        _run(store.refresh())
        self.assertEqual(seen, [True, True])
        self.assertFalse(store.is_loading)

    def test_medication_status_error_keeps_list(self):
        backend = FakeBackend({"medications.php": (200, [med_json(1)])})
        store, errors = self.make_store(backend)
        _run(store.refresh())
        backend.routes["medications.php"] = (500, "boom")
        backend.routes["health_metrics.php"] = (200, [metric_json(1)])
        _run(store.refresh())

        self.assertEqual(errors, [FETCH_MEDICATIONS_FAILED])
        self.assertEqual([m.id for m in store.medications], [1])
        self.assertEqual(len(store.health_metrics), 1)

    def test_medication_connection_error(self):
        backend = FakeBackend({"medications.php": httpx.ConnectError("unreachable")})
        store, errors = self.make_store(backend)
        _run(store.refresh())
        self.assertEqual(errors, [FETCH_MEDICATIONS_ERROR])
        self.assertFalse(store.is_loading)

    def test_metric_failures_are_silent(self):
        backend = FakeBackend({"health_metrics.php": (404, "nope")})
        store, errors = self.make_store(backend)
        with self.assertLogs("healthtracker.store", level="WARNING"):
            _run(store.refresh())
        self.assertEqual(errors, [])

    def test_add_medication_refetches(self):
        backend = FakeBackend()
        store, errors = self.make_store(backend)
        ok = _run(store.add_medication(MedicationDraft(name="A", dosage="1 pill")))
        self.assertTrue(ok)
        self.assertEqual(backend.paths()[0], "add_medication.php")
        self.assertCountEqual(backend.paths()[1:], ["medications.php", "health_metrics.php"])
        self.assertEqual(errors, [])

    def test_add_failures(self):
        backend = FakeBackend({"add_medication.php": (500, ""), "add_health_metric.php": (400, "")})
        store, errors = self.make_store(backend)
        self.assertFalse(_run(store.add_medication(MedicationDraft(name="A", dosage="1"))))
        self.assertFalse(_run(store.add_health_metric(HealthMetricDraft(value="99", timestamp=datetime.now()))))
        self.assertEqual(errors, ["Failed to add medication", "Failed to add health metric"])
        self.assertEqual(backend.paths(), ["add_medication.php", "add_health_metric.php"])

    def test_toggle_exception_message(self):
        backend = FakeBackend({"toggle_medication.php": httpx.ReadTimeout("slow")})
        store, errors = self.make_store(backend)
        self.assertFalse(_run(store.toggle_completion(med(3, NOW))))
        self.assertEqual(errors, ["Error updating medication status: slow"])

    def test_toggle_status_failure(self):
        backend = FakeBackend({"toggle_medication.php": (503, "")})
        store, errors = self.make_store(backend)
        _run(store.toggle_completion(med(3, NOW)))
        self.assertEqual(errors, ["Failed to update medication status"])

    def test_refresh_uses_one_client(self):
        backend = FakeBackend({"medications.php": (200, [med_json(1)])})
        store, _ = self.make_store(backend)
        with mock.patch.object(store.api, "_new_client", wraps=store.api._new_client) as new_client:
            _run(store.refresh())
        self.assertEqual(new_client.call_count, 1)
        self.assertCountEqual(backend.paths(), ["medications.php", "health_metrics.php"])

    def test_post_and_refetch_share_one_client(self):
        backend = FakeBackend()
        store, _ = self.make_store(backend)
        with mock.patch.object(store.api, "_new_client", wraps=store.api._new_client) as new_client:
            self.assertTrue(_run(store.add_medication(MedicationDraft(name="A", dosage="1 pill"))))
        self.assertEqual(new_client.call_count, 1)
        self.assertEqual(len(backend.paths()), 3)
        self.assertIsNone(store.api._client)


class TestReminders(unittest.TestCase):
    def test_build_reminders_filters(self):
        meds = [
            med(1, NOW + timedelta(hours=1), name="Aspirin"),
            med(2, NOW - timedelta(hours=1)),
            med(3, NOW + timedelta(hours=2), completed=True),
            med(4, NOW),
        ]
        reminders = build_reminders(meds, NOW)
        self.assertEqual(len(reminders), 1)
        r = reminders[0]
        self.assertEqual(r.request_code, 1)
        self.assertEqual(r.title, "Medication Reminder")
        self.assertEqual(r.body, "Time to take Aspirin")
        self.assertEqual(r.fire_at, NOW + timedelta(hours=1))

    def test_daily_occurrences(self):
        r = Reminder(1, "t", "b", NOW)
        self.assertIsNone(r.latest_occurrence(NOW - timedelta(minutes=1)))
        self.assertEqual(r.latest_occurrence(NOW + timedelta(days=2, hours=3)), NOW + timedelta(days=2))
        self.assertEqual(r.next_occurrence(NOW + timedelta(hours=1)), NOW + timedelta(days=1))
        once = Reminder(1, "t", "b", NOW, repeat_daily=False)
        self.assertEqual(once.latest_occurrence(NOW + timedelta(days=3)), NOW)
        self.assertIsNone(once.next_occurrence(NOW + timedelta(days=3)))

    def test_resync_replaces_previous_set(self):
        s = ReminderScheduler(use_android=False)
        s.resync([med(1, NOW + timedelta(hours=1)), med(2, NOW + timedelta(hours=2))], NOW)
        s.resync([med(3, NOW + timedelta(hours=3))], NOW)
        self.assertEqual([r.request_code for r in s.scheduled], [3])
        s.cancel_all()
        self.assertEqual(s.scheduled, [])

    def test_collect_due_once_per_occurrence(self):
        s = ReminderScheduler(use_android=False)
        due_at = NOW + timedelta(minutes=10)
        s.resync([med(1, due_at)], NOW)

        self.assertEqual(s.collect_due(NOW), [])
        self.assertEqual(len(s.collect_due(due_at + timedelta(seconds=5))), 1)
        self.assertEqual(s.collect_due(due_at + timedelta(seconds=35)), [])
        self.assertEqual(s.collect_due(due_at + timedelta(minutes=30)), [])
        self.assertEqual(len(s.collect_due(due_at + timedelta(days=1, seconds=1))), 1)

    def test_android_alarms(self):
        with mock.patch("healthtracker.reminders.AndroidAlarm") as alarm:
            s = ReminderScheduler(use_android=True)
            s.resync([med(41, NOW + timedelta(hours=1), name="Insulin")], NOW)
            alarm.schedule.assert_called_once_with(
                NOW + timedelta(hours=1), "Medication Reminder", "Time to take Insulin", 41, True)
            s.resync([], NOW)
            alarm.cancel.assert_called_once_with(41)

    def test_cancel_all_covers_codes_from_earlier_run(self):
        with tempfile.TemporaryDirectory() as td:
            state = Path(td) / "scheduled_reminders.json"
            with mock.patch("healthtracker.reminders.AndroidAlarm") as alarm:
                first = ReminderScheduler(use_android=True, state_path=state)
                first.resync([med(7, NOW + timedelta(hours=1))], NOW)
                self.assertEqual(json.loads(state.read_text(encoding="utf-8")), {"request_codes": [7]})

                # fresh process: nothing in memory, dose 7 completed meanwhile
                second = ReminderScheduler(use_android=True, state_path=state)
                second.resync([med(7, NOW + timedelta(hours=1), completed=True)], NOW)
                alarm.cancel.assert_called_once_with(7)
                self.assertEqual(second.scheduled, [])
            self.assertEqual(json.loads(state.read_text(encoding="utf-8")), {"request_codes": []})

    def test_unreadable_state_file_is_ignored(self):
        with tempfile.TemporaryDirectory() as td:
            state = Path(td) / "scheduled_reminders.json"
            state.write_text("not json", encoding="utf-8")
            s = ReminderScheduler(use_android=False, state_path=state)
            with self.assertLogs("healthtracker.reminders", level="WARNING"):
                s.resync([med(3, NOW + timedelta(hours=1))], NOW)
            self.assertEqual(json.loads(state.read_text(encoding="utf-8")), {"request_codes": [3]})

    def test_resync_keeps_dose_that_just_came_due(self):
        due_at = NOW + timedelta(minutes=5)
        s = ReminderScheduler(use_android=False)
        s.resync([med(1, due_at, name="Aspirin")], NOW)
        s.resync([med(1, due_at, name="Aspirin")], due_at + timedelta(seconds=10))

        due = s.collect_due(due_at + timedelta(seconds=20))
        self.assertEqual([r.body for r in due], ["Time to take Aspirin"])
        self.assertEqual(s.collect_due(due_at + timedelta(seconds=30)), [])

    def test_resync_drops_due_dose_once_completed(self):
        due_at = NOW + timedelta(minutes=5)
        s = ReminderScheduler(use_android=False)
        s.resync([med(1, due_at)], NOW)
        s.resync([med(1, due_at, completed=True)], due_at + timedelta(seconds=10))
        self.assertEqual(s.collect_due(due_at + timedelta(seconds=20)), [])

    def test_carried_dose_expires_after_grace(self):
        due_at = NOW + timedelta(minutes=5)
        s = ReminderScheduler(use_android=False)
        s.resync([med(1, due_at)], NOW)
        s.resync([med(1, due_at)], due_at + timedelta(seconds=10))
        self.assertEqual(s.collect_due(due_at + timedelta(minutes=3)), [])

    def test_background_scheduler_check(self):
        s = ReminderScheduler(use_android=False)
        s.resync([med(1, NOW + timedelta(minutes=1), name="Aspirin")], NOW)
        fired = []
        bg = BackgroundScheduler(s, fired.append, interval_s=60)
        bg.check(NOW + timedelta(minutes=1, seconds=10))
        self.assertEqual([r.body for r in fired], ["Time to take Aspirin"])

    def test_background_scheduler_start_stop(self):
        bg = BackgroundScheduler(ReminderScheduler(use_android=False), lambda r: None, interval_s=60)
        bg.start()
        self.assertTrue(bg.running)
        bg.stop()
        self.assertFalse(bg.running)


class TestService(unittest.TestCase):
    def test_tick_fetches_and_notifies(self):
        backend = FakeBackend({"medications.php": (200, [med_json(9, name="Warfarin", due="2030-03-14 12:05:00")])})
        sent = []
        svc = ReminderService(make_api(backend), notify=lambda *a: sent.append(a))

        self.assertEqual(svc.tick(NOW), 0)
        self.assertEqual(svc.tick(NOW + timedelta(minutes=5, seconds=3)), 1)
        self.assertEqual(svc.tick(NOW + timedelta(minutes=5, seconds=20)), 0)
        self.assertEqual(sent, [("Medication Reminder", "Time to take Warfarin", 9)])
        # second fetch confirms the dose is still open before notifying
        self.assertEqual(backend.paths(), ["medications.php", "medications.php"])

    def test_dose_due_at_refetch_time_still_fires(self):
        backend = FakeBackend({"medications.php": (200, [med_json(9, name="Warfarin", due="2030-03-14 12:05:00")])})
        sent = []
        svc = ReminderService(make_api(backend), notify=lambda *a: sent.append(a),
                              refetch_every=timedelta(minutes=5))

        svc.tick(NOW)
        self.assertEqual(svc.tick(NOW + timedelta(minutes=5, seconds=3)), 1)
        self.assertEqual([s[2] for s in sent], [9])

    def test_completed_since_last_fetch_is_not_notified(self):
        backend = FakeBackend({"medications.php": (200, [med_json(9, due="2030-03-14 12:05:00")])})
        sent = []
        svc = ReminderService(make_api(backend), notify=lambda *a: sent.append(a))

        svc.tick(NOW)
        backend.routes["medications.php"] = (200, [med_json(9, due="2030-03-15 12:05:00", completed=1)])
        self.assertEqual(svc.tick(NOW + timedelta(minutes=5, seconds=3)), 0)
        self.assertEqual(sent, [])
        self.assertEqual(len(backend.paths()), 2)

    def test_failed_confirmation_still_notifies(self):
        backend = FakeBackend({"medications.php": (200, [med_json(9, due="2030-03-14 12:05:00")])})
        sent = []
        svc = ReminderService(make_api(backend), notify=lambda *a: sent.append(a))

        svc.tick(NOW)
        backend.routes["medications.php"] = httpx.ConnectError("offline")
        self.assertEqual(svc.tick(NOW + timedelta(minutes=5, seconds=3)), 1)

    def test_refetch_interval_and_failures(self):
        backend = FakeBackend({"medications.php": (500, "")})
        svc = ReminderService(make_api(backend), notify=lambda *a: None)
        self.assertEqual(svc.tick(NOW), 0)
        svc.tick(NOW + timedelta(minutes=1))
        svc.tick(NOW + timedelta(minutes=16))
        self.assertEqual(backend.paths(), ["medications.php", "medications.php"])


class TestConfig(unittest.TestCase):
    def test_defaults(self):
        s = Settings.from_env({})
        self.assertEqual(s.api_base, DEFAULT_API_BASE)
        self.assertEqual(s.timeout_s, 15.0)
        self.assertEqual(s.log_lines, 800)
        self.assertEqual(s.log_path.name, "app.log")

    def test_overrides(self):
        with tempfile.TemporaryDirectory() as td:
            s = Settings.from_env({
                "HEALTHTRACKER_API_BASE": "http://localhost:8080/med/",
                "HEALTHTRACKER_TIMEOUT": "2.5",
                "HEALTHTRACKER_CHECK_INTERVAL": "10",
                "HEALTHTRACKER_LOG_LINES": "50",
                "HEALTHTRACKER_DATA_DIR": td,
            })
            self.assertEqual(s.api_base, "http://localhost:8080/med")
            self.assertEqual(s.timeout_s, 2.5)
            self.assertEqual(s.check_interval_s, 10.0)
            self.assertEqual(s.log_lines, 50)
            self.assertEqual(s.log_path, Path(td) / "app.log")

    def test_android_private_dir(self):
        with tempfile.TemporaryDirectory() as td:
            s = Settings.from_env({"ANDROID_PRIVATE": td})
            self.assertEqual(s.data_dir, Path(td) / "healthtracker_data")

    def test_invalid_numbers(self):
        for name, raw in (("HEALTHTRACKER_TIMEOUT", "soon"), ("HEALTHTRACKER_LOG_LINES", "0")):
            with self.assertRaises(ValueError) as cm:
                Settings.from_env({name: raw})
            self.assertIn(name, str(cm.exception))


class TestLogging(unittest.TestCase):
    def test_ring_is_bounded(self):
        ring = RingLog(max_lines=3)
        for i in range(5):
            ring.add(f"line {i}\n")
        ring.add("")
        self.assertEqual(ring.lines(), ["line 2", "line 3", "line 4"])

    def test_handler_writes_file_and_ring(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "logs" / "app.log"
            ring = RingLog()
            log = logging.getLogger("healthtracker.tests.handler")
            log.propagate = False
            handler = FileAndRingHandler(ring, path)
            log.addHandler(handler)
            try:
                log.warning("dose missed")
            finally:
                log.removeHandler(handler)
            self.assertIn("WARNING dose missed", ring.text())
            self.assertIn("dose missed", path.read_text(encoding="utf-8"))
            clear_log(ring, path)
            self.assertEqual(ring.text(), "")
            self.assertFalse(path.exists())

    def test_setup_is_idempotent(self):
        self.assertIs(setup_logging(None), setup_logging(None))


class TestAndroidSources(unittest.TestCase):
    def test_not_android_here(self):
        self.assertFalse(android.android_ready())
        self.assertFalse(android.AndroidAlarm.schedule(NOW, "t", "b", 1))
        self.assertEqual(android.request_notification_permission(), [])
        self.assertFalse(android.can_schedule_exact_alarms())

    def test_alarm_intent_carries_trigger_time(self):
        jni = mock.MagicMock()
        with mock.patch.object(android, "android_ready", return_value=True), \
                mock.patch.object(android, "android_sdk_int", return_value=34), \
                mock.patch.object(android, "autoclass", jni), \
                mock.patch.object(android, "cast", lambda cls, obj: obj), \
                mock.patch.object(android, "_app_context") as app_ctx:
            self.assertTrue(android.AndroidAlarm.schedule(NOW, "Medication Reminder", "Time to take A", 9))

        intent = jni.return_value.return_value
        intent.putExtra.assert_any_call("trigger_ms", str(int(NOW.timestamp() * 1000)))
        intent.putExtra.assert_any_call("request_code", 9)
        am = app_ctx.return_value.getSystemService.return_value
        am.setExactAndAllowWhileIdle.assert_called_once()

    def test_permission_request_only_for_missing(self):
        jni = mock.MagicMock()
        with mock.patch.object(android, "android_ready", return_value=True), \
                mock.patch.object(android, "autoclass", jni), \
                mock.patch.object(android, "_granted", return_value=False):
            with mock.patch.object(android, "android_sdk_int", return_value=30):
                self.assertEqual(android.request_notification_permission(), [])
            with mock.patch.object(android, "android_sdk_int", return_value=34):
                self.assertEqual(len(android.request_notification_permission()), 1)
        jni.return_value.requestPermissions.assert_called_once()

    def test_write_sources(self):
        with tempfile.TemporaryDirectory() as td:
            root = android.write_android_sources(Path(td))
            java = root / "org" / "example" / "healthtracker"
            receiver = (java / "AlarmReceiver.java").read_text(encoding="utf-8")
            self.assertIn("package org.example.healthtracker;", receiver)
            self.assertIn('"medication_channel"', receiver)
            self.assertIn("86400000L", receiver)
            self.assertNotIn("{{", receiver)
            # re-armed from the original trigger time, not from delivery time
            self.assertIn('getStringExtra("trigger_ms")', receiver)
            self.assertIn("Long.parseLong", receiver)
            self.assertNotIn("System.currentTimeMillis() + DAY_MS", receiver)
            boot = (java / "BootReceiver.java").read_text(encoding="utf-8")
            self.assertIn('ServiceReminders.start(context, "boot")', boot)
            manifest = (root / "extra_manifest.xml").read_text(encoding="utf-8")
            self.assertIn("org.example.healthtracker.AlarmReceiver", manifest)
            self.assertIn("android.permission.INTERNET", manifest)


if __name__ == "__main__":
    unittest.main(verbosity=2)
