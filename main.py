# main.py
# Health Tracker (KivyMD): medications + health metrics from the tracker backend,
# with local reminders for upcoming doses.
#
# - Run normally:            python main.py
# - Generate Android Java + manifest injection files for Buildozer:
#                            python main.py --gen-android
#
# Configuration comes from HEALTHTRACKER_* environment variables
# (see healthtracker/config.py).

import sys
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time as dtime, timedelta
from pathlib import Path
from typing import Optional

from kivy.lang import Builder
from kivy.clock import Clock, mainthread
from kivy.core.window import Window
from kivy.uix.scrollview import ScrollView
from kivy.uix.widget import Widget
from kivy.graphics import Color, Rectangle
from kivy.properties import ListProperty
from kivy.utils import platform as _kivy_platform

from kivymd.app import MDApp
from kivymd.uix.dialog import MDDialog
from kivymd.uix.button import MDFlatButton, MDRaisedButton
from kivymd.uix.list import (
    ILeftBodyTouch,
    IconLeftWidget,
    IconRightWidget,
    ThreeLineAvatarIconListItem,
    TwoLineIconListItem,
)
from kivymd.uix.selectioncontrol import MDCheckbox
from kivymd.uix.textfield import MDTextField
from kivymd.uix.boxlayout import MDBoxLayout
from kivymd.uix.gridlayout import MDGridLayout
from kivymd.uix.label import MDLabel
from kivymd.uix.pickers import MDDatePicker, MDTimePicker
from kivymd.uix.snackbar import MDSnackbar

from healthtracker import android
from healthtracker.api import HealthApi
from healthtracker.applog import clear_log, setup_logging
from healthtracker.config import Settings
from healthtracker.models import (
    BLOOD_PRESSURE,
    BLOOD_SUGAR,
    EARLIEST_METRIC_DATE,
    WEEKDAYS,
    HealthMetricDraft,
    MedicationDraft,
    ValidationError,
    format_date_time,
)
from healthtracker.reminders import BackgroundScheduler, ReminderScheduler
from healthtracker.store import HealthStore

if _kivy_platform != "android" and hasattr(Window, "size"):
    Window.size = (420, 760)

SETTINGS = Settings.from_env()
RING = setup_logging(SETTINGS.log_path, SETTINGS.log_lines)
logger = logging.getLogger("healthtracker")

ERROR_RED = (0.78, 0.16, 0.16, 1)
OVERDUE_BG = (0.35, 0.08, 0.08, 1)

REPEAT_CHOICES = (
    ("daily", "Daily"),
    ("weekly", "Weekly"),
    ("custom", "Custom"),
    ("never", "Never (One-time)"),
)


# -------------------------
# Widgets
# -------------------------
class BackgroundGradient(Widget):
    top_color = ListProperty([0.05, 0.15, 0.25, 1])
    bottom_color = ListProperty([0.02, 0.06, 0.12, 1])

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.bind(pos=self._redraw, size=self._redraw)

    def _redraw(self, *_):
        self.canvas.before.clear()
        x, y = self.pos
        w, h = self.size
        with self.canvas.before:
            bands = 48
            for i in range(bands):
                t = i / (bands - 1)
                r = self.top_color[0] + (self.bottom_color[0] - self.top_color[0]) * t
                g = self.top_color[1] + (self.bottom_color[1] - self.top_color[1]) * t
                b = self.top_color[2] + (self.bottom_color[2] - self.top_color[2]) * t
                Color(r, g, b, 1)
                Rectangle(pos=(x, y + h * i / bands), size=(w, h / bands + 1))


class CompletionCheckbox(ILeftBodyTouch, MDCheckbox):
    pass


# -------------------------
# Kivy KV (two tabs: medications / health metrics)
# -------------------------
KV = """
<BackgroundGradient>:
    size_hint: 1, 1

MDScreen:
    MDBoxLayout:
        orientation: "vertical"

        MDTopAppBar:
            title: "Health Tracker"
            elevation: 10
            right_action_items: [["refresh", lambda x: app.refresh_data()], ["text-box-outline", lambda x: app.show_log_dialog()]]

        FloatLayout:
            MDBottomNavigation:
                id: tabs
                panel_color: 0.05, 0.08, 0.12, 1
                pos_hint: {"x": 0, "y": 0}

                MDBottomNavigationItem:
                    name: "medications"
                    text: "Medications"
                    icon: "pill"
                    on_tab_press: app.switch_tab("medications")

                    BackgroundGradient:
                    MDScrollViewRefreshLayout:
                        id: medications_refresh
                        refresh_callback: app.pull_refresh
                        root_layout: root
                        MDList:
                            id: medications_list

                    MDLabel:
                        id: medications_empty
                        text: "No medications added yet"
                        halign: "center"
                        theme_text_color: "Secondary"
                        opacity: 0

                MDBottomNavigationItem:
                    name: "health_metrics"
                    text: "Health Metrics"
                    icon: "heart"
                    on_tab_press: app.switch_tab("health_metrics")

                    BackgroundGradient:
                    MDScrollViewRefreshLayout:
                        id: metrics_refresh
                        refresh_callback: app.pull_refresh
                        root_layout: root
                        MDList:
                            id: metrics_list

                    MDLabel:
                        id: metrics_empty
                        text: "No health metrics recorded yet"
                        halign: "center"
                        theme_text_color: "Secondary"
                        opacity: 0

            MDSpinner:
                id: spinner
                size_hint: None, None
                size: "46dp", "46dp"
                pos_hint: {"center_x": .5, "center_y": .5}
                active: False

            MDFloatingActionButton:
                id: fab
                icon: "plus-circle"
                pos_hint: {"right": .95, "y": .12}
                on_release: app.on_fab()
"""


# -------------------------
# App
# -------------------------
class HealthTrackerApp(MDApp):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.settings = SETTINGS
        self.store: Optional[HealthStore] = None
        self.reminders: Optional[ReminderScheduler] = None
        self.scheduler: Optional[BackgroundScheduler] = None
        self.current_tab = "medications"
        self._worker = ThreadPoolExecutor(max_workers=1)
        self._dialog: Optional[MDDialog] = None

    def build(self):
        self.title = "Health Tracker"
        self.theme_cls.theme_style = "Dark"
        self.theme_cls.primary_palette = "Blue"
        return Builder.load_string(KV)

    def on_start(self):
        logger.info(f"app start platform={_kivy_platform} api={self.settings.api_base}")

        android.request_notification_permission()

        api = HealthApi(self.settings.api_base, timeout_s=self.settings.timeout_s)
        self.reminders = ReminderScheduler(state_path=self.settings.reminder_state_path)
        self.store = HealthStore(api, self.reminders, on_error=self.show_error)

        if self.reminders.use_android:
            android.start_reminder_service()
        else:
            self.scheduler = BackgroundScheduler(self.reminders, self.on_reminder,
                                                 interval_s=self.settings.check_interval_s)
            self.scheduler.start()

        Clock.schedule_once(lambda *_: self.refresh_data(), 0.4)

    def on_resume(self):
        self.refresh_data()
        return True

    def on_pause(self):
        return True

    def on_stop(self):
        if self.scheduler:
            self.scheduler.stop()
        self._worker.shutdown(wait=False)

    # -------------------------
    # Background work
    # -------------------------
    def _run(self, make_coro):
        """Run a store coroutine off the UI thread; rerender on the UI thread after."""
        self._set_loading(True)

        def job():
            return asyncio.run(make_coro())

        def finished(fut):
            try:
                fut.result()
            except Exception:
                logger.exception("background task failed")
            self._after_task()

        self._worker.submit(job).add_done_callback(finished)

    @mainthread
    def _after_task(self):
        self._set_loading(False)
        self.render()
        for rl in ("medications_refresh", "metrics_refresh"):
            self.root.ids[rl].refresh_done()

    def _set_loading(self, loading: bool):
        self.root.ids.spinner.active = loading

    # -------------------------
    # Refresh / render
    # -------------------------
    def refresh_data(self):
        if not self.store:
            return
        self._run(self.store.refresh)

    def pull_refresh(self, *_):
        self.refresh_data()

    def render(self):
        try:
            self.render_medications()
            self.render_metrics()
        except Exception:
            logger.exception("render failed")

    def render_medications(self):
        ml = self.root.ids.medications_list
        ml.clear_widgets()
        meds = self.store.medications
        self.root.ids.medications_empty.opacity = 0 if meds else 1

        for m in meds:
            name = f"[s]{m.name}[/s]" if m.is_completed else m.name
            lines = m.subtitle_lines()
            tertiary = lines[1]
            if m.is_overdue:
                tertiary += "  [color=ff4040][b]OVERDUE[/b][/color]"
            item = ThreeLineAvatarIconListItem(
                text=f"[b]{name}[/b]",
                secondary_text=lines[0],
                tertiary_text=tertiary,
            )
            if m.is_overdue:
                item.bg_color = OVERDUE_BG
            cb = CompletionCheckbox(active=m.is_completed)
            cb.bind(on_release=lambda _, m=m: self.toggle_medication(m))
            item.add_widget(cb)
            alarm = IconRightWidget(icon="alarm", theme_icon_color="Custom",
                                    icon_color=ERROR_RED if m.is_overdue else (0.6, 0.6, 0.6, 1))
            item.add_widget(alarm)
            ml.add_widget(item)

    def render_metrics(self):
        hl = self.root.ids.metrics_list
        hl.clear_widgets()
        metrics = self.store.health_metrics
        self.root.ids.metrics_empty.opacity = 0 if metrics else 1

        for h in metrics:
            item = TwoLineIconListItem(text=f"[b]{h.title}[/b]", secondary_text=h.subtitle)
            item.add_widget(IconLeftWidget(
                icon="water" if h.is_blood_sugar else "heart",
                theme_icon_color="Custom",
                icon_color=(0.33, 0.62, 0.95, 1) if h.is_blood_sugar else ERROR_RED,
            ))
            hl.add_widget(item)

    # -------------------------
    # Navigation
    # -------------------------
    def switch_tab(self, name: str):
        self.current_tab = name
        self.root.ids.fab.icon = "plus-circle" if name == "medications" else "chart-box-plus-outline"

    def on_fab(self):
        if self.current_tab == "medications":
            self.show_add_medication_dialog()
        else:
            self.show_add_metric_dialog()

    # -------------------------
    # Feedback
    # -------------------------
    @mainthread
    def show_error(self, message: str):
        MDSnackbar(
            MDLabel(text=message, theme_text_color="Custom", text_color=(1, 1, 1, 1)),
            md_bg_color=ERROR_RED,
            pos_hint={"center_x": .5},
            size_hint_x=.94,
        ).open()

    @mainthread
    def on_reminder(self, reminder):
        MDSnackbar(
            MDLabel(text=f"{reminder.title}: {reminder.body}"),
            pos_hint={"center_x": .5},
            size_hint_x=.94,
        ).open()

    def show_log_dialog(self):
        label = MDLabel(text=RING.text() or "(empty)", size_hint_y=None, font_style="Caption")
        label.bind(texture_size=lambda inst, ts: setattr(inst, "height", ts[1]))
        content = MDBoxLayout(orientation="vertical", size_hint_y=None, height="360dp")
        sv = ScrollView()
        sv.add_widget(label)
        content.add_widget(sv)

        def clear(*_):
            clear_log(RING, self.settings.log_path)
            label.text = ""
            logger.info("log cleared")

        dialog = MDDialog(
            title="Debug log",
            type="custom",
            content_cls=content,
            buttons=[
                MDFlatButton(text="Clear", on_release=clear),
                MDRaisedButton(text="Close", on_release=lambda *_: dialog.dismiss()),
            ],
        )
        dialog.open()

    # -------------------------
    # Completion toggle
    # -------------------------
    def toggle_medication(self, medication):
        self._run(lambda: self.store.toggle_completion(medication))

    # -------------------------
    # Add medication dialog
    # -------------------------
    def show_add_medication_dialog(self):
        now = datetime.now()
        draft = MedicationDraft(hour=now.hour, minute=now.minute)

        content = MDBoxLayout(orientation="vertical", spacing="10dp", padding="10dp", size_hint_y=None)
        content.bind(minimum_height=content.setter("height"))

        name = MDTextField(hint_text="Medication Name", helper_text_mode="on_error")
        dosage = MDTextField(hint_text="Dosage", helper_text_mode="on_error")
        time_btn = MDFlatButton(text=f"Time: {draft.time_text}")

        def pick_time(*_):
            picker = MDTimePicker()
            picker.set_time(dtime(draft.hour, draft.minute))

            def on_save(_, time_obj):
                draft.hour, draft.minute = time_obj.hour, time_obj.minute
                time_btn.text = f"Time: {draft.time_text}"
            picker.bind(on_save=on_save)
            picker.open()

        time_btn.bind(on_release=pick_time)

        days_grid = MDGridLayout(cols=4, spacing="4dp", size_hint_y=None, height="96dp")
        for i, day in enumerate(WEEKDAYS):
            cell = MDBoxLayout(orientation="horizontal", size_hint_y=None, height="44dp")
            chk = MDCheckbox(size_hint=(None, None), size=("36dp", "36dp"))
            chk.bind(active=lambda _, value, i=i: draft.custom_days.__setitem__(i, bool(value)))
            cell.add_widget(chk)
            cell.add_widget(MDLabel(text=day))
            days_grid.add_widget(cell)

        repeat_box = MDBoxLayout(orientation="vertical", size_hint_y=None)
        repeat_box.bind(minimum_height=repeat_box.setter("height"))

        def set_repeat(value: str, active: bool):
            if not active:
                return
            draft.repeat_type = value
            if value == "custom" and days_grid.parent is None:
                repeat_box.add_widget(days_grid, index=1)
            elif value != "custom" and days_grid.parent is not None:
                repeat_box.remove_widget(days_grid)

        for value, label in REPEAT_CHOICES:
            row = MDBoxLayout(orientation="horizontal", size_hint_y=None, height="40dp")
            radio = MDCheckbox(group="repeat", active=value == draft.repeat_type,
                               size_hint=(None, None), size=("36dp", "36dp"))
            radio.bind(active=lambda _, active, value=value: set_repeat(value, active))
            row.add_widget(radio)
            row.add_widget(MDLabel(text=label))
            repeat_box.add_widget(row)

        for w in (name, dosage, time_btn, MDLabel(text="Repeat", bold=True, size_hint_y=None, height="24dp"),
                  repeat_box):
            content.add_widget(w)

        fields = {"name": name, "dosage": dosage}

        def save(*_):
            draft.name = name.text.strip()
            draft.dosage = dosage.text.strip()
            try:
                draft.validate()
            except ValidationError as e:
                for key, widget in fields.items():
                    widget.error = key in e.errors
                    widget.helper_text = e.errors.get(key, "")
                return
            self._dialog.dismiss()
            self._run(lambda: self.store.add_medication(draft))

        self._dialog = MDDialog(
            title="Add Medication",
            type="custom",
            content_cls=content,
            buttons=[
                MDFlatButton(text="Cancel", on_release=lambda *_: self._dialog.dismiss()),
                MDRaisedButton(text="Add", on_release=save),
            ]
        )
        self._dialog.open()

    # -------------------------
    # Add health metric dialog
    # -------------------------
    def show_add_metric_dialog(self):
        draft = HealthMetricDraft()

        content = MDBoxLayout(orientation="vertical", spacing="10dp", padding="10dp", size_hint_y=None)
        content.bind(minimum_height=content.setter("height"))

        value = MDTextField(hint_text=draft.value_label, helper_text=draft.value_hint,
                            helper_text_mode="persistent")
        when_btn = MDFlatButton(text=format_date_time(draft.timestamp))

        type_row = MDBoxLayout(orientation="horizontal", size_hint_y=None, height="40dp")

        def set_type(metric_type: str, active: bool):
            if not active:
                return
            draft.type = metric_type
            value.hint_text = draft.value_label
            value.helper_text = draft.value_hint
            value.error = False

        for metric_type, label in ((BLOOD_SUGAR, "Blood Sugar"), (BLOOD_PRESSURE, "Blood Pressure")):
            radio = MDCheckbox(group="metric_type", active=metric_type == draft.type,
                               size_hint=(None, None), size=("36dp", "36dp"))
            radio.bind(active=lambda _, active, t=metric_type: set_type(t, active))
            type_row.add_widget(radio)
            type_row.add_widget(MDLabel(text=label))

        def pick_date(*_):
            ts = draft.timestamp
            picker = MDDatePicker(year=ts.year, month=ts.month, day=ts.day,
                                  min_date=EARLIEST_METRIC_DATE.date(),
                                  max_date=(datetime.now() + timedelta(days=1)).date())

            def on_date(_, picked, __):
                tp = MDTimePicker()
                tp.set_time(dtime(ts.hour, ts.minute))

                def on_time(_, picked_time):
                    draft.timestamp = datetime(picked.year, picked.month, picked.day,
                                               picked_time.hour, picked_time.minute)
                    when_btn.text = format_date_time(draft.timestamp)
                tp.bind(on_save=on_time)
                tp.open()
            picker.bind(on_save=on_date)
            picker.open()

        when_btn.bind(on_release=pick_date)

        for w in (type_row, value, MDLabel(text="Date & Time", bold=True, size_hint_y=None, height="24dp"),
                  when_btn):
            content.add_widget(w)

        def save(*_):
            draft.value = value.text.strip()
            try:
                draft.validate()
            except ValidationError as e:
                value.error = "value" in e.errors
                value.helper_text = e.errors.get("value") or e.errors.get("timestamp", draft.value_hint)
                if "timestamp" in e.errors:
                    self.show_error(e.errors["timestamp"])
                return
            self._dialog.dismiss()
            self._run(lambda: self.store.add_health_metric(draft))

        self._dialog = MDDialog(
            title="Add Health Metric",
            type="custom",
            content_cls=content,
            buttons=[
                MDFlatButton(text="Cancel", on_release=lambda *_: self._dialog.dismiss()),
                MDRaisedButton(text="Add", on_release=save),
            ]
        )
        self._dialog.open()


# -------------------------
# Entrypoint
# -------------------------
def main():
    if "--gen-android" in sys.argv:
        src_root = android.write_android_sources(Path.cwd())
        print(f"[gen] Wrote android sources to: {src_root}")
        print("[gen] In buildozer.spec set:")
        print("      android.add_src = android_src")
        print("      android.extra_manifest_xml = android_src/extra_manifest.xml")
        return

    HealthTrackerApp().run()


if __name__ == "__main__":
    main()
