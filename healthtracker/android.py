# healthtracker/android.py
# Android platform bridge (pyjnius): permissions, AlarmManager, notifications,
# and the Java receivers Buildozer compiles into the APK.
#
# Buildozer notes (in buildozer.spec):
#   requirements = python3,kivy,kivymd,httpx,pyjnius
#   android.permissions = INTERNET,POST_NOTIFICATIONS,SCHEDULE_EXACT_ALARM,RECEIVE_BOOT_COMPLETED,WAKE_LOCK,VIBRATE
#   android.add_src = android_src
#   android.extra_manifest_xml = android_src/extra_manifest.xml
#   services = Reminders:service/reminder_service.py
import logging
import os
import time
from datetime import datetime
from pathlib import Path

try:
    from jnius import autoclass, cast
except Exception:
    autoclass = None
    cast = None

logger = logging.getLogger("healthtracker.android")

# -------------------------
# Package identity (for Java)
# -------------------------
PACKAGE_DOMAIN = "org.example"
PACKAGE_NAME = "healthtracker"
JAVA_PACKAGE = f"{PACKAGE_DOMAIN}.{PACKAGE_NAME}"
JAVA_ALARM_RECEIVER = f"{JAVA_PACKAGE}.AlarmReceiver"
JAVA_BOOT_RECEIVER = f"{JAVA_PACKAGE}.BootReceiver"

CHANNEL_ID = "medication_channel"
CHANNEL_NAME = "Medication Reminders"
CHANNEL_DESCRIPTION = "Notifications for medication reminders"

DAY_MS = 24 * 60 * 60 * 1000


def android_ready() -> bool:
    return "ANDROID_ARGUMENT" in os.environ and autoclass is not None


def android_sdk_int() -> int:
    if not android_ready():
        return 0
    try:
        BuildVERSION = autoclass("android.os.Build$VERSION")
        return int(BuildVERSION.SDK_INT)
    except Exception:
        return 0


def _app_context():
    PythonActivity = autoclass("org.kivy.android.PythonActivity")
    activity = PythonActivity.mActivity
    if activity is not None:
        return activity.getApplicationContext()
    PythonService = autoclass("org.kivy.android.PythonService")
    return PythonService.mService.getApplicationContext()


def _granted(context, permission: str) -> bool:
    ContextCompat = autoclass("androidx.core.content.ContextCompat")
    PackageManager = autoclass("android.content.pm.PackageManager")
    return ContextCompat.checkSelfPermission(context, permission) == PackageManager.PERMISSION_GRANTED


def request_permissions(*names: str, min_sdk: int = 0, request_code: int = 7301) -> list:
    """
    Ask for the android.Manifest.permission entries in `names` that are not
    granted yet. Returns the ones that were requested. Does nothing below
    `min_sdk`, where the permissions are install-time.
    """
    if not android_ready() or android_sdk_int() < min_sdk:
        return []
    try:
        activity = autoclass("org.kivy.android.PythonActivity").mActivity
        Manifest = autoclass("android.Manifest")
        wanted = [getattr(Manifest.permission, n) for n in names]
        missing = [p for p in wanted if not _granted(activity, p)]
        if missing:
            ActivityCompat = autoclass("androidx.core.app.ActivityCompat")
            ActivityCompat.requestPermissions(activity, missing, request_code)
            logger.info(f"requested permissions: {missing}")
        return missing
    except Exception:
        logger.exception(f"permission request failed: {names}")
        return []


def request_notification_permission() -> list:
    # runtime permission only from Android 13 (API 33)
    return request_permissions("POST_NOTIFICATIONS", min_sdk=33)


def _alarm_manager(app_ctx=None):
    Context = autoclass("android.content.Context")
    AlarmManager = autoclass("android.app.AlarmManager")
    app_ctx = app_ctx or _app_context()
    return cast(AlarmManager, app_ctx.getSystemService(Context.ALARM_SERVICE))


def can_schedule_exact_alarms() -> bool:
    """Exact alarms need the user's grant from Android 12 (API 31) on."""
    sdk = android_sdk_int()
    if sdk == 0:
        return False
    if sdk < 31:
        return True
    try:
        return bool(_alarm_manager().canScheduleExactAlarms())
    except Exception:
        logger.exception("exact alarm check failed")
        return False


class AndroidAlarm:
    @staticmethod
    def _pending_intent(app_ctx, request_code: int, title: str = "", body: str = "",
                        repeat_daily: bool = False, trigger_ms: int = 0):
        Intent = autoclass("android.content.Intent")
        PendingIntent = autoclass("android.app.PendingIntent")

        intent = Intent()
        intent.setClassName(app_ctx, JAVA_ALARM_RECEIVER)
        intent.putExtra("title", title)
        intent.putExtra("body", body)
        intent.putExtra("request_code", int(request_code))
        intent.putExtra("repeat_daily", bool(repeat_daily))
        # string so the receiver gets a long without int/long overload guessing
        intent.putExtra("trigger_ms", str(int(trigger_ms)))

        flags = PendingIntent.FLAG_UPDATE_CURRENT
        if android_sdk_int() >= 23:
            flags |= PendingIntent.FLAG_IMMUTABLE
        return PendingIntent.getBroadcast(app_ctx, int(request_code), intent, int(flags))

    @staticmethod
    def schedule(at_time: datetime, title: str, body: str, request_code: int,
                 repeat_daily: bool = True) -> bool:
        """
        Schedules an AlarmManager broadcast to AlarmReceiver.java, which posts
        the notification and, when repeat_daily is set, re-arms itself for the
        same time of day starting from the original trigger time.
        """
        if not android_ready():
            logger.info(f"[Simulated alarm] {title} - {body} @ {at_time}")
            return False
        try:
            AlarmManager = autoclass("android.app.AlarmManager")
            app_ctx = _app_context()
            trigger_ms = int(at_time.timestamp() * 1000)
            pi = AndroidAlarm._pending_intent(app_ctx, request_code, title, body, repeat_daily, trigger_ms)
            am = _alarm_manager(app_ctx)

            sdk = android_sdk_int()
            if sdk < 23:
                am.setExact(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                mode = "exact"
            elif can_schedule_exact_alarms():
                am.setExactAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                mode = "exact+idle"
            else:
                am.setAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                mode = "inexact+idle"
            logger.info(f"alarm {mode} rc={request_code} @ {at_time}")
            return True
        except Exception:
            logger.exception(f"alarm scheduling failed rc={request_code}")
            return False

    @staticmethod
    def cancel(request_code: int):
        if not android_ready():
            return
        try:
            app_ctx = _app_context()
            pi = AndroidAlarm._pending_intent(app_ctx, request_code)
            _alarm_manager(app_ctx).cancel(pi)
            pi.cancel()
        except Exception:
            logger.exception(f"alarm cancel failed rc={request_code}")


def start_reminder_service(argument: str = ""):
    """Start the python-for-android background service declared as `Reminders`."""
    if not android_ready():
        return
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        service = autoclass(f"{JAVA_PACKAGE}.ServiceReminders")
        service.start(PythonActivity.mActivity, argument)
        logger.info("reminder service started")
    except Exception:
        logger.exception("reminder service start failed")


def notify(title: str, text: str, notification_id: int = None):
    """Post a notification right away (used by the background service)."""
    if not android_ready():
        logger.info(f"[Simulated notification] {title} - {text}")
        return
    try:
        Context = autoclass("android.content.Context")
        NotificationManager = autoclass("android.app.NotificationManager")
        NotificationChannel = autoclass("android.app.NotificationChannel")
        Notification = autoclass("android.app.Notification")

        ctx = _app_context()
        nm = ctx.getSystemService(Context.NOTIFICATION_SERVICE)

        if android_sdk_int() >= 26:
            ch = NotificationChannel(CHANNEL_ID, CHANNEL_NAME, NotificationManager.IMPORTANCE_HIGH)
            ch.setDescription(CHANNEL_DESCRIPTION)
            nm.createNotificationChannel(ch)
            builder = Notification.Builder(ctx, CHANNEL_ID)
        else:
            builder = Notification.Builder(ctx)

        builder.setContentTitle(title)
        builder.setContentText(text)
        builder.setSmallIcon(ctx.getApplicationInfo().icon)
        builder.setAutoCancel(True)

        if notification_id is None:
            notification_id = int(time.time()) & 0x7fffffff
        nm.notify(int(notification_id), builder.build())
    except Exception:
        logger.exception("notification failed")


# -------------------------
# Android source generator (Buildozer)
# -------------------------
JAVA_ALARM_RECEIVER_SRC = r"""
package {JAVA_PACKAGE};

import android.app.AlarmManager;
import android.app.Notification;
import android.app.NotificationChannel;
import android.app.NotificationManager;
import android.app.PendingIntent;
import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;
import android.os.Build;

public class AlarmReceiver extends BroadcastReceiver {{
    private static final String CHANNEL_ID = "{CHANNEL_ID}";
    private static final long DAY_MS = {DAY_MS}L;

    @Override
    public void onReceive(Context context, Intent intent) {{
        String title = intent.getStringExtra("title");
        String body = intent.getStringExtra("body");
        if (title == null) title = "Medication Reminder";
        if (body == null) body = "Time to take your medication";
        int requestCode = intent.getIntExtra("request_code", 0);

        NotificationManager nm =
                (NotificationManager) context.getSystemService(Context.NOTIFICATION_SERVICE);

        if (Build.VERSION.SDK_INT >= 26) {{
            NotificationChannel ch = new NotificationChannel(
                    CHANNEL_ID,
                    "{CHANNEL_NAME}",
                    NotificationManager.IMPORTANCE_HIGH
            );
            ch.setDescription("{CHANNEL_DESCRIPTION}");
            nm.createNotificationChannel(ch);
        }}

        Notification.Builder b = (Build.VERSION.SDK_INT >= 26)
                ? new Notification.Builder(context, CHANNEL_ID)
                : new Notification.Builder(context);

        b.setContentTitle(title)
         .setContentText(body)
         .setSmallIcon(context.getApplicationInfo().icon)
         .setPriority(Notification.PRIORITY_HIGH)
         .setAutoCancel(true);

        nm.notify(requestCode, b.build());

        if (intent.getBooleanExtra("repeat_daily", false)) {{
            long now = System.currentTimeMillis();
            long next = now;
            String trigger = intent.getStringExtra("trigger_ms");
            if (trigger != null) {{
                try {{
                    next = Long.parseLong(trigger);
                }} catch (NumberFormatException e) {{
                    next = now;
                }}
            }}
            // same time of day as the original trigger, first slot after now
            do {{
                next += DAY_MS;
            }} while (next <= now);
            intent.putExtra("trigger_ms", Long.toString(next));

            int flags = PendingIntent.FLAG_UPDATE_CURRENT;
            if (Build.VERSION.SDK_INT >= 23) flags |= PendingIntent.FLAG_IMMUTABLE;
            PendingIntent pi = PendingIntent.getBroadcast(context, requestCode, intent, flags);
            AlarmManager am = (AlarmManager) context.getSystemService(Context.ALARM_SERVICE);
            if (Build.VERSION.SDK_INT < 23) {{
                am.setExact(AlarmManager.RTC_WAKEUP, next, pi);
            }} else if (Build.VERSION.SDK_INT >= 31 && !am.canScheduleExactAlarms()) {{
                am.setAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, next, pi);
            }} else {{
                am.setExactAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, next, pi);
            }}
        }}
    }}
}}
"""

JAVA_BOOT_RECEIVER_SRC = r"""
package {JAVA_PACKAGE};

import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;
import android.util.Log;

public class BootReceiver extends BroadcastReceiver {{
    @Override
    public void onReceive(Context context, Intent intent) {{
        // alarms do not survive a reboot; the reminder service fetches and notifies instead
        try {{
            ServiceReminders.start(context, "boot");
        }} catch (RuntimeException e) {{
            Log.w("BootReceiver", "reminder service start failed", e);
        }}
    }}
}}
"""

EXTRA_MANIFEST_XML = r"""<manifest xmlns:android="http://schemas.android.com/apk/res/android">
    <uses-permission android:name="android.permission.INTERNET"/>
    <uses-permission android:name="android.permission.RECEIVE_BOOT_COMPLETED"/>
    <uses-permission android:name="android.permission.SCHEDULE_EXACT_ALARM"/>
    <uses-permission android:name="android.permission.POST_NOTIFICATIONS"/>
    <uses-permission android:name="android.permission.WAKE_LOCK"/>
    <uses-permission android:name="android.permission.VIBRATE"/>

    <application>
        <receiver
            android:name="{JAVA_PACKAGE}.AlarmReceiver"
            android:exported="false" />

        <receiver
            android:name="{JAVA_PACKAGE}.BootReceiver"
            android:exported="false">
            <intent-filter>
                <action android:name="android.intent.action.BOOT_COMPLETED"/>
                <action android:name="android.intent.action.LOCKED_BOOT_COMPLETED"/>
            </intent-filter>
        </receiver>
    </application>
</manifest>
"""


def write_android_sources(out_dir: Path) -> Path:
    pkg_path = Path(*JAVA_PACKAGE.split("."))
    src_root = out_dir / "android_src"
    java_dir = src_root / pkg_path
    java_dir.mkdir(parents=True, exist_ok=True)

    (java_dir / "AlarmReceiver.java").write_text(
        JAVA_ALARM_RECEIVER_SRC.format(
            JAVA_PACKAGE=JAVA_PACKAGE,
            CHANNEL_ID=CHANNEL_ID,
            CHANNEL_NAME=CHANNEL_NAME,
            CHANNEL_DESCRIPTION=CHANNEL_DESCRIPTION,
            DAY_MS=DAY_MS,
        ),
        encoding="utf-8"
    )
    (java_dir / "BootReceiver.java").write_text(
        JAVA_BOOT_RECEIVER_SRC.format(JAVA_PACKAGE=JAVA_PACKAGE),
        encoding="utf-8"
    )
    (src_root / "extra_manifest.xml").write_text(
        EXTRA_MANIFEST_XML.format(JAVA_PACKAGE=JAVA_PACKAGE),
        encoding="utf-8"
    )
    logger.info(f"wrote android sources to {src_root}")
    return src_root
