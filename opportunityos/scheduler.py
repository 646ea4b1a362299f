import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from opportunityos.config import ScheduleSettings, weekday_index
from opportunityos.persistence.json_io import atomic_read_json, atomic_write_json


logger = logging.getLogger("opportunityos.scheduler")

STATE_FILENAME = "scheduler_state.json"


def load_scheduler_state(path: Path) -> dict:
    state = atomic_read_json(path, default={})
    if not isinstance(state, dict):
        return {}
    return {key: value for key, value in state.items() if isinstance(key, str) and isinstance(value, str)}


def save_scheduler_state(path: Path, date_str: str, timestamp_str: str) -> None:
    atomic_write_json(path, {"last_run_date": date_str, "last_run_timestamp": timestamp_str})


class DetectionScheduler:
    """Fires ``callback`` once per scheduled day at ``settings.hour`` local time.

    ``settings.weekday`` restricts runs to one day of the week; ``None`` means
    every day. The last run date survives restarts via ``scheduler_state.json``
    so a restart after the slot does not fire a second run that day.
    """

    def __init__(self, settings: ScheduleSettings, callback, data_dir: Path, now_fn=None):
        self.hour = int(settings.hour)
        self.weekday = weekday_index(settings.weekday)
        self._timezone = ZoneInfo(settings.timezone or "UTC")
        self._callback = callback
        self._state_path = Path(data_dir) / STATE_FILENAME
        self._now_fn = now_fn

        self._stop_event = threading.Event()
        self._thread = None
        self._last_run_date = None
        self._last_run_timestamp = None
        self._next_run_at = None

        state = load_scheduler_state(self._state_path)
        last_run_date = state.get("last_run_date")
        if last_run_date:
            try:
                self._last_run_date = datetime.fromisoformat(last_run_date).date()
            except ValueError:
                self._last_run_date = None
        self._last_run_timestamp = state.get("last_run_timestamp")

    @property
    def next_run_at(self):
        return self._next_run_at

    @property
    def last_run_timestamp(self):
        return self._last_run_timestamp

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="opportunityos-scheduler")
        self._thread.start()
        logger.info("Scheduler started", extra={"hour": self.hour, "weekday": self.weekday})

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2)

    def _now(self):
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(self._timezone)

    def _is_scheduled_day(self, day) -> bool:
        return self.weekday is None or day.weekday() == self.weekday

    def _scheduled_for_day(self, now):
        return now.replace(hour=self.hour, minute=0, second=0, microsecond=0)

    def _next_scheduled_at(self, now):
        candidate = self._scheduled_for_day(now)
        if now >= candidate or self._last_run_date == now.date():
            candidate += timedelta(days=1)
        while not self._is_scheduled_day(candidate):
            candidate += timedelta(days=1)
        return candidate

    def _run_due_detection_if_needed(self, now) -> bool:
        if self._last_run_date == now.date() or not self._is_scheduled_day(now):
            return False
        if now < self._scheduled_for_day(now):
            return False

        logger.info("Running scheduled detection", extra={"event_type": "scheduled_detection"})
        # Recorded before the callback so a failing run is not retried in a tight loop.
        self._last_run_date = now.date()
        self._last_run_timestamp = now.isoformat()
        save_scheduler_state(self._state_path, self._last_run_date.isoformat(), self._last_run_timestamp)
        try:
            self._callback()
        except Exception:
            logger.exception("Scheduled detection failed; waiting for the next slot")
        return True

    def tick(self) -> bool:
        now = self._now()
        ran = self._run_due_detection_if_needed(now)
        self._next_run_at = self._next_scheduled_at(now)
        logger.info("Next detection scheduled", extra={"next_run_at": self._next_run_at.isoformat()})
        return ran

    def _run_loop(self):
        while not self._stop_event.is_set():
            now = self._now()
            self._run_due_detection_if_needed(now)

            self._next_run_at = self._next_scheduled_at(now)
            logger.debug("Next detection scheduled", extra={"next_run_at": self._next_run_at.isoformat()})

            sleep_seconds = max((self._next_run_at - now).total_seconds(), 0)
            # Wake periodically so stop() is responsive.
            self._stop_event.wait(timeout=min(sleep_seconds, 60))
