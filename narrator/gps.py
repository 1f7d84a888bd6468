"""Position sources: Termux GPS, trace recording and playback."""

import json
import subprocess
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .config import CONFIG
from .errors import (SIGNAL_PERMISSION_DENIED, SIGNAL_POSITION_UNAVAILABLE, SIGNAL_TIMEOUT,
                     SignalError)
from .logger import Logger
from .models import PositionSample, now_ms

FixCallback = Callable[[PositionSample], None]
ErrorCallback = Callable[[SignalError], None]


class PositionSource:
    """Pushes fixes and signal errors to one subscriber.

    Callbacks may run on a source-owned thread.
    """

    def __init__(self):
        self.on_fix: Optional[FixCallback] = None
        self.on_error: Optional[ErrorCallback] = None

    def subscribe(self, on_fix: FixCallback, on_error: Optional[ErrorCallback] = None):
        self.on_fix = on_fix
        self.on_error = on_error

    def unsubscribe(self):
        self.on_fix = None
        self.on_error = None

    def _emit(self, sample: PositionSample):
        if self.on_fix:
            self.on_fix(sample)

    def _emit_error(self, error: SignalError):
        if self.on_error:
            self.on_error(error)

    def get_status(self) -> str:
        return "ok"


class TermuxPositionSource(PositionSource):
    """GPS via termux-location, polled on a background thread"""

    def __init__(self, poll_interval: Optional[float] = None, timeout: Optional[int] = None,
                 logger: Optional[Logger] = None, runner=subprocess.run):
        super().__init__()
        self.poll_interval = poll_interval or CONFIG["gps_poll_interval"]
        self.timeout = timeout or CONFIG["gps_timeout"]
        self.logger = logger or Logger()
        self.runner = runner
        self.last_sample: Optional[PositionSample] = None
        self.consecutive_failures = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, on_fix: FixCallback, on_error: Optional[ErrorCallback] = None):
        super().subscribe(on_fix, on_error)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="termux-gps", daemon=True)
        self._thread.start()

    def unsubscribe(self):
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.timeout + 1)
        self._thread = None
        super().unsubscribe()

    def _run(self):
        while not self._stop.is_set():
            try:
                sample = self.read_fix()
                self.consecutive_failures = 0
                self._emit(sample)
            except SignalError as e:
                self.consecutive_failures += 1
                self._emit_error(e)
                if e.message.startswith("termux-location not found"):
                    break
            self._stop.wait(self.poll_interval)

    def read_fix(self) -> PositionSample:
        """One termux-location call; raises SignalError on failure"""
        try:
            result = self.runner(
                ["termux-location", "-p", "gps", "-r", "once"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise SignalError(SIGNAL_TIMEOUT, f"no fix within {self.timeout}s")
        except FileNotFoundError:
            raise SignalError(SIGNAL_POSITION_UNAVAILABLE, "termux-location not found")

        if result.returncode != 0:
            error_msg = result.stderr.strip() if result.stderr else "unknown error"
            if "permission" in error_msg.lower():
                raise SignalError(SIGNAL_PERMISSION_DENIED, error_msg)
            raise SignalError(SIGNAL_POSITION_UNAVAILABLE, error_msg)

        if not result.stdout or not result.stdout.strip():
            raise SignalError(SIGNAL_POSITION_UNAVAILABLE, "empty response")

        try:
            data = json.loads(result.stdout)
            sample = PositionSample(
                lat=data["latitude"],
                lng=data["longitude"],
                timestamp_ms=now_ms(),
                accuracy_m=data.get("accuracy"),
                heading_deg=data.get("bearing"),
                speed_mps=data.get("speed"),
            )
        except (json.JSONDecodeError, KeyError) as e:
            raise SignalError(SIGNAL_POSITION_UNAVAILABLE, f"bad response: {e}")
        self.last_sample = sample
        return sample

    def get_status(self) -> str:
        if self.consecutive_failures == 0:
            acc = ""
            if self.last_sample and self.last_sample.accuracy_m:
                acc = f", accuracy {self.last_sample.accuracy_m:.0f}m"
            return f"GPS OK{acc}"
        return f"GPS: {self.consecutive_failures} consecutive failures"


class StaticPositionSource(PositionSource):
    """Emits a single fixed position once"""

    def __init__(self, lat: float, lng: float, accuracy_m: float = 5.0):
        super().__init__()
        self.lat = lat
        self.lng = lng
        self.accuracy_m = accuracy_m

    def subscribe(self, on_fix: FixCallback, on_error: Optional[ErrorCallback] = None):
        super().subscribe(on_fix, on_error)
        self._emit(PositionSample(self.lat, self.lng, now_ms(), self.accuracy_m))


class TraceRecorder(PositionSource):
    """Wraps another source and records everything it emits"""

    def __init__(self, source: PositionSource, record_path: str):
        super().__init__()
        self.source = source
        self.record_path = record_path
        self.trace: list[dict] = []
        self.start_time = time.time()
        self._lock = threading.Lock()

    def subscribe(self, on_fix: FixCallback, on_error: Optional[ErrorCallback] = None):
        super().subscribe(on_fix, on_error)
        self.source.subscribe(self._record_fix, self._record_error)

    def unsubscribe(self):
        self.source.unsubscribe()
        super().unsubscribe()

    def _record_fix(self, sample: PositionSample):
        with self._lock:
            self.trace.append({"elapsed": time.time() - self.start_time, "sample": sample.to_dict()})
        self._emit(sample)

    def _record_error(self, error: SignalError):
        # Record failed attempts too so playback reproduces gaps
        with self._lock:
            self.trace.append({"elapsed": time.time() - self.start_time, "sample": None,
                               "error": error.kind, "message": error.message})
        self._emit_error(error)

    def get_status(self) -> str:
        return self.source.get_status()

    def save(self):
        """Save trace to file"""
        with self._lock:
            trace = list(self.trace)
        with open(self.record_path, "w") as f:
            json.dump({"recorded_at": datetime.now().isoformat(), "trace": trace}, f, indent=2)
        print(f"GPS trace saved to {self.record_path} ({len(trace)} entries)")


def _entry_sample(entry: dict) -> Optional[PositionSample]:
    if entry.get("sample"):
        return PositionSample.from_dict(entry["sample"])
    # Older traces: {"location": {"lat", "lon", "accuracy", "timestamp"}}
    location = entry.get("location")
    if location:
        return PositionSample(
            lat=location["lat"],
            lng=location["lon"],
            timestamp_ms=int(location.get("timestamp", entry.get("timestamp", 0)) * 1000),
            accuracy_m=location.get("accuracy"),
        )
    return None


class TracePlaybackSource(PositionSource):
    """Replays a recorded trace, honoring its timing scaled by speed"""

    def __init__(self, playback_path: str, speed: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        super().__init__()
        self.playback_path = playback_path
        self.speed = speed
        self.sleep = sleep
        self.index = 0
        self.consecutive_failures = 0
        self.finished = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        with open(playback_path) as f:
            self.trace: list[dict] = json.load(f)["trace"]
        print(f"Loaded GPS trace from {playback_path} ({len(self.trace)} entries)")

    def subscribe(self, on_fix: FixCallback, on_error: Optional[ErrorCallback] = None):
        super().subscribe(on_fix, on_error)
        self._stop.clear()
        self._thread = threading.Thread(target=self.replay, name="trace-playback", daemon=True)
        self._thread.start()

    def unsubscribe(self):
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2)
        self._thread = None
        super().unsubscribe()

    def replay(self):
        """Emit every remaining entry on the calling thread"""
        while self.index < len(self.trace) and not self._stop.is_set():
            entry = self.trace[self.index]
            self.index += 1
            sample = _entry_sample(entry)
            if sample:
                self.consecutive_failures = 0
                self._emit(sample)
            else:
                self.consecutive_failures += 1
                self._emit_error(SignalError(entry.get("error", SIGNAL_POSITION_UNAVAILABLE),
                                             entry.get("message", "")))
            interval = self._interval()
            if interval > 0:
                self.sleep(interval)
        self.finished.set()

    def _interval(self) -> float:
        if self.index <= 0 or self.index >= len(self.trace):
            return 0.0
        delta = self.trace[self.index].get("elapsed", 0) - self.trace[self.index - 1].get("elapsed", 0)
        return max(0.0, min(delta / self.speed, 5.0))

    def is_finished(self) -> bool:
        return self.index >= len(self.trace)

    def get_status(self) -> str:
        progress = f"{self.index}/{len(self.trace)}"
        if self.consecutive_failures == 0:
            return f"Playback OK ({progress})"
        return f"Playback: {self.consecutive_failures} failures ({progress})"


class FakePositionSource(PositionSource):
    """Test source driven by push()/fail()"""

    def __init__(self):
        super().__init__()
        self.subscribed = False

    def subscribe(self, on_fix: FixCallback, on_error: Optional[ErrorCallback] = None):
        super().subscribe(on_fix, on_error)
        self.subscribed = True

    def unsubscribe(self):
        super().unsubscribe()
        self.subscribed = False

    def push(self, sample: PositionSample):
        self._emit(sample)

    def fail(self, kind: str, message: str = ""):
        self._emit_error(SignalError(kind, message))
