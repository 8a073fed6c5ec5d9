"""Trigger sources feeding the scheduler: a periodic timer and a marker file."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class TriggerSourceError(RuntimeError):
    """A trigger source could not be set up; the timer remains the fallback."""


def touch_marker(path: Path) -> float:
    """Append a timestamp line to the marker file and return its new mtime."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(datetime.now(tz=UTC).isoformat() + "\n")
        return path.stat().st_mtime
    except OSError as error:
        raise TriggerSourceError(f"Could not write trigger file {path}: {error}") from error


class PeriodicTimer:
    """Calls ``on_tick`` every ``interval_seconds`` from a daemon thread."""

    def __init__(
        self,
        *,
        interval_seconds: float,
        on_tick: Callable[[], object],
        name: str = "dispatch-timer",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0.")
        self.interval_seconds = interval_seconds
        self._on_tick = on_tick
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self._name)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._on_tick()
            except Exception:  # noqa: BLE001
                logger.exception("Timer callback failed")


class MarkerFileWatcher:
    """Polls a marker file's mtime and reports each newer value once."""

    def __init__(
        self,
        *,
        path: Path,
        on_signal: Callable[[float], object],
        poll_seconds: float = 1.0,
        name: str = "dispatch-marker",
    ) -> None:
        self.path = path
        self.poll_seconds = poll_seconds
        self._on_signal = on_signal
        self._name = name
        self._last_seen: float | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Record the current mtime as the baseline and start polling."""

        if self._thread is not None:
            return
        self._last_seen = self._read_mtime()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self._name)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def poll_once(self) -> bool:
        """Check the marker once; True if a newer mtime was reported."""

        mtime = self._read_mtime()
        if mtime is None:
            return False
        if self._last_seen is not None and mtime <= self._last_seen:
            return False
        self._last_seen = mtime
        logger.info(
            "Trigger file modified (%s) - requesting immediate check",
            datetime.fromtimestamp(mtime).strftime("%H:%M:%S"),
        )
        self._on_signal(mtime)
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_seconds):
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("Trigger callback failed")

    def _read_mtime(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as error:
            logger.warning("Could not stat trigger file %s: %s", self.path, error)
            return None
