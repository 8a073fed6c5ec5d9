from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path

import allure
import pytest

from task_dispatch.dispatch.triggers import (
    MarkerFileWatcher,
    PeriodicTimer,
    TriggerSourceError,
    touch_marker,
)

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Trigger Sources"),
]


def test_touch_marker_creates_file_and_appends_timestamps(tmp_path: Path) -> None:
    marker = tmp_path / "nested" / ".trigger"

    first = touch_marker(marker)
    touch_marker(marker)

    assert marker.exists()
    assert len(marker.read_text(encoding="utf-8").splitlines()) == 2
    assert first > 0


def test_touch_marker_failure_is_a_trigger_source_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(TriggerSourceError, match="Could not write trigger file"):
        touch_marker(blocker / ".trigger")


def test_watcher_reports_each_newer_mtime_once(tmp_path: Path) -> None:
    marker = tmp_path / ".trigger"
    marker.write_text("start\n", encoding="utf-8")
    os.utime(marker, (1_000.0, 1_000.0))
    signals: list[float] = []
    watcher = MarkerFileWatcher(path=marker, on_signal=signals.append, poll_seconds=60)
    watcher.start()
    try:
        assert watcher.poll_once() is False

        os.utime(marker, (2_000.0, 2_000.0))
        assert watcher.poll_once() is True
        assert watcher.poll_once() is False

        os.utime(marker, (1_500.0, 1_500.0))
        assert watcher.poll_once() is False
    finally:
        watcher.stop()

    assert signals == [2_000.0]


def test_watcher_picks_up_marker_created_after_start(tmp_path: Path) -> None:
    marker = tmp_path / ".trigger"
    signals: list[float] = []
    watcher = MarkerFileWatcher(path=marker, on_signal=signals.append, poll_seconds=60)
    watcher.start()
    try:
        assert watcher.poll_once() is False
        touch_marker(marker)
        assert watcher.poll_once() is True
    finally:
        watcher.stop()

    assert len(signals) == 1


def test_watcher_thread_polls_in_background(tmp_path: Path) -> None:
    marker = tmp_path / ".trigger"
    marker.write_text("start\n", encoding="utf-8")
    os.utime(marker, (1_000.0, 1_000.0))
    fired = threading.Event()
    watcher = MarkerFileWatcher(
        path=marker,
        on_signal=lambda _mtime: fired.set(),
        poll_seconds=0.01,
    )
    watcher.start()
    try:
        os.utime(marker, (3_000.0, 3_000.0))
        assert fired.wait(timeout=5)
    finally:
        watcher.stop()


def test_timer_ticks_until_stopped() -> None:
    ticks: list[float] = []
    timer = PeriodicTimer(interval_seconds=0.01, on_tick=lambda: ticks.append(time.monotonic()))
    timer.start()
    deadline = time.monotonic() + 5
    while len(ticks) < 3 and time.monotonic() < deadline:
        time.sleep(0.005)
    timer.stop()
    count = len(ticks)
    time.sleep(0.05)

    assert count >= 3
    assert len(ticks) == count


def test_timer_survives_failing_callback(caplog) -> None:
    calls: list[int] = []

    def _tick() -> None:
        calls.append(1)
        raise RuntimeError("scheduler exploded")

    timer = PeriodicTimer(interval_seconds=0.01, on_tick=_tick)
    with caplog.at_level(logging.ERROR):
        timer.start()
        deadline = time.monotonic() + 5
        while len(calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.005)
        timer.stop()

    assert len(calls) >= 2
    assert "Timer callback failed" in caplog.text


def test_timer_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError, match="interval_seconds"):
        PeriodicTimer(interval_seconds=0, on_tick=lambda: None)
