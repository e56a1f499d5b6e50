from __future__ import annotations

import logging
import sys
import threading
import time
from pathlib import Path
from typing import Any, List
from unittest.mock import MagicMock

import pytest

from debounce_watch.scheduler import (
    STATE_DONE,
    STATE_FIRING,
    STATE_WAITING,
    DebounceScheduler,
    PendingAction,
)


@pytest.mark.parametrize(
    "delay,expected_half",
    [(0, 0), (1, 0), (2, 1), (3, 1), (10, 5), (11, 5)],
)
def test_half_delay_is_floor_of_half(delay: int, expected_half: int) -> None:
    scheduler = DebounceScheduler(delay, ["true"])
    assert scheduler.half_delay == expected_half


def test_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError, match="non-negative"):
        DebounceScheduler(-1, ["true"])
    with pytest.raises(ValueError, match="command"):
        DebounceScheduler(5, [])


def test_cancel_pending_without_pending_action_is_noop(caplog: pytest.LogCaptureFixture) -> None:
    scheduler = DebounceScheduler(10, ["true"])
    with caplog.at_level(logging.DEBUG):
        scheduler.cancel_pending()
        scheduler.cancel_pending()

    assert scheduler.pending is None
    stats = scheduler.get_statistics()
    assert stats["actions_canceled"] == 0
    assert stats["cancel_misses"] == 0
    assert caplog.records == []


def test_zero_delay_reaches_fire(mock_run: MagicMock) -> None:
    scheduler = DebounceScheduler(0, ["make", "html"])
    scheduler.notify_event("created /tmp/w/a")

    assert scheduler.wait(timeout=5.0)
    mock_run.assert_called_once_with(["make", "html"], check=False)
    assert scheduler.pending is None


def test_burst_of_events_fires_once(mock_run: MagicMock, mock_sleep: MagicMock) -> None:
    scheduler = DebounceScheduler(2, ["make"])
    for i in range(5):
        scheduler.notify_event(f"modified /tmp/w/file{i}")

    assert scheduler.wait(timeout=5.0)
    mock_run.assert_called_once()

    # Inline half-delay sleep happens once per event
    assert mock_sleep.call_count == 5
    mock_sleep.assert_called_with(1)

    stats = scheduler.get_statistics()
    assert stats["events_received"] == 5
    assert stats["actions_scheduled"] == 5
    assert stats["actions_canceled"] == 4
    assert stats["actions_fired"] == 1
    assert stats["pending"] is False


def test_events_further_apart_than_delay_fire_twice(mock_run: MagicMock, mock_sleep: MagicMock) -> None:
    scheduler = DebounceScheduler(2, ["make"])

    scheduler.notify_event("created /tmp/w/a")
    assert scheduler.wait(timeout=5.0)
    scheduler.notify_event("created /tmp/w/b")
    assert scheduler.wait(timeout=5.0)

    assert mock_run.call_count == 2
    assert scheduler.get_statistics()["actions_canceled"] == 0


def test_cancel_during_wait_prevents_fire(mock_run: MagicMock, mock_sleep: MagicMock) -> None:
    scheduler = DebounceScheduler(4, ["make"])
    scheduler.notify_event("created /tmp/w/a")

    action = scheduler.pending
    assert action is not None
    assert action.scheduled
    assert action.state == STATE_WAITING

    scheduler.cancel_pending()
    assert scheduler.pending is None

    assert action.thread is not None
    action.thread.join(timeout=5.0)
    assert not action.thread.is_alive()
    assert action.state == STATE_DONE
    assert not action.scheduled
    mock_run.assert_not_called()


def test_cancel_while_firing_lets_command_finish(
    mock_run: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    started = threading.Event()
    release = threading.Event()

    def blocking_run(*args: Any, **kwargs: Any) -> MagicMock:
        started.set()
        release.wait(5.0)
        return MagicMock(returncode=0)

    mock_run.side_effect = blocking_run
    scheduler = DebounceScheduler(0, ["make"])
    scheduler.notify_event("created /tmp/w/a")
    action = scheduler.pending
    assert action is not None
    assert started.wait(5.0)
    assert action.state == STATE_FIRING

    with caplog.at_level(logging.INFO, logger="debounce_watch.scheduler"):
        scheduler.cancel_pending()

    assert scheduler.pending is None
    assert "already running" in caplog.text

    release.set()
    assert action.thread is not None
    action.thread.join(timeout=5.0)
    mock_run.assert_called_once()
    assert action.state == STATE_DONE
    assert scheduler.get_statistics()["actions_canceled"] == 0


def test_cancel_of_finished_action_is_logged_as_miss(caplog: pytest.LogCaptureFixture) -> None:
    scheduler = DebounceScheduler(10, ["make"])
    stale = PendingAction(7)
    stale.state = STATE_DONE
    scheduler._pending = stale

    with caplog.at_level(logging.WARNING, logger="debounce_watch.scheduler"):
        scheduler.cancel_pending()

    assert scheduler.pending is None
    assert "No pending action found for handle 7" in caplog.text
    assert scheduler.get_statistics()["cancel_misses"] == 1


def test_fire_runs_argument_vector_without_shell(mock_run: MagicMock) -> None:
    scheduler = DebounceScheduler(0, ["echo", "a b; rm -rf /"])
    assert scheduler.fire() == 0
    mock_run.assert_called_once_with(["echo", "a b; rm -rf /"], check=False)


def test_fire_runs_through_shell_when_requested(mock_run: MagicMock) -> None:
    scheduler = DebounceScheduler(0, ["make", "&&", "echo done"], shell=True)
    scheduler.fire()
    mock_run.assert_called_once_with("make && echo done", shell=True, check=False)


def test_fire_logs_non_zero_exit(mock_run: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    mock_run.return_value.returncode = 3
    scheduler = DebounceScheduler(0, ["false"])

    with caplog.at_level(logging.INFO, logger="debounce_watch.scheduler"):
        assert scheduler.fire() == 3

    assert "Performing action after 0 seconds of inactivity" in caplog.text
    assert "Action exited with status 3" in caplog.text
    assert scheduler.get_statistics()["action_failures"] == 1


def test_start_failure_is_logged_not_raised(mock_run: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    mock_run.side_effect = FileNotFoundError("No such file or directory: 'nope'")
    scheduler = DebounceScheduler(0, ["nope"])

    with caplog.at_level(logging.ERROR, logger="debounce_watch.scheduler"):
        scheduler.notify_event("created /tmp/w/a")
        assert scheduler.wait(timeout=5.0)

    assert "Failed to start action" in caplog.text
    assert mock_run.call_count == 1  # not retried
    assert scheduler.get_statistics()["action_failures"] == 1


def test_transitions_are_logged(mock_run: MagicMock, mock_sleep: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    scheduler = DebounceScheduler(2, ["make"])
    with caplog.at_level(logging.INFO, logger="debounce_watch.scheduler"):
        scheduler.notify_event("created /tmp/w/a")
        scheduler.notify_event("created /tmp/w/b")
        assert scheduler.wait(timeout=5.0)

    messages: List[str] = [r.getMessage() for r in caplog.records]
    assert messages[0] == "Event received: created /tmp/w/a"
    assert "Scheduled action with handle 1" in messages
    assert "Canceled pending action with handle 1" in messages
    assert "Scheduled action with handle 2" in messages
    assert messages[-1] == "Performing action after 2 seconds of inactivity"


def test_fire_happens_half_delay_after_scheduling(mock_run: MagicMock) -> None:
    fired_at: List[float] = []
    mock_run.side_effect = lambda *a, **k: fired_at.append(time.monotonic()) or MagicMock(returncode=0)

    scheduler = DebounceScheduler(2, ["make"])
    event_at = time.monotonic()
    scheduler.notify_event("created /tmp/w/a")
    scheduled_at = time.monotonic()

    # The inline throttle took half the delay
    assert scheduled_at - event_at >= 0.9
    assert scheduler.wait(timeout=5.0)

    assert len(fired_at) == 1
    assert fired_at[0] - scheduled_at >= 0.9
    assert fired_at[0] - event_at < 3.5


def test_shutdown_cancels_and_ignores_later_events(mock_run: MagicMock, mock_sleep: MagicMock) -> None:
    scheduler = DebounceScheduler(4, ["make"])
    scheduler.notify_event("created /tmp/w/a")
    action = scheduler.pending
    assert action is not None

    scheduler.shutdown()
    scheduler.notify_event("created /tmp/w/b")

    assert scheduler.pending is None
    assert action.thread is not None
    action.thread.join(timeout=5.0)
    mock_run.assert_not_called()
    assert scheduler.get_statistics()["events_received"] == 1


def test_runs_real_command(temp_dir: Path) -> None:
    marker = temp_dir / "fired"
    scheduler = DebounceScheduler(
        0, [sys.executable, "-c", f"open({str(marker)!r}, 'w').write('ok')"]
    )
    scheduler.notify_event(f"created {temp_dir / 'a'}")

    assert scheduler.wait(timeout=10.0)
    assert marker.read_text() == "ok"


def test_repr() -> None:
    scheduler = DebounceScheduler(10, ["make"])
    assert repr(scheduler) == "<DebounceScheduler delay=10 pending=None>"
    assert repr(PendingAction(3)) == "<PendingAction handle=3 state=waiting>"
