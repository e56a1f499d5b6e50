"""
Debounce scheduling for file-triggered actions.

Responsibility:
    This module owns the single piece of mutable state in the program: whether
    an action is currently pending. Every batch of file events reported by the
    watch loop is passed to :meth:`DebounceScheduler.notify_event`, which
    cancels the pending action (if any) and schedules a fresh one, so that a
    burst of events collapses into one run of the configured command.

Design:
    - **Split delay**: The total debounce window ``delay`` is split into two
      halves of ``floor(delay / 2)`` seconds. The first half is slept inline by
      the caller (the watch loop), throttling how often rescheduling happens
      during dense bursts; events arriving meanwhile are buffered by the watch
      loop and delivered as one batch. The second half is waited by a
      background worker before it fires.
    - **Cancellation token**: Each :class:`PendingAction` carries a
      ``threading.Event``. The worker waits on it instead of sleeping and
      re-checks it under the scheduler lock right before it starts the
      command, so a cancelled action can never fire.
    - **No kill**: An action that has already started running its command is
      left to finish. Cancelling it only frees the slot for the next action.

Key Invariants:
    - At most one pending action is live at a time.
    - One debounce window produces at most one attempt to run the command;
      failures are logged and never retried.
"""

from __future__ import annotations

import itertools
import logging
import subprocess
import threading
import time
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DebounceScheduler", "PendingAction"]

STATE_WAITING = "waiting"
STATE_FIRING = "firing"
STATE_DONE = "done"


class PendingAction:
    """Track one scheduled run of the action.

    Attributes:
        handle (int): Identifier of this action, unique per scheduler.
        token (threading.Event): Cancellation token checked by the worker.
        state (str): One of ``waiting``, ``firing`` or ``done``.
        thread (Optional[threading.Thread]): The worker waiting to fire.
    """

    __slots__ = ("handle", "token", "state", "thread")

    def __init__(self, handle: int) -> None:
        self.handle = handle
        self.token = threading.Event()
        self.state = STATE_WAITING
        self.thread: Optional[threading.Thread] = None

    @property
    def scheduled(self) -> bool:
        """Whether the action is still waiting to run or running."""
        return self.state != STATE_DONE

    def __repr__(self) -> str:
        return f"<PendingAction handle={self.handle} state={self.state}>"


class DebounceScheduler:
    """Collapse bursts of events into a single run of a command.

    Attributes:
        delay (int): Total debounce window in seconds.
        half_delay (int): ``floor(delay / 2)``, slept once inline and once by
            the worker.
        command (List[str]): The argument vector to execute.
        shell (bool): Whether to evaluate the command through the system shell.

    Example:
        >>> scheduler = DebounceScheduler(10, ["make", "html"])
        >>> scheduler.notify_event("created /tmp/w/a")  # doctest: +SKIP
        >>> scheduler.shutdown()
    """

    def __init__(
        self,
        delay: int,
        command: Sequence[str],
        shell: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            delay (int): Total debounce window in seconds. Must be non-negative.
            command (Sequence[str]): The command and its arguments.
            shell (bool): Join the command words with spaces and run them
                through the system shell instead of executing them directly.
            logger (Optional[logging.Logger]): Optional logger instance.

        Raises:
            ValueError: If ``delay`` is negative or ``command`` is empty.
        """
        if delay < 0:
            raise ValueError(f"delay must be non-negative, got {delay}")
        if not command:
            raise ValueError("command must not be empty")

        self.delay = int(delay)
        self.half_delay = self.delay // 2
        self.command: List[str] = [str(part) for part in command]
        self.shell = shell
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._pending: Optional[PendingAction] = None
        self._handles = itertools.count(1)
        self._stopped = False

        # Metrics
        self.events_received: int = 0
        self.actions_scheduled: int = 0
        self.actions_canceled: int = 0
        self.actions_fired: int = 0
        self.action_failures: int = 0
        self.cancel_misses: int = 0
        self.start_time: float = time.monotonic()

    @property
    def pending(self) -> Optional[PendingAction]:
        """Return the live pending action, if any."""
        with self._lock:
            return self._pending

    def notify_event(self, description: str) -> None:
        """Handle one batch of file events.

        Cancels the pending action, sleeps ``half_delay`` seconds inline and
        then schedules a new action that fires after another ``half_delay``.
        Calls are expected to be serialized by the watch loop.

        Args:
            description (str): Human-readable description of the batch.

        Returns:
            None
        """
        if self._stopped:
            self.logger.debug(f"Scheduler stopped, ignoring event: {description}")
            return

        self.logger.info(f"Event received: {description}")
        with self._lock:
            self.events_received += 1

        self.cancel_pending()

        if self.half_delay > 0:
            time.sleep(self.half_delay)

        if self._stopped:
            return
        self._schedule()

    def cancel_pending(self) -> None:
        """Cancel the pending action and free the slot.

        Does nothing when no action is pending. Never waits for the worker to
        exit; the slot is free as soon as this returns.

        Returns:
            None
        """
        with self._lock:
            action = self._pending
            self._pending = None
            if action is None:
                return
            previous_state = action.state
            action.token.set()
            if previous_state == STATE_WAITING:
                self.actions_canceled += 1
            elif previous_state == STATE_DONE:
                # Workers clear their own slot when done; only reachable if that cleanup is bypassed
                self.cancel_misses += 1

        if previous_state == STATE_WAITING:
            self.logger.info(f"Canceled pending action with handle {action.handle}")
        elif previous_state == STATE_FIRING:
            self.logger.info(
                f"Action with handle {action.handle} is already running, letting it finish"
            )
        else:
            self.logger.warning(f"No pending action found for handle {action.handle}")

    def fire(self) -> Optional[int]:
        """Run the configured command synchronously.

        The command inherits the working directory and environment of this
        process. Its exit status is logged but not propagated.

        Returns:
            Optional[int]: The exit status, or None if the command could not
            be started.
        """
        self.logger.info(f"Performing action after {self.delay} seconds of inactivity")
        with self._lock:
            self.actions_fired += 1

        try:
            if self.shell:
                result = subprocess.run(" ".join(self.command), shell=True, check=False)
            else:
                result = subprocess.run(self.command, check=False)
        except OSError as e:
            with self._lock:
                self.action_failures += 1
            self.logger.error(f"Failed to start action {self.command}: {e}")
            return None

        if result.returncode != 0:
            with self._lock:
                self.action_failures += 1
            self.logger.warning(f"Action exited with status {result.returncode}")
        else:
            self.logger.debug("Action completed successfully")
        return result.returncode

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current pending action has finished.

        Args:
            timeout (Optional[float]): Maximum time to wait in seconds.

        Returns:
            bool: True if nothing is pending anymore, False on timeout.
        """
        with self._lock:
            action = self._pending
        if action is None or action.thread is None:
            return True
        action.thread.join(timeout)
        return not action.thread.is_alive()

    def shutdown(self) -> None:
        """Stop accepting events and cancel the pending action.

        An action that is already running its command is left to finish.

        Returns:
            None
        """
        self._stopped = True
        self.cancel_pending()

    def get_statistics(self) -> Dict[str, Any]:
        """Return usage statistics.

        Returns:
            Dict[str, Any]: Event and action counters, whether an action is
            pending and the scheduler uptime.
        """
        with self._lock:
            return {
                "events_received": self.events_received,
                "actions_scheduled": self.actions_scheduled,
                "actions_canceled": self.actions_canceled,
                "actions_fired": self.actions_fired,
                "action_failures": self.action_failures,
                "cancel_misses": self.cancel_misses,
                "pending": self._pending is not None,
                "uptime": time.monotonic() - self.start_time,
            }

    def _schedule(self) -> None:
        """Create a new pending action and start its worker.

        Returns:
            None
        """
        action = PendingAction(next(self._handles))
        thread = threading.Thread(
            target=self._run_pending, args=(action,), name=f"PendingAction-{action.handle}"
        )
        thread.daemon = True
        action.thread = thread

        with self._lock:
            self._pending = action
            self.actions_scheduled += 1
        self.logger.info(f"Scheduled action with handle {action.handle}")

        try:
            thread.start()
        except RuntimeError:
            with self._lock:
                action.state = STATE_DONE
                action.thread = None
                if self._pending is action:
                    self._pending = None
            self.logger.error(
                f"Failed to start worker for action with handle {action.handle}", exc_info=True
            )

    def _run_pending(self, action: PendingAction) -> None:
        """Wait out the second half of the delay, then fire unless cancelled.

        Args:
            action (PendingAction): The action this worker belongs to.

        Returns:
            None
        """
        if self.half_delay > 0:
            action.token.wait(self.half_delay)

        with self._lock:
            if action.token.is_set():
                action.state = STATE_DONE
                return
            action.state = STATE_FIRING

        try:
            self.fire()
        except Exception as e:
            self.logger.error(f"Unexpected error while performing action: {e}", exc_info=True)
        finally:
            with self._lock:
                action.state = STATE_DONE
                if self._pending is action:
                    self._pending = None
            self.logger.debug(f"Action with handle {action.handle} finished")

    def __repr__(self) -> str:
        """Return a string representation of the scheduler.

        Returns:
            str: String representation including delay and pending action.
        """
        return f"<DebounceScheduler delay={self.delay} pending={self._pending!r}>"
