from __future__ import annotations

import logging
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import MagicMock, patch

import pytest

from debounce_watch.config import Config


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Resolved so that paths compare equal to the ones produced by config loading.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname).resolve()


@pytest.fixture
def clean_env(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove configuration sources that could leak in from the host."""
    for var in ("DEBOUNCE_WATCH_SHELL", "DEBOUNCE_WATCH_LOG_FILE", "DEBOUNCE_WATCH_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    empty = temp_dir / "empty_config"
    empty.mkdir(exist_ok=True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(empty))
    monkeypatch.chdir(empty)


@pytest.fixture
def mock_run() -> Generator[MagicMock, None, None]:
    """Mock subprocess.run as seen by the scheduler; commands exit with 0."""
    with patch("debounce_watch.scheduler.subprocess.run") as mock:
        mock.return_value.returncode = 0
        yield mock


@pytest.fixture
def mock_sleep(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Mock time.sleep to skip the inline half-delay."""
    mock = MagicMock()
    monkeypatch.setattr("time.sleep", mock)
    return mock


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("debounce_watch.watcher.Observer") as mock:
        mock.return_value.is_alive.return_value = True
        yield mock


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def make_config(temp_dir: Path) -> Callable[..., Config]:
    """Factory for Config objects watching the temporary directory."""
    def _make(**overrides: object) -> Config:
        values = {
            "delay": 10,
            "directories": [str(temp_dir)],
            "command": ["make", "html"],
            "shell": False,
            "log_file": None,
            "log_level": "INFO",
        }
        values.update(overrides)
        return Config(**values)  # type: ignore[arg-type]
    return _make


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it is true or the timeout elapses."""
    def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            event.wait(0.02)
        return predicate()
    event = threading.Event()
    return _wait


@pytest.fixture(autouse=True)
def restore_root_logging() -> Generator[None, None, None]:
    """Undo logging.basicConfig(force=True) calls made by main()."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
