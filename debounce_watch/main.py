"""Main entry point for debounce-watch.

This module handles the command-line interface (CLI), configuration loading,
logging setup and the process lifecycle around the watch loop.

Modes:
    - ``service``: Print a systemd unit that runs ``monitor`` with the same
      arguments, then exit.
    - ``monitor``: Watch the directories and run the command after each
      quiet period until SIGINT/SIGTERM.

Exit Codes:
    - 0: Success.
    - 1: Watch capability unavailable (watchdog missing, observer failed to
      start) or missing/unknown mode (usage is printed).
    - 2: Missing or malformed arguments.
    - 3: A watched directory does not exist.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import Dict, List, Optional, TextIO

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

EXIT_WATCH_UNAVAILABLE = 1
EXIT_USAGE = 2
EXIT_MISSING_DIRECTORY = 3

MODES = ("service", "monitor")

try:
    from debounce_watch import __version__
    from debounce_watch.config import Config, MissingDirectoryError, load_config
    from debounce_watch.scheduler import DebounceScheduler
    from debounce_watch.service import render_unit
    from debounce_watch.watcher import WatchLoop
except ImportError as e:
    # Check if it's a missing dependency
    if "watchdog" in str(e):
        sys.exit(f"Error: Missing dependency: {e}. Please install required packages.")
    raise

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str], stream: Optional[TextIO] = None) -> None:
    """Configure the logging system.

    Sets up console logging and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Scheduler transitions (event received, action
              canceled, scheduled, performed) and startup.
            - ``WARNING``: Recoverable issues (cancellation miss, non-zero
              exit status of the command).
            - ``ERROR``: Failures (command could not start, observer errors).
            - ``DEBUG``: Raw events and diagnostics.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file.
        stream (Optional[TextIO]): Console stream. Defaults to stdout.

    Returns:
        None

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(
        LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT  # ISO 8601 format
    )

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Fallback to console only, but print warning to stderr since logging isn't setup yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser.

    Returns:
        argparse.ArgumentParser: The top-level parser; the ``service`` and
        ``monitor`` subparsers share the same arguments.
    """
    parser = argparse.ArgumentParser(
        prog="debounce-watch",
        description="Run a command once the watched directories have been quiet for a while.",
        epilog="Options must come before DEBOUNCE_SECONDS; everything after PATHS is the command.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="mode", metavar="MODE")

    for mode, help_text in (
        ("service", "Print a systemd unit that runs 'monitor' with these arguments."),
        ("monitor", "Watch PATHS and run COMMAND after DEBOUNCE_SECONDS of inactivity."),
    ):
        sub = subparsers.add_parser(mode, help=help_text, description=help_text)
        sub.set_defaults(subparser=sub)
        sub.add_argument(
            "--shell",
            action="store_const",
            const=True,
            default=None,
            help="Run COMMAND through the system shell (allows pipes, &&, redirection).",
        )
        sub.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
        sub.add_argument(
            "--log-level",
            type=str,
            default=None,
            help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
        )
        sub.add_argument(
            "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
        )
        sub.add_argument("delay", metavar="DEBOUNCE_SECONDS", help="Seconds of inactivity before running COMMAND.")
        sub.add_argument("paths", metavar="PATHS", help="Comma-separated list of directories to watch recursively.")
        sub.add_argument("command", metavar="COMMAND", nargs=argparse.REMAINDER, help="The command to run and its arguments.")

    return parser


def run_monitor(config: Config) -> None:
    """Run the watch loop until a shutdown signal arrives.

    Args:
        config (Config): The validated configuration.

    Returns:
        None

    Raises:
        SystemExit: With code 1 if the observer cannot be started or dies,
            or code 3 if a directory disappeared before watching started.
    """
    scheduler = DebounceScheduler(config.delay, config.command, shell=config.shell)
    loop = WatchLoop(config.directories, scheduler)

    def cleanup() -> None:
        """Stop the observer, cancel the pending action and log statistics.

        Registered via `atexit` and called from the finally block; exceptions
        are logged so the process exits as cleanly as possible.

        Returns:
            None
        """
        try:
            loop.stop()
        except Exception as e:
            logger.error(f"Error stopping watcher in cleanup: {e}")
        try:
            scheduler.shutdown()
        except Exception as e:
            logger.error(f"Error stopping scheduler in cleanup: {e}")
        stats = scheduler.get_statistics()
        logger.info(
            f"Events={stats['events_received']}, Scheduled={stats['actions_scheduled']}, "
            f"Canceled={stats['actions_canceled']}, Fired={stats['actions_fired']}, "
            f"Failures={stats['action_failures']}"
        )

    atexit.register(cleanup)

    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        """Handle SIGINT/SIGTERM by setting the stop event.

        Args:
            sig (int): The signal number.
            frame (Optional[FrameType]): The current stack frame (unused).

        Returns:
            None
        """
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        try:
            loop.start()
        except FileNotFoundError as e:
            logger.error(f"Configuration Error: {e}")
            sys.exit(EXIT_MISSING_DIRECTORY)
        except (OSError, RuntimeError) as e:
            logger.critical(f"Watch capability unavailable: {e}")
            sys.exit(EXIT_WATCH_UNAVAILABLE)

        logger.info(
            f"Running {config.command} after {config.delay}s of inactivity "
            f"(shell={'yes' if config.shell else 'no'})"
        )
        loop.run(stop_event)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except RuntimeError as e:
        logger.critical(f"Watch capability lost: {e}")
        sys.exit(EXIT_WATCH_UNAVAILABLE)
    finally:
        cleanup()
        atexit.unregister(cleanup)


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Args:
        argv (Optional[List[str]]): Arguments without the program name.
            Defaults to ``sys.argv[1:]``.

    Returns:
        None: The function returns None but may exit the process with a status code.

    Raises:
        SystemExit: See the module docstring for exit codes.

    Example:
        $ debounce-watch monitor 10 ./src,./templates make html
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    if not argv or (argv[0] not in MODES and argv[0] not in ("-h", "--help", "--version")):
        parser.print_help()
        sys.exit(1)

    args = parser.parse_args(argv)
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        args.subparser.error("the following arguments are required: COMMAND")
    args.command = command

    # Bootstrap logging to capture config loading events; keep stdout clean for the unit file
    console = sys.stderr if args.mode == "service" else sys.stdout
    bootstrap_formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    bootstrap_handler = logging.StreamHandler(console)
    bootstrap_handler.setFormatter(bootstrap_formatter)
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    cli_values: Dict[str, object] = vars(args)
    cli_values.pop("subparser", None)
    try:
        config = load_config(cli_values)
        logger.debug(f"Configuration loaded: {config}")
    except MissingDirectoryError as e:
        logger.error(f"Configuration Error: {e}")
        sys.exit(EXIT_MISSING_DIRECTORY)
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        sys.exit(EXIT_USAGE)

    if args.mode == "service":
        sys.stdout.write(render_unit(config))
        return

    try:
        setup_logging(config.log_level, config.log_file, stream=console)
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        sys.exit(EXIT_USAGE)

    logger.info(f"Starting debounce-watch v{__version__} (PID: {os.getpid()})...")
    run_monitor(config)


if __name__ == "__main__":
    main()
