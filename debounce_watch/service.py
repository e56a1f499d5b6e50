"""Render a systemd user unit that runs the watcher as a service.

The unit re-invokes this program in ``monitor`` mode with the same delay,
directories, command and logging options, so a configuration that works on
the command line can be installed unchanged.
"""

from __future__ import annotations

import os
import shlex
import shutil
import sys
from typing import List, Optional, Sequence

from debounce_watch.config import Config

__all__ = ["quote_exec_args", "render_unit", "resolve_executable"]

SCRIPT_NAME = "debounce-watch"


def resolve_executable() -> List[str]:
    """Return the command prefix that starts this program.

    Prefers the installed console script and falls back to running the
    package with the current interpreter.

    Returns:
        List[str]: The executable and any leading arguments.
    """
    script = shutil.which(SCRIPT_NAME)
    if script:
        return [os.path.abspath(script)]
    return [sys.executable, "-m", "debounce_watch"]


def quote_exec_args(args: Sequence[str]) -> str:
    """Quote arguments for an ``ExecStart=`` line.

    systemd accepts shell-style quoting but expands ``%`` specifiers and
    ``$`` variables, so both are doubled. It also applies C-style escapes
    inside quotes, so backslashes are doubled and newlines written as ``\\n``.

    Args:
        args (Sequence[str]): The argument vector.

    Returns:
        str: The quoted command line.

    Example:
        >>> quote_exec_args(["echo", "50%", "$HOME"])
        "echo 50%% '$$HOME'"
    """
    quoted = []
    for arg in args:
        arg = shlex.quote(arg.replace("\\", "\\\\").replace("\n", "\\n"))
        quoted.append(arg.replace("%", "%%").replace("$", "$$"))
    return " ".join(quoted)


def render_unit(config: Config, executable: Optional[Sequence[str]] = None) -> str:
    """Render the unit file for a configuration.

    Args:
        config (Config): The validated configuration to run as a service.
        executable (Optional[Sequence[str]]): Command prefix that starts this
            program. Defaults to :func:`resolve_executable`.

    Returns:
        str: The unit file contents, including installation instructions as
        comments.
    """
    exec_args = list(executable) if executable else resolve_executable()
    exec_args.append("monitor")
    if config.shell:
        exec_args.append("--shell")
    if config.log_level != "INFO":
        exec_args.extend(["--log-level", config.log_level])
    if config.log_file:
        exec_args.extend(["--log-file", config.log_file])
    exec_args.extend([str(config.delay), ",".join(config.directories)])
    exec_args.extend(config.command)

    unit_name = f"{SCRIPT_NAME}.service"
    # Unit settings are single-line
    description = f"Run {shlex.join(config.command)} after changes in {', '.join(config.directories)}"
    description = description.replace("\n", " ")
    lines = [
        f"# Save as ~/.config/systemd/user/{unit_name}, then run:",
        "#   systemctl --user daemon-reload",
        f"#   systemctl --user enable --now {unit_name}",
        f"# Follow the log with: journalctl --user -u {unit_name} -f",
        "",
        "[Unit]",
        f"Description={description.replace('%', '%%')}",
        "After=local-fs.target",
        "",
        "[Service]",
        "Type=simple",
        f"WorkingDirectory={os.getcwd().replace('%', '%%')}",
        f"ExecStart={quote_exec_args(exec_args)}",
        "Restart=on-failure",
        "RestartSec=5",
        "",
        "[Install]",
        "WantedBy=default.target",
    ]
    return "\n".join(lines) + "\n"
