#!/usr/bin/env python3
"""
runat.py

Run a single shell command at a later time, with an optional countdown,
optional detaching into the background, and listing/killing of pending jobs.
"""

from __future__ import annotations

import argparse
import enum
import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, TextIO, Tuple

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    import dateparser
except ImportError:  # pragma: no cover - dependency check at runtime
    dateparser = None

try:
    import psutil
except ImportError:  # pragma: no cover - dependency check at runtime
    psutil = None


PROGRAM_PATH = Path(__file__).resolve()
PROGRAM_NAMES = {"run-at", "runat.py"}
MODULE_NAME = "runat"
CONFIG_ENV_VAR = "RUN_AT_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/run-at/config.yaml")
DEFAULT_SHELL = "bash"
DEFAULT_POLL_SECONDS = 0.99
DEFAULT_LOG_LEVEL = "WARNING"
SECONDS_PER_DAY = 86400
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

USAGE = "usage: run-at [-b] [-h] [-k pid] [-l] [-c config] [time] [command]"
HELP_TEXT = f"""{USAGE}

Schedule a command or script to run at a later time. It is similar in some
ways to the "at" command, but the command runs in a shell ({DEFAULT_SHELL} by
default) and the job lives only as long as its own process.

By default run-at stays in the foreground and shows a countdown timer. Pass
"-b" to run the countdown and the scheduled command in the background.

    -b          Run countdown and scheduled command in background, then exit.
                The following info will be returned:
                <pid> <run-at path> <scheduled time> <command to be run>

    -h          Display this help and exit.

    -k <pid>    Kill scheduled command with given pid and exit.

    -l          List all currently scheduled commands and exit.
                Commands are shown with the following structure:
                <pid> <run-at path> <scheduled time> <command to be run>

    -c <file>   Read settings from a YAML config file
                (default: ${CONFIG_ENV_VAR} or {DEFAULT_CONFIG_PATH}).

If <scheduled time> and <command to be run> are not given, you will be
prompted for them.

<scheduled time> accepts absolute and relative dates such as "14:30",
"tomorrow 9am" or "in 10 minutes". If it has any spaces, it must be quoted.
A time that has already passed today is moved to the same time tomorrow.

If <command to be run> includes pipes or redirections, quote it.

Background output is written to run-at-<HH-MM-SS>.log in your home directory.
"""


class RunAtError(Exception):
    """Base error for run-at."""


class ConfigError(RunAtError):
    """Config validation error."""


class MissingDependency(RunAtError):
    """A required third-party package is not installed."""


class InvalidTimeExpression(RunAtError):
    def __init__(self, expression: str):
        super().__init__(f'Error: Could not parse time "{expression}".')
        self.expression = expression


class UnknownPid(RunAtError):
    def __init__(self, pid: Any):
        super().__init__(f'Error: "{pid}" is not a valid run-at pid')
        self.pid = pid


class InvalidOption(RunAtError):
    """Unrecognized command-line flag."""


logger = logging.getLogger("runat")


def setup_logging(level: str = DEFAULT_LOG_LEVEL, log_file: Optional[Path] = None) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def require_dependency(module: Any, package: str) -> None:
    if module is None:
        raise MissingDependency(f"Missing required dependency: {package}. Install with: pip install {package}")


@dataclass(frozen=True)
class RunAtConfig:
    shell: str = DEFAULT_SHELL
    log_dir: Path = Path.home()
    poll_interval: float = DEFAULT_POLL_SECONDS
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[Path] = None
    source: Optional[Path] = None


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_float(value: Any, field_path: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    return float(value)


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path)).expanduser()
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    return resolved.resolve()


def locate_config(explicit: Optional[str]) -> Optional[Path]:
    if explicit:
        return Path(explicit).expanduser().resolve()
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser().resolve()
    default = DEFAULT_CONFIG_PATH.expanduser()
    return default.resolve() if default.exists() else None


def load_config(config_path: Optional[Path]) -> RunAtConfig:
    if config_path is None:
        return RunAtConfig()
    require_dependency(yaml, "PyYAML")
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")

    unknown = set(payload.keys()) - {"shell", "log_dir", "poll_interval", "log_level", "log_file"}
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")

    config_dir = config_path.parent
    shell = ensure_str(payload.get("shell", DEFAULT_SHELL), "shell")
    log_dir = (
        _resolve_path(payload["log_dir"], config_dir, "log_dir") if payload.get("log_dir") is not None else Path.home()
    )
    poll_interval = ensure_float(payload.get("poll_interval"), "poll_interval", DEFAULT_POLL_SECONDS)
    log_level = ensure_str(payload.get("log_level", DEFAULT_LOG_LEVEL), "log_level").upper()
    if log_level not in VALID_LOG_LEVELS:
        raise ConfigError(f'Error: log_level must be one of {sorted(VALID_LOG_LEVELS)}, got "{log_level}".')
    log_file = (
        _resolve_path(payload["log_file"], config_dir, "log_file") if payload.get("log_file") is not None else None
    )

    return RunAtConfig(
        shell=shell,
        log_dir=log_dir,
        poll_interval=poll_interval,
        log_level=log_level,
        log_file=log_file,
        source=config_path,
    )


@dataclass(frozen=True)
class ScheduleRequest:
    time_expression: str
    command: str
    run_in_foreground: bool = True


@dataclass(frozen=True)
class Deadline:
    epoch_seconds: int
    human_readable: str

    @property
    def filesafe(self) -> str:
        return self.human_readable.replace(":", "-")

    @staticmethod
    def from_epoch(epoch_seconds: int) -> "Deadline":
        readable = datetime.fromtimestamp(epoch_seconds).strftime("%H:%M:%S")
        return Deadline(epoch_seconds=epoch_seconds, human_readable=readable)


def parse_time_expression(expression: str, now: int) -> Optional[int]:
    """Parse a natural-language or absolute date string into an epoch.

    Relative expressions are anchored at ``now``. Returns None when the text
    is not a date.
    """
    require_dependency(dateparser, "dateparser")
    parsed = dateparser.parse(
        expression,
        settings={"RELATIVE_BASE": datetime.fromtimestamp(now)},
    )
    if parsed is None:
        return None
    return int(parsed.timestamp())


def resolve_deadline(
    expression: str,
    now: int,
    parser: Callable[[str, int], Optional[int]] = parse_time_expression,
) -> Deadline:
    if not expression or not expression.strip():
        raise InvalidTimeExpression(expression)
    candidate = parser(expression.strip(), now)
    if candidate is None:
        raise InvalidTimeExpression(expression)
    if candidate < now:
        # Assume the time refers to the next day.
        candidate += SECONDS_PER_DAY
    return Deadline.from_epoch(candidate)


@dataclass(frozen=True)
class ScheduledProcessRecord:
    pid: int
    executable_path: str
    scheduled_time: str
    command: str

    def identity_line(self) -> str:
        return identity_line(self.pid, self.executable_path, self.scheduled_time, self.command)


def identity_line(pid: int, path: Any, scheduled_time: str, command: str) -> str:
    return f"{pid} {path} {scheduled_time} {command}"


def _is_python(arg: str) -> bool:
    return os.path.basename(arg).lower().startswith("python")


def _program_index(cmdline: List[str]) -> Optional[int]:
    # Only the executable itself, or the script/module an interpreter runs,
    # identifies an instance; later arguments are just data.
    if not cmdline:
        return None
    if os.path.basename(cmdline[0]) in PROGRAM_NAMES:
        return 0
    if not _is_python(cmdline[0]) or len(cmdline) < 2:
        return None
    if os.path.basename(cmdline[1]) in PROGRAM_NAMES:
        return 1
    if cmdline[1] == "-m" and len(cmdline) > 2 and cmdline[2] == MODULE_NAME:
        return 2
    return None


def parse_process_record(pid: int, cmdline: List[str]) -> Optional[ScheduledProcessRecord]:
    """Build a record from a process argv, or None if it is not a pending job."""
    idx = _program_index(cmdline)
    if idx is None:
        return None

    args = cmdline[idx + 1 :]
    pos = 0
    while pos < len(args) and args[pos].startswith("-") and args[pos] != "-":
        flag = args[pos]
        if flag in ("-c", "--config"):
            pos += 2
        elif flag == "-b":
            pos += 1
        else:
            # -l, -k, -h and anything else: not a scheduled job.
            return None

    positionals = args[pos:]
    if not positionals or not positionals[0].strip():
        return None
    return ScheduledProcessRecord(
        pid=pid,
        executable_path=cmdline[idx],
        scheduled_time=positionals[0],
        command=" ".join(positionals[1:]),
    )


class ProcessRegistry:
    """Read-only view of the running run-at instances.

    The process table is the registry: records are rebuilt on every call and
    nothing is cached.
    """

    def snapshot(self) -> Iterable[Tuple[int, List[str]]]:
        raise NotImplementedError

    def terminate(self, pid: int) -> None:
        raise NotImplementedError

    def list_scheduled(self) -> List[ScheduledProcessRecord]:
        records: List[ScheduledProcessRecord] = []
        for pid, cmdline in self.snapshot():
            record = parse_process_record(pid, cmdline)
            if record is not None:
                records.append(record)
        return records

    def is_scheduled_pid(self, pid: int) -> bool:
        return any(record.pid == pid for record in self.list_scheduled())

    def kill_scheduled(self, pid: int) -> None:
        if not self.is_scheduled_pid(pid):
            raise UnknownPid(pid)
        logger.info("Sending SIGTERM to scheduled job %s", pid)
        self.terminate(pid)


class SystemProcessRegistry(ProcessRegistry):
    def __init__(self) -> None:
        require_dependency(psutil, "psutil")
        self._own_pid = os.getpid()

    def snapshot(self) -> Iterable[Tuple[int, List[str]]]:
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                info = proc.info
                pid = info["pid"]
                cmdline = info.get("cmdline") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if pid == self._own_pid or not cmdline:
                continue
            yield pid, list(cmdline)

    def terminate(self, pid: int) -> None:
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess as exc:
            raise UnknownPid(pid) from exc


def format_remaining(seconds: float) -> str:
    return time.strftime("%H:%M:%S", time.gmtime(max(0, int(seconds))))


def countdown(
    deadline: Deadline,
    visible: bool,
    *,
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    stream: Optional[TextIO] = None,
    interval: float = DEFAULT_POLL_SECONDS,
) -> None:
    """Block until ``clock() >= deadline.epoch_seconds``.

    When visible, the remaining time is redrawn on a single terminal line once
    per poll and the line is cleared on return. There is no cancellation hook;
    a pending job is cancelled by terminating its process.
    """
    clock = clock or time.time
    sleep = sleep or time.sleep
    out = stream or sys.stdout

    while True:
        remaining = deadline.epoch_seconds - clock()
        if remaining <= 0:
            break
        if visible:
            out.write(f"\r{format_remaining(remaining)} until execution...")
            out.flush()
        sleep(interval)

    if visible:
        out.write("\r\033[K")
        out.flush()


class RunMode(enum.Enum):
    FOREGROUND_VISIBLE = "foreground-visible"
    FOREGROUND_SILENT = "foreground-silent"
    BACKGROUND = "background"


def is_attached() -> bool:
    """True if this process is in the foreground job of its controlling terminal."""
    try:
        fd = os.open("/dev/tty", os.O_RDONLY)
    except OSError:
        return False
    try:
        return os.tcgetpgrp(fd) == os.getpgrp()
    except OSError:
        return False
    finally:
        os.close(fd)


def choose_run_mode(request: ScheduleRequest, attached: bool) -> RunMode:
    if not attached:
        return RunMode.FOREGROUND_SILENT
    if request.run_in_foreground:
        return RunMode.FOREGROUND_VISIBLE
    return RunMode.BACKGROUND


def background_log_path(deadline: Deadline, log_dir: Path) -> Path:
    return log_dir / f"run-at-{deadline.filesafe}.log"


def build_child_argv(request: ScheduleRequest, config: RunAtConfig) -> List[str]:
    argv = [sys.executable, str(PROGRAM_PATH)]
    if config.source is not None:
        argv.extend(["-c", str(config.source)])
    argv.extend([request.time_expression, request.command])
    return argv


def spawn_detached(argv: List[str], log_path: Path) -> int:
    """Start ``argv`` in a new session with output going to ``log_path``.

    Returns the child's pid without waiting for it.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("ab") as log_handle:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )
    logger.info("Spawned detached job pid=%s log=%s", proc.pid, log_path)
    return proc.pid


def dispatch_command(
    command: str,
    shell: str,
    *,
    visible: bool,
    clock: Optional[Callable[[], float]] = None,
    replace: bool = True,
) -> int:
    clock = clock or time.time
    if visible:
        started = datetime.fromtimestamp(clock()).strftime("%H:%M:%S")
        print(f"Started at {started}\n")
    sys.stdout.flush()
    sys.stderr.flush()

    argv = [shell, "-c", command]
    logger.info("Dispatching: %s", command)
    if replace and hasattr(os, "execvp"):
        for handler in logger.handlers:
            handler.flush()
        os.execvp(shell, argv)
    result = subprocess.run(argv, check=False)
    return result.returncode


def prompt_for_time() -> str:
    print("Enter desired run time:")
    return input("> ")


def prompt_for_command() -> Tuple[str, bool]:
    print("Enter command or script to run:")
    command = input("> ")
    answer = input("Run output background [0] or foreground [1]? ").strip()
    print()
    return command, answer != "0"


def build_request(time_arg: Optional[str], command_args: List[str], background: bool) -> ScheduleRequest:
    if time_arg is None:
        time_expression = prompt_for_time()
        command, foreground = prompt_for_command()
    elif not command_args:
        time_expression = time_arg
        command, foreground = prompt_for_command()
    else:
        time_expression = time_arg
        command = " ".join(command_args)
        foreground = True
    if background:
        foreground = False
    return ScheduleRequest(time_expression=time_expression, command=command, run_in_foreground=foreground)


def command_list(registry: ProcessRegistry) -> int:
    for record in registry.list_scheduled():
        print(record.identity_line())
    return 0


def command_kill(registry: ProcessRegistry, raw_pid: str) -> int:
    try:
        pid = int(raw_pid)
        registry.kill_scheduled(pid)
    except ValueError:
        print(UnknownPid(raw_pid))
    except UnknownPid as exc:
        print(exc)
    return 0


def command_schedule(request: ScheduleRequest, config: RunAtConfig) -> int:
    now = int(time.time())
    deadline = resolve_deadline(request.time_expression, now)
    logger.info(
        "Resolved %r to %s (epoch %s)",
        request.time_expression,
        deadline.human_readable,
        deadline.epoch_seconds,
    )

    mode = choose_run_mode(request, is_attached())
    if mode is RunMode.BACKGROUND:
        log_path = background_log_path(deadline, config.log_dir)
        pid = spawn_detached(build_child_argv(request, config), log_path)
        print(identity_line(pid, PROGRAM_PATH, request.time_expression, request.command))
        return 0

    visible = mode is RunMode.FOREGROUND_VISIBLE
    if visible:
        print(f"'{request.command}' will run at {deadline.human_readable}")

    try:
        countdown(deadline, visible, interval=config.poll_interval)
    except KeyboardInterrupt:
        if visible:
            sys.stdout.write("\r\033[K")
        logger.info("Countdown interrupted by user.")
        return 130

    return dispatch_command(request.command, config.shell, visible=visible)


class RunAtArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise InvalidOption(message)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = RunAtArgumentParser(prog="run-at", add_help=False, allow_abbrev=False)
    parser.add_argument("-b", dest="background", action="store_true")
    parser.add_argument("-h", dest="help", action="store_true")
    parser.add_argument("-k", dest="kill", metavar="pid")
    parser.add_argument("-l", dest="list", action="store_true")
    parser.add_argument("-c", "--config", dest="config")
    parser.add_argument("time", nargs="?")
    parser.add_argument("command", nargs=argparse.REMAINDER)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except InvalidOption as exc:
        print(USAGE)
        logger.debug("Invalid option: %s", exc)
        return 1

    if args.help:
        print(HELP_TEXT)
        return 0

    try:
        config = load_config(locate_config(args.config))
        setup_logging(config.log_level, config.log_file)
        if config.source is not None:
            logger.info("Loaded config from %s", config.source)

        if args.kill is not None:
            return command_kill(SystemProcessRegistry(), args.kill)
        if args.list:
            return command_list(SystemProcessRegistry())

        request = build_request(args.time, list(args.command or []), args.background)
        return command_schedule(request, config)
    except RunAtError as exc:
        setup_logging()
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        setup_logging()
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
