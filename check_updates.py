#!/usr/bin/env python3
"""
check_updates.py

Nagios-style check for pending system updates via PackageKit, with optional
apply, lock-file mutual exclusion and cron-style run gating.
"""

from __future__ import annotations

import argparse
import asyncio
import fcntl
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import CroniterBadDateError, croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None

from update_service import (
    DEFAULT_APPLY_TIMEOUT_SECONDS,
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_GRACE_SECONDS,
    CancellationCoordinator,
    PackageKitService,
    SelectionMismatchError,
    ServiceError,
    TransactionPhase,
    TransactionState,
    UpdateInfo,
    UpdateService,
    UpdateServiceClient,
    select_updates,
)


__version__ = "0.1.0"

DEFAULT_WARNING = 10
DEFAULT_CRITICAL = 20
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)

SCHEDULE_ALIASES = {
    "@hourly": "0 * * *",
    "@daily": "0 0 * *",
    "@midnight": "0 0 * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 *",
    "@annually": "0 0 1 1",
    "@yearly": "0 0 1 1",
}
# name, min, max. A step */n matches min, min+n, min+2n... (croniter), so
# "*/2" in the day field means days 1, 3, 5 rather than 2, 4, 6.
SCHEDULE_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)
DAYS_IN_MONTH = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}

CONFIG_KEYS = {
    "lock",
    "cron",
    "warning",
    "critical",
    "security_update",
    "update",
    "yes",
    "refresh",
    "timeout",
    "apply_timeout",
    "grace_seconds",
    "timezone",
    "report_skip",
    "log_file",
}


class CheckUpdatesError(Exception):
    """Base error for check_updates."""


class ConfigError(CheckUpdatesError):
    """Config validation error."""


class ScheduleParseError(ConfigError):
    """Malformed schedule expression."""

    def __init__(self, token: str, reason: str):
        self.token = token
        super().__init__(f'Error: Invalid schedule token "{token}": {reason}.')


class LockBusyError(CheckUpdatesError):
    """Another process holds the lock file."""


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> logging.Logger:
    root = logging.getLogger("check_updates")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)
    # stdout carries the status line only.
    if not root.handlers:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    if log_file is not None and not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    return root


logger = logging.getLogger("check_updates")


def require_yaml_dependency() -> None:
    if yaml is None:
        raise CheckUpdatesError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def require_croniter_dependency() -> None:
    if croniter is None:
        raise CheckUpdatesError("Missing required dependency: croniter. Install with: pip install croniter")


@dataclass(frozen=True)
class CronField:
    kind: str  # any | value | step
    value: Optional[int] = None

    @property
    def token(self) -> str:
        if self.kind == "value":
            return str(self.value)
        if self.kind == "step":
            return f"*/{self.value}"
        return "*"


@dataclass(frozen=True)
class ScheduleSpec:
    minute: CronField
    hour: CronField
    day: CronField
    month: CronField
    weekday: CronField = CronField("any")
    source: str = ""

    @property
    def cron_expr(self) -> str:
        return " ".join(f.token for f in (self.minute, self.hour, self.day, self.month, self.weekday))


@dataclass(frozen=True)
class Thresholds:
    warning: int
    critical: int


@dataclass(frozen=True)
class Config:
    lock_path: Optional[Path]
    schedule: Optional[ScheduleSpec]
    thresholds: Thresholds
    apply_updates: bool = False
    apply_security_updates: bool = False
    assume_yes: bool = False
    refresh: bool = False
    call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS
    apply_timeout: float = DEFAULT_APPLY_TIMEOUT_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    timezone: Optional[ZoneInfo] = None
    report_skip: bool = False
    log_file: Optional[Path] = None
    verbose: bool = False

    @property
    def apply_requested(self) -> bool:
        return self.apply_updates or self.apply_security_updates

    @property
    def security_only(self) -> bool:
        return self.apply_security_updates and not self.apply_updates


class Severity(Enum):
    OK = 0
    WARNING = 1
    CRITICAL = 2
    UNKNOWN = 3

    @property
    def exit_code(self) -> int:
        return self.value


@dataclass(frozen=True)
class UpdateCounts:
    total: int
    security: int


@dataclass(frozen=True)
class ExitDecision:
    severity: Severity
    message: str
    counts: Optional[UpdateCounts] = None

    @property
    def code(self) -> int:
        return self.severity.exit_code


@dataclass
class CheckRun:
    updates: Optional[List[UpdateInfo]] = None
    decision: Optional[ExitDecision] = None
    completed: bool = False
    outcome: Optional[TransactionState] = None


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_seconds(value: Any, field_path: str, default: float) -> float:
    if value is None:
        return default
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be a number of seconds.")
    if value <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


# ---------------------------------------------------------------------------
# Schedule expressions
# ---------------------------------------------------------------------------


def parse_schedule(text: str) -> ScheduleSpec:
    if not isinstance(text, str) or not text.strip():
        raise ScheduleParseError(str(text), "schedule expression is empty")
    raw = text.strip()
    expanded = SCHEDULE_ALIASES.get(raw.lower(), raw)
    if expanded.startswith("@"):
        raise ScheduleParseError(raw, f"unknown alias, expected one of {sorted(SCHEDULE_ALIASES)}")

    parts = expanded.split()
    if len(parts) not in (4, 5):
        raise ScheduleParseError(raw, f"expected 4 or 5 fields, got {len(parts)}")
    if len(parts) == 4:
        parts.append("*")

    fields = [
        _parse_field(token, name, minimum, maximum)
        for token, (name, minimum, maximum) in zip(parts, SCHEDULE_FIELDS)
    ]
    minute, hour, day, month, weekday = fields

    if day.kind == "value" and month.kind == "value" and day.value > DAYS_IN_MONTH[month.value]:
        raise ScheduleParseError(
            f"{day.token} {month.token}",
            f"day {day.value} never occurs in month {month.value}",
        )

    return ScheduleSpec(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        weekday=weekday,
        source=raw,
    )


def _parse_field(token: str, name: str, minimum: int, maximum: int) -> CronField:
    if token == "*":
        return CronField("any")
    if token.startswith("*/"):
        step_text = token[2:]
        if not step_text.isdigit() or int(step_text) <= 0:
            raise ScheduleParseError(token, f"{name} step must be a positive integer")
        step = int(step_text)
        if step > maximum - minimum + 1:
            raise ScheduleParseError(token, f"{name} step larger than {maximum - minimum + 1}")
        return CronField("step", step)
    if not token.isdigit():
        raise ScheduleParseError(token, f"{name} must be *, */n or a number")
    value = int(token)
    if value < minimum or value > maximum:
        raise ScheduleParseError(token, f"{name} out of range {minimum}-{maximum}")
    return CronField("value", value)


def describe_schedule(spec: ScheduleSpec) -> str:
    if spec.source and spec.source.startswith("@"):
        return f"{spec.source} ({spec.cron_expr})"
    return spec.cron_expr


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.astimezone()
    return value


def is_due(spec: ScheduleSpec, last_run: Optional[datetime], now: datetime) -> bool:
    """
    True when a schedule-matching minute lies in (last_run, now].

    The most recent match at or before ``now`` is found by stepping back from
    the start of the following minute, so a match at exactly ``now``'s minute
    counts.
    """
    if last_run is None:
        return True
    require_croniter_dependency()
    now = _ensure_aware(now)
    last_run = _ensure_aware(last_run).astimezone(now.tzinfo)
    # Step in UTC so an ambiguous wall time (fold=1) keeps its offset.
    anchor_utc = now.astimezone(timezone.utc).replace(second=0, microsecond=0) + timedelta(minutes=1)
    anchor = anchor_utc.astimezone(now.tzinfo)
    try:
        previous = croniter(spec.cron_expr, anchor, day_or=False).get_prev(datetime)
    except CroniterBadDateError:
        logger.warning("Schedule %s has no matching instant before %s.", spec.cron_expr, now.isoformat())
        return False
    if previous.tzinfo is None:
        previous = previous.replace(tzinfo=now.tzinfo)
    return previous > last_run


# ---------------------------------------------------------------------------
# Run guard
# ---------------------------------------------------------------------------


class RunGuard:
    """
    Exclusive advisory lock on a file whose mtime records the last run that
    was allowed to proceed.

    The kernel drops a flock when the descriptor closes, so the lock is
    released on every exit path, signals included. Only a completed run
    writes to the file, so an empty lock file reads back as "never ran"
    no matter which process created it.
    """

    def __init__(self, path: Path, fd: int):
        self.path = path
        self._fd: Optional[int] = fd

    @classmethod
    def acquire(cls, path: Path) -> "RunGuard":
        path = Path(path)
        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise CheckUpdatesError(f"Error: Failed to open lock file {path}: {exc}") from exc

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise LockBusyError(f"Lock file {path} is held by another process.") from exc
        except OSError as exc:
            os.close(fd)
            raise CheckUpdatesError(f"Error: Failed to lock {path}: {exc}") from exc
        logger.debug("Acquired lock %s", path)
        return cls(path, fd)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def last_run(self) -> Optional[datetime]:
        stat = os.fstat(self._require_fd())
        if stat.st_size == 0:
            return None
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

    def mark_run_complete(self, now: datetime) -> None:
        fd = self._require_fd()
        now = _ensure_aware(now)
        stamp = now.timestamp()
        os.ftruncate(fd, 0)
        os.pwrite(fd, f"{now.isoformat()}\n".encode("utf-8"), 0)
        os.utime(fd, times=(stamp, stamp))
        logger.debug("Recorded run at %s in %s", now.isoformat(), self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released lock %s", self.path)

    def _require_fd(self) -> int:
        if self._fd is None:
            raise CheckUpdatesError(f"Lock {self.path} is not held.")
        return self._fd

    def __enter__(self) -> "RunGuard":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.release()


# ---------------------------------------------------------------------------
# Result reporting
# ---------------------------------------------------------------------------


def count_updates(updates: Sequence[UpdateInfo]) -> UpdateCounts:
    return UpdateCounts(
        total=len(updates),
        security=sum(1 for update in updates if update.is_security),
    )


def format_summary(counts: UpdateCounts) -> str:
    return (
        f"Security-Update = {counts.security} | "
        f"'Total Update' = {counts.total} 'Security Update' = {counts.security}"
    )


def threshold_severity(security: int, thresholds: Thresholds) -> Severity:
    if security > thresholds.critical:
        return Severity.CRITICAL
    if security > thresholds.warning:
        return Severity.WARNING
    return Severity.OK


def decide(
    counts: UpdateCounts,
    thresholds: Thresholds,
    apply_outcome: Optional[TransactionState] = None,
    notes: Sequence[str] = (),
) -> ExitDecision:
    lines = [format_summary(counts)]
    if apply_outcome is not None and apply_outcome.unsuccessful:
        severity = Severity.CRITICAL
        if apply_outcome.phase is TransactionPhase.CANCELLED:
            lines.append(f"Apply cancelled: {apply_outcome.reason or 'cancelled by the update service'}")
        else:
            lines.append(f"Apply failed: {apply_outcome.reason}")
    else:
        severity = threshold_severity(counts.security, thresholds)
    lines.extend(notes)
    return ExitDecision(severity=severity, message="\n".join(lines), counts=counts)


def error_decision(cause: str) -> ExitDecision:
    return ExitDecision(severity=Severity.UNKNOWN, message=cause)


def interrupted_decision(counts: Optional[UpdateCounts], forced: bool) -> ExitDecision:
    if forced:
        cause = "Interrupted: forced shutdown, the update transaction may be left in an indeterminate state"
    else:
        cause = "Operation cancelled"
    if counts is None:
        return ExitDecision(severity=Severity.CRITICAL, message=cause)
    return ExitDecision(
        severity=Severity.CRITICAL,
        message=f"{format_summary(counts)}\n{cause}",
        counts=counts,
    )


def render(decision: ExitDecision, updates: Optional[Sequence[UpdateInfo]] = None) -> str:
    lines = [f"UPDATE {decision.severity.name} - {decision.message}"]
    if decision.counts is not None and updates is not None:
        lines.append("Pending updates:")
        for update in updates:
            tag = " (SECURITY)" if update.is_security else ""
            lines.append(f"{update.name} {update.version}{tag}")
        if not updates:
            lines.append("(none)")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config_file(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    unknown = set(payload.keys()) - CONFIG_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")
    return payload


def build_config(args: argparse.Namespace) -> Config:
    file_values: Dict[str, Any] = {}
    if args.config:
        file_values = load_config_file(Path(args.config).resolve())

    def pick(key: str) -> Any:
        value = getattr(args, key, None)
        return value if value is not None else file_values.get(key)

    lock_raw = pick("lock")
    lock_path = Path(ensure_str(lock_raw, "lock")) if lock_raw is not None else None
    cron_raw = pick("cron")
    cron = ensure_str(cron_raw, "cron") if cron_raw is not None else None
    if cron is not None and lock_path is None:
        raise ConfigError("Error: --cron requires --lock.")

    warning = ensure_int(pick("warning"), "warning", DEFAULT_WARNING, 0)
    critical = ensure_int(pick("critical"), "critical", DEFAULT_CRITICAL, 0)
    if warning > critical:
        raise ConfigError(f"Error: warning threshold ({warning}) must not exceed critical ({critical}).")

    apply_updates = ensure_bool(pick("update"), "update", False)
    apply_security = ensure_bool(pick("security_update"), "security_update", False)
    if apply_updates and apply_security:
        raise ConfigError("Error: --update and --security-update are mutually exclusive.")

    timezone_raw = pick("timezone")
    zone = parse_timezone(ensure_str(timezone_raw, "timezone"), "timezone") if timezone_raw is not None else None
    log_file_raw = pick("log_file")

    return Config(
        lock_path=lock_path,
        schedule=parse_schedule(cron) if cron is not None else None,
        thresholds=Thresholds(warning=warning, critical=critical),
        apply_updates=apply_updates,
        apply_security_updates=apply_security,
        assume_yes=ensure_bool(pick("yes"), "yes", False),
        refresh=ensure_bool(pick("refresh"), "refresh", False),
        call_timeout=ensure_seconds(pick("timeout"), "timeout", DEFAULT_CALL_TIMEOUT_SECONDS),
        apply_timeout=ensure_seconds(pick("apply_timeout"), "apply_timeout", DEFAULT_APPLY_TIMEOUT_SECONDS),
        grace_seconds=ensure_seconds(pick("grace_seconds"), "grace_seconds", DEFAULT_GRACE_SECONDS),
        timezone=zone,
        report_skip=ensure_bool(pick("report_skip"), "report_skip", False),
        log_file=Path(ensure_str(log_file_raw, "log_file")) if log_file_raw is not None else None,
        verbose=bool(getattr(args, "verbose", False)),
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


async def confirm_apply(selection: Sequence[UpdateInfo]) -> bool:
    if sys.stdin is None or not sys.stdin.isatty():
        logger.warning("Not applying updates: confirmation needs a terminal, use --yes for unattended runs.")
        return False

    sys.stderr.write("The following packages will be updated:\n")
    for update in selection:
        tag = " (SECURITY)" if update.is_security else ""
        sys.stderr.write(f"{update.name} {update.version}{tag}\n")
    sys.stderr.write("\nProceed with installation? [y/n] ")
    sys.stderr.flush()

    loop = asyncio.get_running_loop()
    answer: "asyncio.Future[str]" = loop.create_future()

    def deliver(line: str) -> None:
        if not answer.done():
            answer.set_result(line)

    def read_answer() -> None:
        line = sys.stdin.readline()
        try:
            loop.call_soon_threadsafe(deliver, line)
        except RuntimeError:
            # Event loop already closed.
            return

    threading.Thread(target=read_answer, daemon=True, name="check-updates-confirm").start()
    return (await answer).strip().lower() == "y"


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    coordinator: CancellationCoordinator,
) -> List[int]:
    installed: List[int] = []
    for signum in TERMINATION_SIGNALS:
        try:
            loop.add_signal_handler(signum, coordinator.request_termination, signum)
        except (NotImplementedError, RuntimeError, ValueError) as exc:
            logger.debug("Cannot watch %s: %s", signal.Signals(signum).name, exc)
            continue
        installed.append(signum)
    return installed


def remove_signal_handlers(loop: asyncio.AbstractEventLoop, installed: Sequence[int]) -> None:
    for signum in installed:
        loop.remove_signal_handler(signum)


async def _check_and_apply(
    config: Config,
    client: UpdateServiceClient,
    coordinator: CancellationCoordinator,
    run: CheckRun,
) -> CheckRun:
    try:
        updates = await client.enumerate_updates(refresh=config.refresh)
    except ServiceError as exc:
        logger.error("Update check failed: %s", exc)
        run.decision = error_decision(str(exc))
        return run

    run.updates = updates
    counts = count_updates(updates)
    logger.info("Found %s pending update(s), %s security.", counts.total, counts.security)

    notes: List[str] = []
    if config.apply_requested:
        selection = select_updates(updates, config.security_only)
        if not selection:
            logger.info("Nothing to apply.")
        elif not config.assume_yes and not await confirm_apply(selection):
            run.outcome = TransactionState.cancelled("declined by user")
        else:
            try:
                run.outcome = await client.apply(selection, coordinator, security_only=config.security_only)
            except SelectionMismatchError as exc:
                logger.warning("%s", exc)
                notes.append(str(exc))
            except ServiceError as exc:
                logger.error("Failed to apply updates: %s", exc)
                run.outcome = TransactionState.failed(str(exc))

    run.decision = decide(counts, config.thresholds, run.outcome, notes)
    run.completed = run.outcome is None or not run.outcome.unsuccessful
    return run


async def run_check(
    config: Config,
    service: UpdateService,
    coordinator: Optional[CancellationCoordinator] = None,
) -> CheckRun:
    """Enumerate, optionally apply, and decide; termination signals cancel cooperatively."""
    coordinator = coordinator or CancellationCoordinator(config.grace_seconds)
    task = asyncio.current_task()
    if task is not None:
        coordinator.attach(task)
    loop = asyncio.get_running_loop()
    installed = install_signal_handlers(loop, coordinator)
    client = UpdateServiceClient(
        service,
        call_timeout=config.call_timeout,
        apply_timeout=config.apply_timeout,
        grace_seconds=config.grace_seconds,
    )
    run = CheckRun()
    try:
        return await _check_and_apply(config, client, coordinator, run)
    except asyncio.CancelledError:
        if task is not None:
            task.uncancel()
        counts = count_updates(run.updates) if run.updates is not None else None
        run.decision = interrupted_decision(counts, coordinator.forced)
        run.completed = False
        return run
    finally:
        remove_signal_handlers(loop, installed)
        await client.close()


def _default_clock(config: Config) -> Callable[[], datetime]:
    if config.timezone is not None:
        return lambda: datetime.now(tz=config.timezone)
    return lambda: datetime.now().astimezone()


def command_check(
    config: Config,
    service_factory: Callable[[], UpdateService] = PackageKitService,
    clock: Optional[Callable[[], datetime]] = None,
) -> int:
    clock = clock or _default_clock(config)
    guard: Optional[RunGuard] = None
    if config.lock_path is not None:
        try:
            guard = RunGuard.acquire(config.lock_path)
        except LockBusyError as exc:
            if config.schedule is not None:
                logger.info("Skipping run: %s", exc)
                return Severity.OK.exit_code
            decision = error_decision(f"Failed to acquire lock file {config.lock_path}")
            print(render(decision))
            return decision.code

    try:
        if guard is not None and config.schedule is not None:
            last_run = guard.last_run()
            now = clock()
            if not is_due(config.schedule, last_run, now):
                last_text = last_run.astimezone(now.tzinfo).isoformat() if last_run else "never"
                logger.info(
                    "Skipping run: schedule %s not due (last run %s).",
                    describe_schedule(config.schedule),
                    last_text,
                )
                if config.report_skip:
                    print(f"UPDATE OK - Not due (last run {last_text})")
                return Severity.OK.exit_code

        run = asyncio.run(run_check(config, service_factory()))
        if guard is not None and run.completed:
            guard.mark_run_complete(clock())
    finally:
        if guard is not None:
            guard.release()

    decision = run.decision or error_decision("No result produced")
    print(render(decision, run.updates))
    return decision.code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="check_updates",
        description="Check for system updates via PackageKit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to YAML config; command-line flags take precedence")
    parser.add_argument("--lock", metavar="FILE", help="Lock file guarding against concurrent runs")
    parser.add_argument(
        "--cron",
        metavar="CRON_SPEC",
        help='Only run when due, e.g. "@daily" or "*/30 * * *" (requires --lock)',
    )
    parser.add_argument(
        "-w",
        "--warning",
        type=int,
        help=f"Security update count above which to warn (default: {DEFAULT_WARNING})",
    )
    parser.add_argument(
        "-c",
        "--critical",
        type=int,
        help=f"Security update count above which to go critical (default: {DEFAULT_CRITICAL})",
    )
    parser.add_argument(
        "--security-update",
        dest="security_update",
        action="store_true",
        default=None,
        help="Apply security updates only",
    )
    parser.add_argument("--update", action="store_true", default=None, help="Apply all updates")
    parser.add_argument("-y", "--yes", action="store_true", default=None, help="Do not ask for confirmation")
    parser.add_argument(
        "--refresh",
        action="store_true",
        default=None,
        help="Refresh package metadata before listing updates",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help=f"Per-call update service timeout in seconds (default: {DEFAULT_CALL_TIMEOUT_SECONDS:g})",
    )
    parser.add_argument(
        "--apply-timeout",
        dest="apply_timeout",
        type=float,
        help=f"Deadline for the whole apply transaction (default: {DEFAULT_APPLY_TIMEOUT_SECONDS:g})",
    )
    parser.add_argument(
        "--grace",
        dest="grace_seconds",
        type=float,
        help=f"Seconds to wait for cancellation to be confirmed (default: {DEFAULT_GRACE_SECONDS:g})",
    )
    parser.add_argument("--timezone", help="Timezone for --cron evaluation (default: system local time)")
    parser.add_argument(
        "--report-skip",
        dest="report_skip",
        action="store_true",
        default=None,
        help="Print a status line when a scheduled run is not due",
    )
    parser.add_argument("--log-file", dest="log_file", help="Also write log output to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    try:
        config = build_config(args)
        setup_logging(verbose=config.verbose, log_file=config.log_file)
        return command_check(config)
    except CheckUpdatesError as exc:
        logger.error(str(exc))
        print(render(error_decision(str(exc))))
        return Severity.UNKNOWN.exit_code
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        print(render(error_decision(f"An error occurred: {exc}")))
        return Severity.UNKNOWN.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
