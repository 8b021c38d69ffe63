from __future__ import annotations

import asyncio
import dataclasses
import io
import os
import signal
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
import yaml

import check_updates
from check_updates import Config, Severity, Thresholds, UpdateCounts
from fakes import PK_EXIT_FAILED, FakeUpdateService, make_updates
from update_service import CancellationCoordinator, TransactionState

UTC = timezone.utc


def _config(**overrides: object) -> Config:
    base = Config(lock_path=None, schedule=None, thresholds=Thresholds(warning=10, critical=20))
    return dataclasses.replace(base, **overrides)


def _at(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def _mtime(path: Path) -> float:
    return os.stat(path).st_mtime


class _Terminal(io.StringIO):
    def isatty(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def test_parse_schedule_aliases_and_fields() -> None:
    expectations = {
        "@hourly": "0 * * * *",
        "@daily": "0 0 * * *",
        "@midnight": "0 0 * * *",
        "@weekly": "0 0 * * 0",
        "@monthly": "0 0 1 * *",
        "@yearly": "0 0 1 1 *",
        "@annually": "0 0 1 1 *",
        "*/30 * * *": "*/30 * * * *",
        "15 4 * * 7": "15 4 * * 7",
    }
    for text, cron_expr in expectations.items():
        spec = check_updates.parse_schedule(text)
        assert spec.cron_expr == cron_expr
        assert spec.source == text


def test_describe_schedule_keeps_alias() -> None:
    assert check_updates.describe_schedule(check_updates.parse_schedule("@daily")) == "@daily (0 0 * * *)"
    assert check_updates.describe_schedule(check_updates.parse_schedule("5 * * *")) == "5 * * * *"


@pytest.mark.parametrize(
    ("text", "token"),
    [
        ("61 * * *", "61"),
        ("* 24 * *", "24"),
        ("*/0 * * *", "*/0"),
        ("*/61 * * *", "*/61"),
        ("1-5 * * *", "1-5"),
        ("* * *", "* * *"),
        ("@fortnightly", "@fortnightly"),
        ("0 0 31 2", "31 2"),
        ("0 0 0 *", "0"),
    ],
)
def test_parse_schedule_rejects_malformed(text: str, token: str) -> None:
    with pytest.raises(check_updates.ScheduleParseError) as excinfo:
        check_updates.parse_schedule(text)
    assert excinfo.value.token == token
    assert isinstance(excinfo.value, check_updates.ConfigError)


def test_first_run_is_always_due() -> None:
    spec = check_updates.parse_schedule("@yearly")
    assert check_updates.is_due(spec, None, _at(2026, 6, 15, 12, 0))


def test_hourly_due_once_per_period() -> None:
    spec = check_updates.parse_schedule("@hourly")
    last = _at(2026, 3, 10, 10, 0, 5)
    assert not check_updates.is_due(spec, last, _at(2026, 3, 10, 10, 59, 59))
    assert check_updates.is_due(spec, last, _at(2026, 3, 10, 11, 0))
    assert check_updates.is_due(spec, _at(2026, 3, 10, 9, 59), _at(2026, 3, 10, 10, 0, 30))


def test_daily_abstains_later_the_same_day() -> None:
    spec = check_updates.parse_schedule("@daily")
    last = _at(2026, 3, 10, 12, 0)
    assert not check_updates.is_due(spec, last, last + timedelta(hours=10))
    assert check_updates.is_due(spec, last, _at(2026, 3, 11, 0, 1))


def test_step_minutes_boundaries() -> None:
    spec = check_updates.parse_schedule("*/15 * * *")
    last = _at(2026, 3, 10, 10, 16)
    assert not check_updates.is_due(spec, last, _at(2026, 3, 10, 10, 29))
    assert check_updates.is_due(spec, last, _at(2026, 3, 10, 10, 30))


def test_day_step_counts_from_first_of_month() -> None:
    spec = check_updates.parse_schedule("0 0 */2 *")
    last = _at(2026, 3, 1, 12, 0)
    assert not check_updates.is_due(spec, last, _at(2026, 3, 2, 23, 59))
    assert check_updates.is_due(spec, last, _at(2026, 3, 3, 0, 0))


def test_weekly_runs_on_sunday_midnight() -> None:
    spec = check_updates.parse_schedule("@weekly")
    last = _at(2026, 3, 8, 0, 5)  # Sunday
    assert not check_updates.is_due(spec, last, _at(2026, 3, 14, 23, 59))
    assert check_updates.is_due(spec, last, _at(2026, 3, 15, 0, 0))


def test_hourly_due_across_dst_fall_back() -> None:
    new_york = ZoneInfo("America/New_York")
    spec = check_updates.parse_schedule("@hourly")
    last = datetime(2026, 11, 1, 1, 5, tzinfo=new_york)  # EDT
    repeated_hour = datetime(2026, 11, 1, 1, 10, fold=1, tzinfo=new_york)  # EST, 01:00 EST already passed
    assert check_updates.is_due(spec, last, repeated_hour)
    assert not check_updates.is_due(spec, last, datetime(2026, 11, 1, 1, 50, tzinfo=new_york))


def test_due_matches_one_full_period_later() -> None:
    cases = {
        "@hourly": timedelta(hours=1),
        "@daily": timedelta(days=1),
        "@weekly": timedelta(days=7),
        "*/10 * * *": timedelta(minutes=10),
    }
    last = _at(2026, 3, 8, 0, 0)
    for text, period in cases.items():
        spec = check_updates.parse_schedule(text)
        assert check_updates.is_due(spec, last, last + period), text


# ---------------------------------------------------------------------------
# Run guard
# ---------------------------------------------------------------------------


def test_new_lock_file_reads_as_never_run(tmp_path: Path) -> None:
    lock = tmp_path / "check.lock"
    with check_updates.RunGuard.acquire(lock) as guard:
        assert guard.last_run() is None
    assert lock.exists()
    assert lock.stat().st_size == 0


def test_lock_is_exclusive_until_released(tmp_path: Path) -> None:
    lock = tmp_path / "check.lock"
    guard = check_updates.RunGuard.acquire(lock)
    with pytest.raises(check_updates.LockBusyError):
        check_updates.RunGuard.acquire(lock)
    guard.release()
    guard.release()
    assert not guard.held

    second = check_updates.RunGuard.acquire(lock)
    second.release()


def test_unmarked_lock_file_from_another_process_reads_as_never_run(tmp_path: Path) -> None:
    lock = tmp_path / "check.lock"
    lock.touch()
    with check_updates.RunGuard.acquire(lock) as guard:
        assert guard.last_run() is None


def test_mark_run_complete_records_mtime(tmp_path: Path) -> None:
    lock = tmp_path / "check.lock"
    stamp = _at(2026, 3, 10, 12, 0)
    with check_updates.RunGuard.acquire(lock) as guard:
        guard.mark_run_complete(stamp)
        assert guard.last_run() == stamp
    with check_updates.RunGuard.acquire(lock) as guard:
        assert guard.last_run() == stamp


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("security", "severity", "code"),
    [(5, Severity.OK, 0), (10, Severity.OK, 0), (12, Severity.WARNING, 1), (20, Severity.WARNING, 1), (25, Severity.CRITICAL, 2)],
)
def test_threshold_scenarios(security: int, severity: Severity, code: int) -> None:
    decision = check_updates.decide(UpdateCounts(total=30, security=security), Thresholds(warning=10, critical=20))
    assert decision.severity is severity
    assert decision.code == code


def test_severity_is_monotonic_in_security_count() -> None:
    thresholds = Thresholds(warning=3, critical=7)
    codes = [
        check_updates.decide(UpdateCounts(total=n, security=n), thresholds).code
        for n in range(0, 15)
    ]
    assert codes == sorted(codes)


def test_failed_apply_is_critical_regardless_of_counts() -> None:
    decision = check_updates.decide(
        UpdateCounts(total=1, security=0),
        Thresholds(warning=10, critical=20),
        TransactionState.failed("dependency problem"),
    )
    assert decision.severity is Severity.CRITICAL
    assert "Apply failed: dependency problem" in decision.message


def test_render_status_line_and_listing() -> None:
    updates = make_updates(3, 1)
    decision = check_updates.decide(check_updates.count_updates(updates), Thresholds(warning=0, critical=5))
    output = check_updates.render(decision, updates)
    lines = output.splitlines()
    assert lines[0] == "UPDATE WARNING - Security-Update = 1 | 'Total Update' = 3 'Security Update' = 1"
    assert "pkg0 1.0-1 (SECURITY)" in lines
    assert "pkg2 1.2-1" in lines

    empty = check_updates.decide(UpdateCounts(total=0, security=0), Thresholds(warning=0, critical=5))
    assert check_updates.render(empty, []).endswith("(none)")
    assert check_updates.render(check_updates.error_decision("bus down")) == "UPDATE UNKNOWN - bus down"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_cron_requires_lock() -> None:
    args = check_updates.parse_args(["--cron", "@daily"])
    with pytest.raises(check_updates.ConfigError, match="--cron requires --lock"):
        check_updates.build_config(args)


def test_warning_above_critical_rejected() -> None:
    args = check_updates.parse_args(["-w", "30", "-c", "20"])
    with pytest.raises(check_updates.ConfigError, match="must not exceed critical"):
        check_updates.build_config(args)


def test_update_and_security_update_are_exclusive() -> None:
    args = check_updates.parse_args(["--update", "--security-update"])
    with pytest.raises(check_updates.ConfigError, match="mutually exclusive"):
        check_updates.build_config(args)


def test_config_file_values_and_cli_precedence(tmp_path: Path) -> None:
    config_path = tmp_path / "check_updates.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "lock": str(tmp_path / "check.lock"),
                "cron": "@daily",
                "warning": 5,
                "critical": 9,
                "security_update": True,
                "timeout": 30,
                "timezone": "UTC",
            }
        ),
        encoding="utf-8",
    )
    args = check_updates.parse_args(["--config", str(config_path), "-w", "7"])
    config = check_updates.build_config(args)
    assert config.thresholds == Thresholds(warning=7, critical=9)
    assert config.schedule is not None and config.schedule.cron_expr == "0 0 * * *"
    assert config.security_only
    assert config.call_timeout == 30.0
    assert config.timezone is not None and str(config.timezone) == "UTC"


def test_config_file_rejects_unknown_keys(tmp_path: Path) -> None:
    config_path = tmp_path / "check_updates.yaml"
    config_path.write_text(yaml.safe_dump({"lock": "x.lock", "jobs": []}), encoding="utf-8")
    args = check_updates.parse_args(["--config", str(config_path)])
    with pytest.raises(check_updates.ConfigError, match="Unknown top-level keys"):
        check_updates.build_config(args)


def test_config_file_type_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "check_updates.yaml"
    config_path.write_text(yaml.safe_dump({"refresh": "yes"}), encoding="utf-8")
    args = check_updates.parse_args(["--config", str(config_path)])
    with pytest.raises(check_updates.ConfigError, match="refresh must be true or false"):
        check_updates.build_config(args)


def test_main_reports_config_errors_as_unknown(capsys: pytest.CaptureFixture[str]) -> None:
    code = check_updates.main(["--cron", "0 0 31 2", "--lock", "/tmp/never-used.lock"])
    captured = capsys.readouterr()
    assert code == 3
    assert captured.out.startswith("UPDATE UNKNOWN - Error: Invalid schedule token")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def test_check_without_lock_reports_thresholds(capsys: pytest.CaptureFixture[str]) -> None:
    service = FakeUpdateService(make_updates(30, 12))
    code = check_updates.command_check(_config(), service_factory=lambda: service)
    out = capsys.readouterr().out
    assert code == 1
    assert out.startswith("UPDATE WARNING - Security-Update = 12 | 'Total Update' = 30 'Security Update' = 12")
    assert service.closed == 1


def test_cron_gated_run_marks_then_abstains(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    lock = tmp_path / "check.lock"
    config = _config(lock_path=lock, schedule=check_updates.parse_schedule("@daily"))
    first_run = _at(2026, 3, 10, 12, 0)
    calls = []

    def factory() -> FakeUpdateService:
        calls.append(1)
        return FakeUpdateService(make_updates(2, 0))

    assert check_updates.command_check(config, factory, clock=lambda: first_run) == 0
    assert _mtime(lock) == first_run.timestamp()
    capsys.readouterr()

    later = first_run + timedelta(hours=10)
    assert check_updates.command_check(config, factory, clock=lambda: later) == 0
    assert capsys.readouterr().out == ""
    assert len(calls) == 1
    assert _mtime(lock) == first_run.timestamp()

    skip_config = dataclasses.replace(config, report_skip=True)
    assert check_updates.command_check(skip_config, factory, clock=lambda: later) == 0
    assert capsys.readouterr().out.startswith("UPDATE OK - Not due (last run 2026-03-10T12:00:00")

    next_day = _at(2026, 3, 11, 0, 5)
    assert check_updates.command_check(config, factory, clock=lambda: next_day) == 0
    assert len(calls) == 2
    assert _mtime(lock) == next_day.timestamp()


def test_busy_lock_abstains_when_cron_gated(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    lock = tmp_path / "check.lock"
    holder = check_updates.RunGuard.acquire(lock)
    try:
        gated = _config(lock_path=lock, schedule=check_updates.parse_schedule("@hourly"))
        assert check_updates.command_check(gated, lambda: FakeUpdateService()) == 0
        assert capsys.readouterr().out == ""

        ungated = _config(lock_path=lock)
        assert check_updates.command_check(ungated, lambda: FakeUpdateService()) == 3
        assert capsys.readouterr().out.strip() == f"UPDATE UNKNOWN - Failed to acquire lock file {lock}"
    finally:
        holder.release()


def test_enumeration_failure_is_unknown_and_not_marked(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    lock = tmp_path / "check.lock"
    config = _config(lock_path=lock, schedule=check_updates.parse_schedule("@hourly"))
    service = FakeUpdateService(enumerate_error="Failed to get updates: no network")
    code = check_updates.command_check(config, lambda: service, clock=lambda: _at(2026, 3, 10, 12, 0))
    assert code == 3
    assert capsys.readouterr().out.strip() == "UPDATE UNKNOWN - Failed to get updates: no network"
    assert lock.stat().st_size == 0


def test_apply_failure_is_critical_and_releases_lock(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    lock = tmp_path / "check.lock"
    config = _config(lock_path=lock, apply_updates=True, assume_yes=True)
    service = FakeUpdateService(make_updates(2, 0), apply_exit=PK_EXIT_FAILED, apply_error="dependency problem")

    code = check_updates.command_check(config, lambda: service)
    out = capsys.readouterr().out
    assert code == 2
    assert "Apply failed: dependency problem" in out
    assert lock.stat().st_size == 0
    check_updates.RunGuard.acquire(lock).release()


def test_non_tty_confirmation_declines(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(sys, "stdin", io.StringIO("y\n"))
    service = FakeUpdateService(make_updates(1, 1))
    code = check_updates.command_check(_config(apply_security_updates=True), lambda: service)
    assert code == 2
    assert "Apply cancelled: declined by user" in capsys.readouterr().out
    assert service.applied == []


def test_confirmation_prompt_declined_on_terminal(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(sys, "stdin", _Terminal("n\n"))
    service = FakeUpdateService(make_updates(2, 1))
    code = check_updates.command_check(_config(apply_updates=True), lambda: service)
    captured = capsys.readouterr()
    assert code == 2
    assert "Proceed with installation? [y/n]" in captured.err
    assert "pkg0 1.0-1 (SECURITY)" in captured.err
    assert "Apply cancelled: declined by user" in captured.out
    assert service.applied == []


def test_confirmation_prompt_accepted_on_terminal(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(sys, "stdin", _Terminal("Y\n"))
    service = FakeUpdateService(make_updates(2, 1))
    code = check_updates.command_check(_config(apply_updates=True), lambda: service)
    assert code == 0
    assert capsys.readouterr().out.startswith("UPDATE OK - ")
    assert len(service.applied) == 1


def test_changed_selection_skips_apply_but_reports_and_marks(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    lock = tmp_path / "check.lock"
    config = _config(lock_path=lock, apply_updates=True, assume_yes=True)
    service = FakeUpdateService(make_updates(3, 1), later_updates=make_updates(4, 1))
    stamp = _at(2026, 3, 10, 12, 0)

    code = check_updates.command_check(config, lambda: service, clock=lambda: stamp)
    out = capsys.readouterr().out
    assert code == 0
    assert out.startswith("UPDATE OK - Security-Update = 1 | 'Total Update' = 3 'Security Update' = 1")
    assert "apply skipped" in out
    assert service.applied == []
    assert _mtime(lock) == stamp.timestamp()


def test_signal_during_apply_is_reported_cancelled(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    lock = tmp_path / "check.lock"
    config = _config(lock_path=lock, apply_updates=True, assume_yes=True, grace_seconds=2.0)
    service = FakeUpdateService(
        make_updates(3, 1),
        apply_exit=None,
        on_apply=lambda: os.kill(os.getpid(), signal.SIGINT),
    )

    code = check_updates.command_check(config, lambda: service)
    out = capsys.readouterr().out
    assert code == 2
    assert "Apply cancelled" in out
    assert service.cancels == 1
    assert lock.stat().st_size == 0


def test_signal_before_apply_interrupts_run() -> None:
    coordinator = CancellationCoordinator(grace_seconds=1.0)
    service = FakeUpdateService(make_updates(1, 0), on_enumerate=coordinator.request_termination)

    run = asyncio.run(check_updates.run_check(_config(), service, coordinator))
    assert not run.completed
    assert run.decision is not None
    assert run.decision.severity is Severity.CRITICAL
    assert run.decision.message == "Operation cancelled"
    assert service.closed == 1


def test_forced_second_signal_reports_indeterminate_state() -> None:
    now = [0.0]
    coordinator = CancellationCoordinator(grace_seconds=5.0, monotonic=lambda: now[0])

    def double_signal() -> None:
        coordinator.request_termination(signal.SIGTERM)
        now[0] = 6.0
        coordinator.request_termination(signal.SIGTERM)

    service = FakeUpdateService(make_updates(2, 1), apply_exit=None, on_apply=double_signal)
    config = _config(apply_updates=True, assume_yes=True)

    run = asyncio.run(check_updates.run_check(config, service, coordinator))
    assert coordinator.forced
    assert not run.completed
    assert run.decision is not None
    assert run.decision.severity is Severity.CRITICAL
    assert "indeterminate state" in run.decision.message
    assert run.decision.counts == UpdateCounts(total=2, security=1)
