#!/usr/bin/env python3
"""
update_service.py

Client side of the host update service (PackageKit on the D-Bus system bus).
Lists pending updates, classifies security fixes, and drives apply
transactions under a cancellation coordinator.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type

try:
    from dbus_next import BusType
    from dbus_next.aio import MessageBus
    from dbus_next.errors import AuthError, DBusError, InvalidAddressError
except ImportError:  # pragma: no cover - dependency check at runtime
    MessageBus = None


logger = logging.getLogger("check_updates.service")

PK_BUS_NAME = "org.freedesktop.PackageKit"
PK_OBJECT_PATH = "/org/freedesktop/PackageKit"
PK_INTERFACE = "org.freedesktop.PackageKit"
PK_TRANSACTION_INTERFACE = "org.freedesktop.PackageKit.Transaction"

PK_FILTER_ENUM_NONE = 0
PK_TRANSACTION_FLAG_ENUM_ONLY_TRUSTED = 1 << 1
PK_INFO_ENUM_SECURITY = 8
PK_EXIT_ENUM_SUCCESS = 1
PK_EXIT_CANCELLED = {3, 9}
PK_EXIT_NAMES = {
    0: "unknown",
    1: "success",
    2: "failed",
    3: "cancelled",
    4: "key-required",
    5: "eula-required",
    6: "killed",
    7: "media-change-required",
    8: "need-untrusted",
    9: "cancelled-priority",
    10: "skip-transaction",
    11: "repair-required",
}
PK_PERCENTAGE_UNKNOWN = 101

DEFAULT_CALL_TIMEOUT_SECONDS = 120.0
DEFAULT_APPLY_TIMEOUT_SECONDS = 3600.0
DEFAULT_GRACE_SECONDS = 10.0
DEFAULT_POLL_SECONDS = 0.25

CVE_RE = re.compile(r"CVE-\d{4}-\d+")


class ServiceError(Exception):
    """Base error for update service interaction."""


class ServiceUnavailableError(ServiceError):
    """Bus connection or update service could not be reached."""


class ServiceTimeoutError(ServiceError):
    """A bus call did not answer in time."""


class EnumerationError(ServiceError):
    """The service reported a failure while listing updates."""


class TransactionError(ServiceError):
    """The service refused to start or cancel an apply transaction."""


class SelectionMismatchError(ServiceError):
    """Pending updates changed between the check and the apply."""


def require_dbus_dependency() -> None:
    if MessageBus is None:
        raise ServiceUnavailableError(
            "Missing required dependency: dbus-next. Install with: pip install dbus-next"
        )


@dataclass(frozen=True)
class UpdateInfo:
    package_id: str
    name: str
    version: str
    arch: str = ""
    is_security: bool = False


@dataclass(frozen=True)
class UpdateDetail:
    cve_urls: Tuple[str, ...] = ()
    update_text: str = ""
    changelog: str = ""


class TransactionPhase(Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TransactionState:
    phase: TransactionPhase
    reason: Optional[str] = None

    @staticmethod
    def not_started() -> "TransactionState":
        return TransactionState(TransactionPhase.NOT_STARTED)

    @staticmethod
    def running() -> "TransactionState":
        return TransactionState(TransactionPhase.RUNNING)

    @staticmethod
    def succeeded() -> "TransactionState":
        return TransactionState(TransactionPhase.SUCCEEDED)

    @staticmethod
    def failed(reason: str) -> "TransactionState":
        return TransactionState(TransactionPhase.FAILED, reason)

    @staticmethod
    def cancelled(reason: Optional[str] = None) -> "TransactionState":
        return TransactionState(TransactionPhase.CANCELLED, reason)

    @property
    def unsuccessful(self) -> bool:
        return self.phase in {TransactionPhase.FAILED, TransactionPhase.CANCELLED}

    def describe(self) -> str:
        if self.reason:
            return f"{self.phase.value} ({self.reason})"
        return self.phase.value


def parse_package_id(package_id: str, is_security: bool = False) -> UpdateInfo:
    # name;version;arch;data
    parts = package_id.split(";")
    name = parts[0] or package_id
    version = parts[1] if len(parts) > 1 and parts[1] else "unknown"
    arch = parts[2] if len(parts) > 2 else ""
    return UpdateInfo(
        package_id=package_id,
        name=name,
        version=version,
        arch=arch,
        is_security=is_security,
    )


def is_security_update(info: int, detail: Optional[UpdateDetail]) -> bool:
    # Newer PackageKit packs the update severity into the high 16 bits.
    if info & 0xFFFF == PK_INFO_ENUM_SECURITY:
        return True
    if detail is None:
        return False
    if detail.cve_urls:
        return True
    return bool(CVE_RE.search(detail.update_text) or CVE_RE.search(detail.changelog))


def unique_updates(updates: Iterable[UpdateInfo]) -> List[UpdateInfo]:
    seen: Dict[str, UpdateInfo] = {}
    for update in updates:
        seen.setdefault(update.package_id, update)
    return list(seen.values())


def select_updates(updates: Sequence[UpdateInfo], security_only: bool) -> List[UpdateInfo]:
    if security_only:
        return [update for update in updates if update.is_security]
    return list(updates)


class TransactionHandle:
    """Live view of one apply transaction, fed by service notifications."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        self.finished = asyncio.Event()
        self.exit_status: Optional[int] = None
        self.error: Optional[str] = None
        self.percentage: Optional[int] = None

    @property
    def done(self) -> bool:
        return self.finished.is_set()

    def record_error(self, code: int, details: str) -> None:
        logger.warning("Update service error %s: %s", code, details)
        self.error = details or f"error code {code}"

    def record_progress(self, _item: str, _status: int, percentage: int) -> None:
        if 0 <= percentage < PK_PERCENTAGE_UNKNOWN:
            self.percentage = percentage

    def record_finished(self, exit_status: int, _runtime: int = 0) -> None:
        self.exit_status = exit_status
        self.finished.set()

    def outcome(self) -> TransactionState:
        if not self.done:
            return TransactionState.running()
        if self.exit_status in PK_EXIT_CANCELLED:
            return TransactionState.cancelled()
        if self.exit_status == PK_EXIT_ENUM_SUCCESS and self.error is None:
            return TransactionState.succeeded()
        if self.error:
            return TransactionState.failed(self.error)
        return TransactionState.failed(PK_EXIT_NAMES.get(self.exit_status or 0, f"exit {self.exit_status}"))


class UpdateService(abc.ABC):
    """Capabilities the core needs from the host update service."""

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def refresh(self) -> None:
        return None

    @abc.abstractmethod
    async def enumerate(self) -> List[UpdateInfo]:
        ...

    @abc.abstractmethod
    async def apply(self, package_ids: Sequence[str]) -> TransactionHandle:
        ...

    @abc.abstractmethod
    async def cancel(self, handle: TransactionHandle) -> None:
        ...


class PackageKitService(UpdateService):
    """PackageKit over the D-Bus system bus."""

    def __init__(self) -> None:
        self._bus: Any = None
        self._root: Any = None
        self._active: Dict[str, Any] = {}

    async def open(self) -> None:
        require_dbus_dependency()
        try:
            self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except (OSError, EOFError, DBusError, AuthError, InvalidAddressError) as exc:
            raise ServiceUnavailableError(f"Failed to connect to system D-Bus: {exc}") from exc
        try:
            introspection = await self._bus.introspect(PK_BUS_NAME, PK_OBJECT_PATH)
        except DBusError as exc:
            raise ServiceUnavailableError(f"PackageKit is not available on the system bus: {exc}") from exc
        proxy = self._bus.get_proxy_object(PK_BUS_NAME, PK_OBJECT_PATH, introspection)
        self._root = proxy.get_interface(PK_INTERFACE)
        logger.debug("Connected to %s", PK_BUS_NAME)

    async def close(self) -> None:
        if self._bus is not None:
            self._bus.disconnect()
            self._bus = None
        self._active.clear()

    async def refresh(self) -> None:
        path, transaction = await self._new_transaction()
        await self._run(path, transaction, lambda: transaction.call_refresh_cache(True), "refresh cache")

    async def enumerate(self) -> List[UpdateInfo]:
        path, transaction = await self._new_transaction()
        packages: Dict[str, int] = {}

        def on_package(info: int, package_id: str, _summary: str) -> None:
            packages.setdefault(package_id, info)

        transaction.on_package(on_package)
        try:
            await self._run(
                path,
                transaction,
                lambda: transaction.call_get_updates(PK_FILTER_ENUM_NONE),
                "get updates",
            )
        finally:
            transaction.off_package(on_package)

        if not packages:
            return []
        details = await self._update_details(list(packages))
        return [
            parse_package_id(package_id, is_security_update(info, details.get(package_id)))
            for package_id, info in packages.items()
        ]

    async def apply(self, package_ids: Sequence[str]) -> TransactionHandle:
        path, transaction = await self._new_transaction(TransactionError)
        handle = TransactionHandle(path)
        transaction.on_error_code(handle.record_error)
        transaction.on_item_progress(handle.record_progress)
        transaction.on_finished(handle.record_finished)
        await self._guard(
            transaction.call_update_packages(PK_TRANSACTION_FLAG_ENUM_ONLY_TRUSTED, list(package_ids)),
            "start update transaction",
            TransactionError,
        )
        self._active[path] = transaction
        logger.debug("Started update transaction %s", path)
        return handle

    async def cancel(self, handle: TransactionHandle) -> None:
        transaction = self._active.get(handle.transaction_id)
        if transaction is None:
            raise TransactionError(f"Unknown transaction {handle.transaction_id}")
        await self._guard(transaction.call_cancel(), "cancel transaction", TransactionError)

    async def _update_details(self, package_ids: List[str]) -> Dict[str, UpdateDetail]:
        logger.info("Getting update details for %s package(s)", len(package_ids))
        path, transaction = await self._new_transaction()
        details: Dict[str, UpdateDetail] = {}

        def on_update_detail(
            package_id: str,
            _updates: List[str],
            _obsoletes: List[str],
            _vendor_urls: List[str],
            _bugzilla_urls: List[str],
            cve_urls: List[str],
            _restart: int,
            update_text: str,
            changelog: str,
            _state: int,
            _issued: str,
            _updated: str,
        ) -> None:
            details[package_id] = UpdateDetail(
                cve_urls=tuple(cve_urls),
                update_text=update_text,
                changelog=changelog,
            )

        transaction.on_update_detail(on_update_detail)
        try:
            await self._run(
                path,
                transaction,
                lambda: transaction.call_get_update_detail(package_ids),
                "get update details",
            )
        finally:
            transaction.off_update_detail(on_update_detail)
        return details

    async def _new_transaction(self, error: Type[ServiceError] = EnumerationError) -> Tuple[str, Any]:
        if self._root is None:
            raise ServiceUnavailableError("Update service connection is not open.")
        path = await self._guard(self._root.call_create_transaction(), "create transaction", error)
        introspection = await self._guard(
            self._bus.introspect(PK_BUS_NAME, path), "introspect transaction", error
        )
        proxy = self._bus.get_proxy_object(PK_BUS_NAME, path, introspection)
        return path, proxy.get_interface(PK_TRANSACTION_INTERFACE)

    async def _run(
        self,
        path: str,
        transaction: Any,
        start: Callable[[], Awaitable[Any]],
        action: str,
    ) -> None:
        handle = TransactionHandle(path)
        transaction.on_error_code(handle.record_error)
        transaction.on_finished(handle.record_finished)
        try:
            await self._guard(start(), action)
            await handle.finished.wait()
        finally:
            transaction.off_error_code(handle.record_error)
            transaction.off_finished(handle.record_finished)
        state = handle.outcome()
        if state.phase is not TransactionPhase.SUCCEEDED:
            raise EnumerationError(f"Failed to {action}: {state.describe()}")

    async def _guard(self, awaitable: Awaitable[Any], action: str, error: Type[ServiceError] = EnumerationError) -> Any:
        try:
            return await awaitable
        except DBusError as exc:
            raise error(f"Failed to {action}: {exc}") from exc
        except (OSError, EOFError) as exc:
            raise ServiceUnavailableError(f"Lost connection to update service during {action}: {exc}") from exc


class CoordinatorState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    CANCEL_REQUESTED = "cancel-requested"
    ACKNOWLEDGED = "acknowledged"


class CancellationCoordinator:
    """
    Turns termination signals into a cancellation request for the running
    apply transaction.

    While a transaction is armed, the first signal only requests cancellation;
    the client sees it at its next observation point. A second signal after the
    grace period aborts the main task, leaving the transaction indeterminate.
    Outside a transaction, a signal aborts the main task straight away.
    """

    def __init__(
        self,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.grace_seconds = grace_seconds
        self.state = CoordinatorState.IDLE
        self.outcome: Optional[TransactionState] = None
        self.forced = False
        self.cancel_event = asyncio.Event()
        self._monotonic = monotonic
        self._requested_at: Optional[float] = None
        self._task: Optional["asyncio.Task[Any]"] = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def attach(self, task: "asyncio.Task[Any]") -> None:
        self._task = task

    def arm(self) -> None:
        self.state = CoordinatorState.ARMED
        self.outcome = None

    def acknowledge(self, outcome: TransactionState) -> None:
        self.outcome = outcome
        self.state = CoordinatorState.ACKNOWLEDGED
        logger.debug("Transaction reached %s", outcome.describe())

    def request_termination(self, signum: Optional[int] = None) -> None:
        name = _signal_name(signum)
        if self.state is CoordinatorState.ARMED:
            logger.warning("Received %s, cancelling update transaction...", name)
            self.state = CoordinatorState.CANCEL_REQUESTED
            self._requested_at = self._monotonic()
            self.cancel_event.set()
            return

        if self.state is CoordinatorState.CANCEL_REQUESTED:
            elapsed = self._monotonic() - (self._requested_at or 0.0)
            if elapsed < self.grace_seconds:
                logger.warning(
                    "Received %s, cancellation already in progress (%.1fs of %.1fs grace).",
                    name,
                    elapsed,
                    self.grace_seconds,
                )
                return
            logger.error(
                "Received %s after %.1fs grace, forcing shutdown; "
                "the update transaction may be left in an indeterminate state.",
                name,
                elapsed,
            )
            self.forced = True
            self._abort()
            return

        logger.warning("Received %s, terminating...", name)
        self.cancel_event.set()
        self._abort()

    def _abort(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


def _signal_name(signum: Optional[int]) -> str:
    if signum is None:
        return "termination request"
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


async def wait_any(events: Sequence[asyncio.Event], timeout: float) -> bool:
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
    return bool(done)


@dataclass
class UpdateServiceClient:
    service: UpdateService
    call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS
    apply_timeout: float = DEFAULT_APPLY_TIMEOUT_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    poll_interval: float = DEFAULT_POLL_SECONDS
    _opened: bool = field(default=False, init=False)

    async def enumerate_updates(self, refresh: bool = False) -> List[UpdateInfo]:
        await self._ensure_open()
        if refresh:
            logger.info("Refreshing package cache...")
            await self._call(self.service.refresh(), "refresh the package cache")
        logger.info("Getting available updates...")
        updates = await self._call(self.service.enumerate(), "list pending updates")
        return unique_updates(updates)

    async def apply(
        self,
        selection: Sequence[UpdateInfo],
        coordinator: CancellationCoordinator,
        security_only: bool = False,
    ) -> TransactionState:
        if not selection:
            return TransactionState.not_started()

        current = select_updates(await self.enumerate_updates(), security_only)
        expected_ids = {update.package_id for update in selection}
        current_ids = {update.package_id for update in current}
        if expected_ids != current_ids:
            raise SelectionMismatchError(
                f"Pending updates changed since the check ({len(expected_ids)} selected, "
                f"{len(current_ids)} now pending); apply skipped."
            )

        package_ids = [update.package_id for update in selection]
        logger.info("Applying %s update(s)...", len(package_ids))
        coordinator.arm()
        try:
            handle = await self._call(self.service.apply(package_ids), "start the update transaction")
        except ServiceError as exc:
            state = TransactionState.failed(str(exc))
        else:
            state = await self._observe(handle, coordinator)
        coordinator.acknowledge(state)
        logger.info("Update transaction %s", state.describe())
        return state

    async def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        try:
            await self._call(self.service.close(), "close the service connection")
        except ServiceError as exc:
            logger.warning("Failed to close update service connection: %s", exc)

    async def _ensure_open(self) -> None:
        if self._opened:
            return
        await self._call(self.service.open(), "connect to the update service")
        self._opened = True

    async def _observe(self, handle: TransactionHandle, coordinator: CancellationCoordinator) -> TransactionState:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.apply_timeout
        reported: Optional[int] = None
        while not handle.done:
            if coordinator.cancel_requested:
                return await self._cancel(handle)
            if loop.time() >= deadline:
                logger.error("Update transaction exceeded %ss, cancelling.", self.apply_timeout)
                state = await self._cancel(handle)
                if state.phase is TransactionPhase.SUCCEEDED:
                    return state
                return TransactionState.failed("timeout")
            if handle.percentage is not None and handle.percentage != reported:
                reported = handle.percentage
                logger.info("Update progress: %s%%", reported)
            await wait_any([handle.finished, coordinator.cancel_event], self.poll_interval)
        return handle.outcome()

    async def _cancel(self, handle: TransactionHandle) -> TransactionState:
        logger.warning("Asking the update service to cancel transaction %s", handle.transaction_id)
        try:
            await self._call(self.service.cancel(handle), "cancel the update transaction", self.grace_seconds)
        except ServiceError as exc:
            logger.error("Cancel request failed: %s", exc)
        if not await wait_any([handle.finished], self.grace_seconds):
            logger.error("Update service did not confirm cancellation within %ss.", self.grace_seconds)
            return TransactionState.failed("cancel-timeout")
        return handle.outcome()

    async def _call(self, awaitable: Awaitable[Any], action: str, timeout: Optional[float] = None) -> Any:
        limit = self.call_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=limit)
        except asyncio.TimeoutError as exc:
            raise ServiceTimeoutError(f"Timed out after {limit:g}s trying to {action}.") from exc
