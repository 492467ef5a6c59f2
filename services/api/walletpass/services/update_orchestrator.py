"""Fan-out of "pass changed" pushes to every device registered for a pass.

The orchestrator only signals. Devices pull the new content themselves via
the list-updatable and fetch-pass endpoints, so duplicate or reordered
notifications are harmless.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walletpass.config import Settings
from walletpass.errors import NotFoundError
from walletpass.metrics import dead_token_cleanups_total, pass_updates_total
from walletpass.services.push_dispatcher import DeliveryOutcome, DeliveryResult, PushDispatcher
from walletpass.services.registration_store import PushTarget, RegistrationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceNotification:
    target: PushTarget
    outcome: DeliveryOutcome
    attempts: int
    reason: str | None = None


@dataclass
class UpdateReport:
    pass_type_identifier: str
    serial_number: str
    last_update_tag: int
    notifications: list[DeviceNotification] = field(default_factory=list)
    removed_registrations: int = 0

    def count(self, outcome: DeliveryOutcome) -> int:
        return sum(1 for n in self.notifications if n.outcome is outcome)

    @property
    def delivered(self) -> int:
        return self.count(DeliveryOutcome.SUCCESS)

    @property
    def failed(self) -> int:
        return len(self.notifications) - self.delivered

    def as_dict(self) -> dict:
        return {
            "pass_type_identifier": self.pass_type_identifier,
            "serial_number": self.serial_number,
            "last_update_tag": self.last_update_tag,
            "devices": len(self.notifications),
            "delivered": self.delivered,
            "failed": self.failed,
            "removed_registrations": self.removed_registrations,
        }


class UpdateOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: PushDispatcher,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._max_attempts = settings.push_max_attempts
        self._backoff = settings.push_retry_backoff_seconds
        self._semaphore = asyncio.Semaphore(settings.push_concurrency)
        self._sleep = sleep

    async def pass_changed(self, pass_type_identifier: str, serial_number: str) -> UpdateReport:
        """Bump the pass's update tag and notify every registered device.

        Per-device failures are logged and reported, never raised. Raises
        NotFoundError only when the pass itself is unknown.
        """
        async with self._session_factory() as session:
            store = RegistrationStore(session)
            tag = await store.bump_update_tag(pass_type_identifier, serial_number)
            if tag is None:
                await session.rollback()
                raise NotFoundError(f"Unknown pass {pass_type_identifier}/{serial_number}")
            targets = await store.push_targets(pass_type_identifier, serial_number)
            await session.commit()

        pass_updates_total.inc()
        report = UpdateReport(pass_type_identifier, serial_number, tag)
        logger.info(
            "Pass %s/%s updated tag=%d, notifying %d device(s)",
            pass_type_identifier,
            serial_number,
            tag,
            len(targets),
        )
        if not targets:
            return report

        outcomes = await asyncio.gather(
            *(self._notify(target, pass_type_identifier) for target in targets),
            return_exceptions=True,
        )
        for target, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Push to device %s failed unexpectedly",
                    target.device_library_identifier,
                    exc_info=outcome,
                )
                outcome = DeviceNotification(
                    target, DeliveryOutcome.TRANSPORT_ERROR, attempts=1, reason=type(outcome).__name__
                )
            report.notifications.append(outcome)

        dead = [n.target for n in report.notifications if n.outcome is DeliveryOutcome.DEAD_TOKEN]
        if dead:
            report.removed_registrations = await self._remove_dead_registrations(
                pass_type_identifier, serial_number, dead
            )

        logger.info(
            "Pass %s/%s fan-out done delivered=%d failed=%d removed=%d",
            pass_type_identifier,
            serial_number,
            report.delivered,
            report.failed,
            report.removed_registrations,
        )
        return report

    async def _notify(self, target: PushTarget, topic: str) -> DeviceNotification:
        result: DeliveryResult | None = None
        for attempt in range(1, self._max_attempts + 1):
            async with self._semaphore:
                result = await self._dispatcher.send_update(target.push_token, topic)
            if not result.retryable:
                return DeviceNotification(target, result.outcome, attempt, result.reason)
            if attempt < self._max_attempts:
                delay = self._backoff * (2 ** (attempt - 1))
                logger.info(
                    "Retrying push to device %s in %.2fs after %s (attempt %d/%d)",
                    target.device_library_identifier,
                    delay,
                    result.outcome.value,
                    attempt,
                    self._max_attempts,
                )
                await self._sleep(delay)

        logger.warning(
            "Giving up on push to device %s after %d attempt(s): %s",
            target.device_library_identifier,
            self._max_attempts,
            result.reason,
        )
        return DeviceNotification(target, result.outcome, self._max_attempts, result.reason)

    async def _remove_dead_registrations(
        self,
        pass_type_identifier: str,
        serial_number: str,
        targets: list[PushTarget],
    ) -> int:
        removed = 0
        async with self._session_factory() as session:
            store = RegistrationStore(session)
            for target in targets:
                deleted = await store.delete_registration(
                    target.device_library_identifier,
                    pass_type_identifier,
                    serial_number,
                    push_token=target.push_token,
                )
                if deleted:
                    removed += 1
                    dead_token_cleanups_total.inc()
                    logger.info(
                        "Removed registration %s -> %s/%s after dead push token",
                        target.device_library_identifier,
                        pass_type_identifier,
                        serial_number,
                    )
            await session.commit()
        return removed
