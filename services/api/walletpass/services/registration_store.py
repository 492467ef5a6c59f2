"""Persistence for devices, passes and the registrations that link them.

Devices, passes and registrations are flat tables joined by keys; nothing
here holds object back-references. Every find-or-create goes through
`get_or_create`, a conditional insert keyed by the table's natural unique key,
so concurrent registrations for the same triple collapse onto one row instead
of racing a read-then-write.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from sqlalchemy import case, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from walletpass.errors import InternalError
from walletpass.models.device import Device
from walletpass.models.registration import Registration
from walletpass.models.wallet_pass import WalletPass

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

_INSERT_BY_DIALECT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def now_ms() -> int:
    return int(time.time() * 1000)


async def get_or_create(
    session: AsyncSession,
    model: type[ModelT],
    key: dict[str, Any],
    values: dict[str, Any] | None = None,
) -> tuple[ModelT, bool]:
    """Insert `model(**key, **values)` unless a row with `key` exists.

    `key` must name exactly the columns of a unique constraint. Returns the
    (possibly pre-existing) row and whether this call created it.
    """
    dialect = session.get_bind().dialect.name
    try:
        insert = _INSERT_BY_DIALECT[dialect]
    except KeyError:
        raise InternalError(f"Unsupported database dialect: {dialect}") from None

    stmt = (
        insert(model)
        .values(**key, **(values or {}))
        .on_conflict_do_nothing(index_elements=list(key))
        .returning(model.id)
    )
    created_id = (await session.execute(stmt)).scalar_one_or_none()

    row = (
        await session.execute(
            select(model).filter_by(**key).execution_options(populate_existing=True)
        )
    ).scalar_one()
    return row, created_id is not None


@dataclass(frozen=True)
class PushTarget:
    device_library_identifier: str
    push_token: str


class RegistrationStore:
    """Queries and mutations over the device/pass/registration tables."""

    def __init__(self, session: AsyncSession, clock: Callable[[], int] = now_ms) -> None:
        self._session = session
        self._clock = clock

    @property
    def session(self) -> AsyncSession:
        return self._session

    # --- passes ---

    async def get_pass(self, pass_type_identifier: str, serial_number: str) -> WalletPass | None:
        result = await self._session.execute(
            select(WalletPass)
            .where(
                WalletPass.pass_type_identifier == pass_type_identifier,
                WalletPass.serial_number == serial_number,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_pass(
        self,
        pass_type_identifier: str,
        serial_number: str,
        values: dict[str, Any],
    ) -> tuple[WalletPass, bool]:
        """Find-or-create a pass; on creation its tag starts at the current clock."""
        return await get_or_create(
            self._session,
            WalletPass,
            key={"pass_type_identifier": pass_type_identifier, "serial_number": serial_number},
            values={"last_update_tag": self._clock(), **values},
        )

    async def passes_of_type(self, pass_type_identifier: str) -> list[WalletPass]:
        result = await self._session.execute(
            select(WalletPass).where(WalletPass.pass_type_identifier == pass_type_identifier)
        )
        return list(result.scalars().all())

    async def bump_update_tag(self, pass_type_identifier: str, serial_number: str) -> int | None:
        """Advance the pass's tag to max(now, previous + 1). Returns None for unknown passes."""
        now = self._clock()
        result = await self._session.execute(
            update(WalletPass)
            .where(
                WalletPass.pass_type_identifier == pass_type_identifier,
                WalletPass.serial_number == serial_number,
            )
            .values(
                last_update_tag=case(
                    (WalletPass.last_update_tag < now, now),
                    else_=WalletPass.last_update_tag + 1,
                )
            )
            .returning(WalletPass.last_update_tag)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    # --- devices ---

    async def upsert_device(self, device_library_identifier: str, push_token: str) -> tuple[Device, bool]:
        device, created = await get_or_create(
            self._session,
            Device,
            key={"device_library_identifier": device_library_identifier},
            values={"push_token": push_token},
        )
        if not created and device.push_token != push_token:
            logger.info(
                "Device %s re-registered with a new push token",
                device_library_identifier,
            )
            device.push_token = push_token
            await self._session.flush()
        return device, created

    async def delete_device_if_orphaned(self, device_library_identifier: str) -> bool:
        """Delete the device only when no registration references it."""
        orphaned = ~select(Registration.id).where(Registration.device_id == Device.id).exists()
        result = await self._session.execute(
            delete(Device)
            .where(Device.device_library_identifier == device_library_identifier, orphaned)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def delete_orphaned_devices(self) -> int:
        orphaned = ~select(Registration.id).where(Registration.device_id == Device.id).exists()
        result = await self._session.execute(
            delete(Device).where(orphaned).execution_options(synchronize_session=False)
        )
        return result.rowcount

    # --- registrations ---

    async def register(self, device: Device, wallet_pass: WalletPass) -> bool:
        _, created = await get_or_create(
            self._session,
            Registration,
            key={"device_id": device.id, "pass_id": wallet_pass.id},
        )
        return created

    async def delete_registration(
        self,
        device_library_identifier: str,
        pass_type_identifier: str,
        serial_number: str,
        push_token: str | None = None,
    ) -> bool:
        """Delete one registration, then the device if it holds no other passes.

        When `push_token` is given the registration is only removed if the
        device still uses that token, so a dead token reported for an old
        registration cannot remove a device that has since re-registered.
        """
        device_ids = select(Device.id).where(Device.device_library_identifier == device_library_identifier)
        if push_token is not None:
            device_ids = device_ids.where(Device.push_token == push_token)
        pass_ids = select(WalletPass.id).where(
            WalletPass.pass_type_identifier == pass_type_identifier,
            WalletPass.serial_number == serial_number,
        )
        result = await self._session.execute(
            delete(Registration)
            .where(Registration.device_id.in_(device_ids), Registration.pass_id.in_(pass_ids))
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount > 0
        await self.delete_device_if_orphaned(device_library_identifier)
        return deleted

    async def registered_passes(
        self,
        device_library_identifier: str,
        pass_type_identifier: str,
    ) -> list[WalletPass]:
        result = await self._session.execute(
            select(WalletPass)
            .join(Registration, Registration.pass_id == WalletPass.id)
            .join(Device, Device.id == Registration.device_id)
            .where(
                Device.device_library_identifier == device_library_identifier,
                WalletPass.pass_type_identifier == pass_type_identifier,
            )
            .order_by(WalletPass.serial_number)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def push_targets(self, pass_type_identifier: str, serial_number: str) -> list[PushTarget]:
        result = await self._session.execute(
            select(Device.device_library_identifier, Device.push_token)
            .join(Registration, Registration.device_id == Device.id)
            .join(WalletPass, WalletPass.id == Registration.pass_id)
            .where(
                WalletPass.pass_type_identifier == pass_type_identifier,
                WalletPass.serial_number == serial_number,
            )
            .order_by(Device.device_library_identifier)
        )
        return [PushTarget(*row) for row in result.all()]

