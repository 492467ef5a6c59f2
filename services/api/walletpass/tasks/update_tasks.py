"""Celery tasks for pass update notifications and registration upkeep."""

import asyncio
import logging

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from walletpass.config import get_settings
from walletpass.errors import NotFoundError
from walletpass.services.push_dispatcher import get_push_dispatcher
from walletpass.services.registration_store import RegistrationStore
from walletpass.services.update_orchestrator import UpdateOrchestrator, UpdateReport

logger = logging.getLogger(__name__)


def _get_async_session(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def _bump_only(session_factory, pass_type_identifier: str, serial_number: str) -> dict:
    async with session_factory() as db:
        tag = await RegistrationStore(db).bump_update_tag(pass_type_identifier, serial_number)
        await db.commit()
    if tag is None:
        raise NotFoundError(f"Unknown pass {pass_type_identifier}/{serial_number}")
    return UpdateReport(pass_type_identifier, serial_number, tag).as_dict()


@shared_task(
    bind=True,
    name="walletpass.tasks.update_tasks.notify_pass_updated",
)
def notify_pass_updated(self, pass_type_identifier: str, serial_number: str):
    """Bump a pass's update tag and push a background notification to its devices."""

    async def _run():
        settings = get_settings()
        engine = create_async_engine(settings.database_url, echo=False)
        session_factory = _get_async_session(engine)
        try:
            if not settings.apns_enabled:
                logger.warning("APNs disabled; updating tag for %s/%s without pushing", pass_type_identifier, serial_number)
                return await _bump_only(session_factory, pass_type_identifier, serial_number)

            async with get_push_dispatcher(settings) as dispatcher:
                orchestrator = UpdateOrchestrator(session_factory, dispatcher, settings)
                report = await orchestrator.pass_changed(pass_type_identifier, serial_number)
            return report.as_dict()
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except NotFoundError as e:
        logger.warning("Skipping update notification: %s", e)
        return {"status": "not_found"}


@shared_task(name="walletpass.tasks.update_tasks.cleanup_orphaned_devices")
def cleanup_orphaned_devices():
    """Remove devices that no longer hold any registered pass."""

    async def _run() -> int:
        settings = get_settings()
        engine = create_async_engine(settings.database_url, echo=False)
        session_factory = _get_async_session(engine)
        try:
            async with session_factory() as db:
                removed = await RegistrationStore(db).delete_orphaned_devices()
                await db.commit()
            return removed
        finally:
            await engine.dispose()

    removed = asyncio.run(_run())
    logger.info("Cleaned up %d orphaned devices", removed)
    return removed
