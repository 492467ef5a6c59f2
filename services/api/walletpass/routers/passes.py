"""Operator API: issue passes and announce content changes."""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from walletpass.config import Settings, get_settings
from walletpass.dependencies import get_current_operator, get_db
from walletpass.errors import NotFoundError
from walletpass.routers.passkit import PKPASS_MEDIA_TYPE
from walletpass.schemas.passes import (
    PassIssueRequest,
    PassResponse,
    PassUpdateRequest,
    UpdateQueuedResponse,
)
from walletpass.services.crypto_service import get_crypto_service
from walletpass.services.pass_issuer import PassIssuer
from walletpass.services.pass_producer import PassArtifactProducer, get_pass_producer
from walletpass.services.registration_store import RegistrationStore
from walletpass.tasks.update_tasks import notify_pass_updated

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/passes", tags=["passes"])


def get_producer(settings: Settings = Depends(get_settings)) -> PassArtifactProducer:
    return get_pass_producer(settings)


def get_pass_issuer(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    producer: PassArtifactProducer = Depends(get_producer),
) -> PassIssuer:
    return PassIssuer(RegistrationStore(db), get_crypto_service(settings), producer)


async def _pass_response(store: RegistrationStore, pass_type_identifier: str, serial_number: str) -> PassResponse:
    wallet_pass = await store.get_pass(pass_type_identifier, serial_number)
    if wallet_pass is None:
        raise NotFoundError("Pass not found")
    targets = await store.push_targets(pass_type_identifier, serial_number)
    return PassResponse(
        pass_type_identifier=wallet_pass.pass_type_identifier,
        serial_number=wallet_pass.serial_number,
        web_service_url=wallet_pass.web_service_url,
        template_id=wallet_pass.template_id,
        last_update_tag=wallet_pass.last_update_tag,
        registered_devices=len(targets),
        updated_at=wallet_pass.updated_at,
    )


@router.post("", response_model=PassResponse, status_code=201)
async def issue_pass(
    body: PassIssueRequest,
    operator: str = Depends(get_current_operator),
    issuer: PassIssuer = Depends(get_pass_issuer),
    db: AsyncSession = Depends(get_db),
):
    """Issue a new signed pass from a template and property bag."""
    wallet_pass = await issuer.issue(body.resolved_template_id, body.properties)
    logger.info("Operator %s issued pass %s", operator, wallet_pass.serial_number)
    return await _pass_response(RegistrationStore(db), wallet_pass.pass_type_identifier, wallet_pass.serial_number)


@router.get("/{pass_type_identifier}/{serial_number}", response_model=PassResponse)
async def get_pass_status(
    pass_type_identifier: str,
    serial_number: str,
    operator: str = Depends(get_current_operator),
    db: AsyncSession = Depends(get_db),
):
    return await _pass_response(RegistrationStore(db), pass_type_identifier, serial_number)


@router.get("/{pass_type_identifier}/{serial_number}/artifact")
async def download_pass(
    pass_type_identifier: str,
    serial_number: str,
    operator: str = Depends(get_current_operator),
    db: AsyncSession = Depends(get_db),
):
    """Download the current .pkpass for distribution to the holder."""
    wallet_pass = await RegistrationStore(db).get_pass(pass_type_identifier, serial_number)
    if wallet_pass is None or wallet_pass.artifact is None:
        raise NotFoundError("Pass not found")
    return Response(
        content=wallet_pass.artifact,
        media_type=PKPASS_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{serial_number}.pkpass"'},
    )


@router.put("/{pass_type_identifier}/{serial_number}", response_model=UpdateQueuedResponse, status_code=202)
async def update_pass(
    pass_type_identifier: str,
    serial_number: str,
    body: PassUpdateRequest,
    operator: str = Depends(get_current_operator),
    issuer: PassIssuer = Depends(get_pass_issuer),
    db: AsyncSession = Depends(get_db),
):
    """Replace pass content and notify registered devices."""
    await issuer.refresh(pass_type_identifier, serial_number, body.properties)
    # The new artifact must be visible before any device is told to fetch it
    await db.commit()
    notify_pass_updated.delay(pass_type_identifier, serial_number)
    logger.info("Operator %s updated pass %s/%s", operator, pass_type_identifier, serial_number)
    return UpdateQueuedResponse(pass_type_identifier=pass_type_identifier, serial_number=serial_number)


@router.post("/{pass_type_identifier}/{serial_number}/push", response_model=UpdateQueuedResponse, status_code=202)
async def push_pass_update(
    pass_type_identifier: str,
    serial_number: str,
    operator: str = Depends(get_current_operator),
    db: AsyncSession = Depends(get_db),
):
    """Notify registered devices that a pass changed without regenerating it."""
    if await RegistrationStore(db).get_pass(pass_type_identifier, serial_number) is None:
        raise NotFoundError("Pass not found")
    notify_pass_updated.delay(pass_type_identifier, serial_number)
    return UpdateQueuedResponse(pass_type_identifier=pass_type_identifier, serial_number=serial_number)
