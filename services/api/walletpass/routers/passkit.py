"""PassKit web service: the endpoints a device's wallet calls.

Paths are fixed by the protocol. Each endpoint authenticates with
`Authorization: ApplePass <authenticationToken>`; authorization failures are
turned into 401 by the WalletPassError handler.
"""

import logging
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime

from fastapi import APIRouter, Depends, Header, Query, Response, status

from walletpass.dependencies import get_registration_service
from walletpass.middleware.logging import redact_secrets
from walletpass.schemas.passkit import LogRequest, PushTokenRequest, SerialNumbersResponse
from walletpass.services.registration_service import RegistrationService, RegistrationStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["passkit"])

PKPASS_MEDIA_TYPE = "application/vnd.apple.pkpass"


def _http_date(tag: int) -> str:
    return format_datetime(datetime.fromtimestamp(tag // 1000, tz=timezone.utc), usegmt=True)


def _not_modified(if_modified_since: str | None, tag: int) -> bool:
    """True when the device's copy is at least as new as `tag`.

    HTTP dates only carry whole seconds, so a pass bumped within the same
    second as the device's copy is always re-sent.
    """
    if not if_modified_since:
        return False
    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError):
        return False
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return int(since.timestamp()) * 1000 >= tag


@router.post("/devices/{device_library_identifier}/registrations/{pass_type_identifier}/{serial_number}")
async def register_device(
    device_library_identifier: str,
    pass_type_identifier: str,
    serial_number: str,
    body: PushTokenRequest,
    authorization: str | None = Header(None),
    service: RegistrationService = Depends(get_registration_service),
):
    """Register a device to receive push notifications for a pass.

    201 for a new registration, 200 if the device was already registered.
    """
    result = await service.register(
        device_library_identifier,
        pass_type_identifier,
        serial_number,
        body.pushToken,
        authorization,
    )
    if result is RegistrationStatus.CREATED:
        return Response(status_code=status.HTTP_201_CREATED)
    return Response(status_code=status.HTTP_200_OK)


@router.delete("/devices/{device_library_identifier}/registrations/{pass_type_identifier}/{serial_number}")
async def unregister_device(
    device_library_identifier: str,
    pass_type_identifier: str,
    serial_number: str,
    authorization: str | None = Header(None),
    service: RegistrationService = Depends(get_registration_service),
):
    """Unregister a device. Answers 200 whether or not a registration existed."""
    await service.unregister(device_library_identifier, pass_type_identifier, serial_number, authorization)
    return Response(status_code=status.HTTP_200_OK)


@router.get(
    "/devices/{device_library_identifier}/registrations/{pass_type_identifier}",
    response_model=SerialNumbersResponse,
    responses={204: {"description": "No matching passes"}},
)
async def list_updatable_passes(
    device_library_identifier: str,
    pass_type_identifier: str,
    passes_updated_since: str | None = Query(None, alias="passesUpdatedSince"),
    authorization: str | None = Header(None),
    service: RegistrationService = Depends(get_registration_service),
):
    """Serial numbers of the device's passes updated since the given tag."""
    updatable = await service.list_updatable(
        device_library_identifier,
        pass_type_identifier,
        passes_updated_since,
        authorization,
    )
    if updatable is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return SerialNumbersResponse(
        serialNumbers=updatable.serial_numbers,
        lastUpdated=str(updatable.last_updated),
    )


@router.get("/passes/{pass_type_identifier}/{serial_number}")
async def get_latest_pass(
    pass_type_identifier: str,
    serial_number: str,
    authorization: str | None = Header(None),
    if_modified_since: str | None = Header(None),
    service: RegistrationService = Depends(get_registration_service),
):
    """Return the latest signed version of a pass."""
    artifact = await service.fetch_updated_pass(pass_type_identifier, serial_number, authorization)
    last_modified = _http_date(artifact.last_update_tag)
    if _not_modified(if_modified_since, artifact.last_update_tag):
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers={"Last-Modified": last_modified})
    return Response(
        content=artifact.content,
        media_type=PKPASS_MEDIA_TYPE,
        headers={"Last-Modified": last_modified},
    )


@router.post("/log")
async def log_device_messages(body: LogRequest):
    """Record error messages reported by devices."""
    for message in body.logs:
        logger.warning("Device log: %s", redact_secrets(message[:1000]))
    return Response(status_code=status.HTTP_200_OK)
