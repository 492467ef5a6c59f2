"""PassKit web service operations: register, unregister, list, fetch.

Every operation authenticates the `Authorization: ApplePass <token>`
credential against the pass's stored authenticationToken before it touches
the store.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from walletpass.errors import AuthorizationError, NotFoundError
from walletpass.metrics import registrations_total, unregistrations_total
from walletpass.models.wallet_pass import WalletPass
from walletpass.services.crypto_service import CryptoService
from walletpass.services.registration_store import RegistrationStore

logger = logging.getLogger(__name__)

AUTH_SCHEME = "ApplePass"


class RegistrationStatus(str, Enum):
    CREATED = "created"
    ALREADY_REGISTERED = "already_registered"


@dataclass(frozen=True)
class UpdatableSerials:
    serial_numbers: list[str]
    last_updated: int


@dataclass(frozen=True)
class PassArtifact:
    content: bytes
    last_update_tag: int


def parse_authorization(header: str | None) -> str:
    """Extract the token from `ApplePass <token>`."""
    if not header:
        raise AuthorizationError("Missing Authorization header")
    scheme, _, token = header.strip().partition(" ")
    token = token.strip()
    if scheme != AUTH_SCHEME or not token:
        raise AuthorizationError("Malformed Authorization header")
    return token


def parse_updated_since(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring invalid passesUpdatedSince=%r", value)
        return None


class RegistrationService:
    def __init__(self, store: RegistrationStore, crypto: CryptoService) -> None:
        self._store = store
        self._crypto = crypto

    async def _authenticate(
        self,
        pass_type_identifier: str,
        serial_number: str,
        authorization: str | None,
    ) -> WalletPass:
        token = parse_authorization(authorization)
        wallet_pass = await self._store.get_pass(pass_type_identifier, serial_number)
        if wallet_pass is None or not self._crypto.matches(wallet_pass.authentication_token, token):
            raise AuthorizationError()
        return wallet_pass

    async def register(
        self,
        device_library_identifier: str,
        pass_type_identifier: str,
        serial_number: str,
        push_token: str,
        authorization: str | None,
    ) -> RegistrationStatus:
        try:
            wallet_pass = await self._authenticate(pass_type_identifier, serial_number, authorization)
        except AuthorizationError:
            registrations_total.labels(result="unauthorized").inc()
            raise

        device, _ = await self._store.upsert_device(device_library_identifier, push_token)
        created = await self._store.register(device, wallet_pass)

        status = RegistrationStatus.CREATED if created else RegistrationStatus.ALREADY_REGISTERED
        registrations_total.labels(result=status.value).inc()
        logger.info(
            "Registration %s device=%s pass=%s/%s",
            status.value,
            device_library_identifier,
            pass_type_identifier,
            serial_number,
        )
        return status

    async def unregister(
        self,
        device_library_identifier: str,
        pass_type_identifier: str,
        serial_number: str,
        authorization: str | None,
    ) -> bool:
        """Remove a registration. Missing registrations are not an error."""
        await self._authenticate(pass_type_identifier, serial_number, authorization)

        deleted = await self._store.delete_registration(
            device_library_identifier, pass_type_identifier, serial_number
        )
        unregistrations_total.inc()
        logger.info(
            "Unregistered device=%s pass=%s/%s deleted=%s",
            device_library_identifier,
            pass_type_identifier,
            serial_number,
            deleted,
        )
        return deleted

    async def list_updatable(
        self,
        device_library_identifier: str,
        pass_type_identifier: str,
        passes_updated_since: str | None,
        authorization: str | None,
    ) -> UpdatableSerials | None:
        """Serials changed after `passes_updated_since`, or None when there are none.

        The credential must belong to one of the passes the device holds
        for this pass type. A device holding none of them has nothing to
        update, provided the credential matches some issued pass of the type.
        """
        token = parse_authorization(authorization)
        passes = await self._store.registered_passes(device_library_identifier, pass_type_identifier)
        if not passes:
            issued = await self._store.passes_of_type(pass_type_identifier)
            if not any(self._crypto.matches(p.authentication_token, token) for p in issued):
                raise AuthorizationError()
            return None
        if not any(self._crypto.matches(p.authentication_token, token) for p in passes):
            raise AuthorizationError()

        since = parse_updated_since(passes_updated_since)
        changed = [p for p in passes if since is None or p.last_update_tag > since]
        if not changed:
            return None
        return UpdatableSerials(
            serial_numbers=[p.serial_number for p in changed],
            last_updated=max(p.last_update_tag for p in changed),
        )

    async def fetch_updated_pass(
        self,
        pass_type_identifier: str,
        serial_number: str,
        authorization: str | None,
    ) -> PassArtifact:
        token = parse_authorization(authorization)
        wallet_pass = await self._store.get_pass(pass_type_identifier, serial_number)
        if wallet_pass is None:
            raise NotFoundError("Pass not found")
        if not self._crypto.matches(wallet_pass.authentication_token, token):
            raise AuthorizationError()
        if wallet_pass.artifact is None:
            raise NotFoundError("No artifact stored for pass")
        return PassArtifact(content=wallet_pass.artifact, last_update_tag=wallet_pass.last_update_tag)
