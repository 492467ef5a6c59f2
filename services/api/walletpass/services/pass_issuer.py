"""Issuing passes and replacing their content."""

import logging
from typing import Any

from walletpass.errors import ConflictError, NotFoundError
from walletpass.models.wallet_pass import WalletPass
from walletpass.services.crypto_service import CryptoService
from walletpass.services.pass_producer import PassArtifactProducer
from walletpass.services.registration_store import RegistrationStore

logger = logging.getLogger(__name__)

# Push tokens belong to registrations, never to the pass itself
_REGISTRATION_ONLY_KEYS = ("deviceToken", "pushToken")
# Kept in dedicated columns, not in the stored property bag
_IDENTIFIER_KEYS = ("serialNumber", "authenticationToken")


def clean_properties(properties: dict[str, Any]) -> dict[str, Any]:
    cleaned = dict(properties)
    for key in _REGISTRATION_ONLY_KEYS:
        if cleaned.pop(key, None) is not None:
            logger.warning("Dropped %s from pass properties; push tokens come from device registration", key)
    return cleaned


def _stored_properties(properties: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in properties.items() if k not in _IDENTIFIER_KEYS}


class PassIssuer:
    def __init__(
        self,
        store: RegistrationStore,
        crypto: CryptoService,
        producer: PassArtifactProducer,
    ) -> None:
        self._store = store
        self._crypto = crypto
        self._producer = producer

    async def issue(self, template_id: str, properties: dict[str, Any]) -> WalletPass:
        """Produce a new signed pass and record its update identifiers."""
        cleaned = clean_properties(properties)
        issued = await self._producer.produce(template_id, cleaned)

        wallet_pass, created = await self._store.record_pass(
            issued.pass_type_identifier,
            issued.serial_number,
            {
                "authentication_token": self._crypto.encrypt(issued.authentication_token),
                "web_service_url": issued.web_service_url,
                "template_id": template_id,
                "properties": _stored_properties(cleaned),
                "artifact": issued.artifact,
            },
        )
        if not created:
            raise ConflictError(f"Pass {issued.pass_type_identifier}/{issued.serial_number} already issued")

        logger.info("Issued pass %s/%s", issued.pass_type_identifier, issued.serial_number)
        return wallet_pass

    async def refresh(
        self,
        pass_type_identifier: str,
        serial_number: str,
        properties: dict[str, Any],
    ) -> WalletPass:
        """Regenerate the artifact with merged properties, keeping serial and token.

        Does not bump the update tag; the update orchestrator does that when
        it signals devices.
        """
        wallet_pass = await self._store.get_pass(pass_type_identifier, serial_number)
        if wallet_pass is None:
            raise NotFoundError("Pass not found")
        if not wallet_pass.template_id:
            raise ConflictError("Pass was not issued from a template and cannot be regenerated")

        merged = {**wallet_pass.properties, **_stored_properties(clean_properties(properties))}
        issued = await self._producer.produce(
            wallet_pass.template_id,
            {
                **merged,
                "serialNumber": serial_number,
                "authenticationToken": self._crypto.decrypt(wallet_pass.authentication_token),
            },
        )

        wallet_pass.properties = merged
        wallet_pass.artifact = issued.artifact
        await self._store.session.flush()
        logger.info("Regenerated pass %s/%s", pass_type_identifier, serial_number)
        return wallet_pass
