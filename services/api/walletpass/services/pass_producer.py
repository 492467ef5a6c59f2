"""Signed .pkpass artifact production.

The update pipeline only needs "template id + property bag in, signed blob
plus update identifiers out"; `PassArtifactProducer` is that seam.
`PkPassProducer` builds the bundle from a template directory: it stamps the
identifiers into pass.json, writes the SHA-1 manifest and a detached PKCS#7
signature, and zips the result. Field layout and images come from the
template as-is.
"""

import asyncio
import hashlib
import io
import json
import logging
import secrets
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from walletpass.config import Settings
from walletpass.errors import WalletPassError

logger = logging.getLogger(__name__)

# Top-level pass.json keys a property bag may set directly
PASS_JSON_PROPERTIES = (
    "organizationName",
    "description",
    "logoText",
    "backgroundColor",
    "foregroundColor",
    "labelColor",
)


class PassKind(str, Enum):
    STAMPS = "stamps"
    POINTS = "points"
    SIMPLE = "simple"

    @property
    def template_id(self) -> str:
        return _KIND_TEMPLATES[self]


_KIND_TEMPLATES = {
    PassKind.STAMPS: "StoreCard",
    PassKind.POINTS: "Custom",
    PassKind.SIMPLE: "Generic",
}


class PassTemplateError(WalletPassError):
    """Template missing or unreadable."""

    status_code = 422
    detail = "Unknown pass template"


@dataclass(frozen=True)
class IssuedPass:
    pass_type_identifier: str
    serial_number: str
    authentication_token: str
    web_service_url: str
    artifact: bytes


def new_serial_number() -> str:
    return secrets.token_hex(8)


def new_authentication_token() -> str:
    # PassKit requires at least 16 characters
    return secrets.token_urlsafe(24)


class PassArtifactProducer(ABC):
    @abstractmethod
    async def produce(self, template_id: str, properties: dict[str, Any]) -> IssuedPass:
        """Build a signed pass.

        `properties` may carry `serialNumber` and `authenticationToken`;
        missing ones are generated.
        """


class PkPassProducer(PassArtifactProducer):
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._templates_dir = Path(settings.pass_templates_dir)
        self._signer: tuple[x509.Certificate, Any, x509.Certificate] | None = None

    def _load_signer(self) -> tuple[x509.Certificate, Any, x509.Certificate]:
        if self._signer is None:
            s = self._settings
            passphrase = s.pass_signer_key_passphrase.get_secret_value() or None
            cert = x509.load_pem_x509_certificate(Path(s.pass_signer_cert_path).read_bytes())
            key = serialization.load_pem_private_key(
                Path(s.pass_signer_key_path).read_bytes(),
                password=passphrase.encode("utf-8") if passphrase else None,
            )
            wwdr = x509.load_pem_x509_certificate(Path(s.pass_wwdr_cert_path).read_bytes())
            self._signer = (cert, key, wwdr)
        return self._signer

    def _read_template(self, template_id: str) -> dict[str, bytes]:
        template_dir = self._templates_dir / f"{template_id}.pass"
        if not template_dir.is_dir():
            raise PassTemplateError(f"Unknown pass template: {template_id}")
        files = {p.name: p.read_bytes() for p in sorted(template_dir.iterdir()) if p.is_file()}
        files.pop("manifest.json", None)
        files.pop("signature", None)
        return files

    def build_pass_json(
        self,
        template: bytes | None,
        serial_number: str,
        authentication_token: str,
        properties: dict[str, Any],
    ) -> dict[str, Any]:
        pass_json: dict[str, Any] = json.loads(template) if template else {}
        pass_json.update(
            {
                "formatVersion": 1,
                "passTypeIdentifier": self._settings.pass_type_identifier,
                "teamIdentifier": self._settings.team_identifier,
                "serialNumber": serial_number,
                "authenticationToken": authentication_token,
                "webServiceURL": self._settings.web_service_url,
            }
        )
        for key in PASS_JSON_PROPERTIES:
            if properties.get(key) is not None:
                pass_json[key] = properties[key]
        return pass_json

    def sign(self, manifest: bytes) -> bytes:
        cert, key, wwdr = self._load_signer()
        return (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(manifest)
            .add_signer(cert, key, hashes.SHA256())
            .add_certificate(wwdr)
            .sign(
                serialization.Encoding.DER,
                [pkcs7.PKCS7Options.DetachedSignature, pkcs7.PKCS7Options.Binary],
            )
        )

    def build_bundle(self, template_id: str, properties: dict[str, Any]) -> IssuedPass:
        serial_number = str(properties.get("serialNumber") or new_serial_number())
        authentication_token = str(properties.get("authenticationToken") or new_authentication_token())

        files = self._read_template(template_id)
        pass_json = self.build_pass_json(files.get("pass.json"), serial_number, authentication_token, properties)
        files["pass.json"] = json.dumps(pass_json, ensure_ascii=False).encode("utf-8")

        manifest = {name: hashlib.sha1(content).hexdigest() for name, content in files.items()}
        manifest_json = json.dumps(manifest, sort_keys=True).encode("utf-8")
        files["manifest.json"] = manifest_json
        files["signature"] = self.sign(manifest_json)

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as bundle:
            for name, content in files.items():
                bundle.writestr(name, content)

        logger.info("Built pass %s serial=%s template=%s", self._settings.pass_type_identifier, serial_number, template_id)
        return IssuedPass(
            pass_type_identifier=self._settings.pass_type_identifier,
            serial_number=serial_number,
            authentication_token=authentication_token,
            web_service_url=self._settings.web_service_url,
            artifact=buffer.getvalue(),
        )

    async def produce(self, template_id: str, properties: dict[str, Any]) -> IssuedPass:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self.build_bundle(template_id, properties))


_producer: PassArtifactProducer | None = None


def get_pass_producer(settings: Settings) -> PassArtifactProducer:
    global _producer
    if _producer is None:
        _producer = PkPassProducer(settings)
    return _producer
