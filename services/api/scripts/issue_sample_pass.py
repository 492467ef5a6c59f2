"""Issue a sample stamp card into the dev DB and write it to disk."""

import asyncio
from pathlib import Path

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from walletpass.config import get_settings
from walletpass.services.crypto_service import get_crypto_service
from walletpass.services.pass_issuer import PassIssuer
from walletpass.services.pass_producer import PassKind, get_pass_producer
from walletpass.services.registration_store import RegistrationStore

SAMPLE_SERIAL = "1234"
SAMPLE_PROPERTIES = {
    "serialNumber": SAMPLE_SERIAL,
    "programName": "Hunter License",
    "organizationName": "Hunter Association",
    "description": "Hunter Association",
    "logoText": "Hunter License",
    "accountId": "SQ-12345A",
    "fullName": "Gon Freecss",
    "stamps": 0,
}


async def issue_sample():
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    async with session_factory() as db:
        store = RegistrationStore(db)
        existing = await store.get_pass(settings.pass_type_identifier, SAMPLE_SERIAL)
        if existing is not None:
            print(f"Sample pass {SAMPLE_SERIAL} already exists, skipping.")
            await engine.dispose()
            return

        issuer = PassIssuer(store, get_crypto_service(settings), get_pass_producer(settings))
        wallet_pass = await issuer.issue(PassKind.STAMPS.template_id, SAMPLE_PROPERTIES)
        await db.commit()

        output = Path(f"{SAMPLE_SERIAL}.pkpass")
        output.write_bytes(wallet_pass.artifact)
        print(f"Issued {wallet_pass.pass_type_identifier}/{wallet_pass.serial_number} -> {output}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(issue_sample())
