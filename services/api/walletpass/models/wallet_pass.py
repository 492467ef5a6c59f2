"""Issued pass model."""

from typing import Any

from sqlalchemy import JSON, BigInteger, LargeBinary, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from walletpass.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class WalletPass(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A pass we issued, keyed by (pass_type_identifier, serial_number)."""

    __tablename__ = "passes"
    __table_args__ = (
        UniqueConstraint("pass_type_identifier", "serial_number", name="uq_pass_type_serial"),
    )

    pass_type_identifier: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    serial_number: Mapped[str] = mapped_column(String(255), nullable=False)
    authentication_token: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
        comment="Encrypted per-pass authenticationToken",
    )
    web_service_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    template_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    properties: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    artifact: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    # Milliseconds since the epoch; only ever moves forward
    last_update_tag: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<WalletPass {self.pass_type_identifier}/{self.serial_number}>"
