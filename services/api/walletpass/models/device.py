"""Device model: a wallet installation that registered for pass updates."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from walletpass.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Device(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "devices"

    device_library_identifier: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    # Replaced in place when the device re-registers with a new token
    push_token: Mapped[str] = mapped_column(String(512), nullable=False)

    def __repr__(self) -> str:
        return f"<Device {self.device_library_identifier}>"
