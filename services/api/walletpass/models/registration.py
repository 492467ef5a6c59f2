"""Registration model: the device <-> pass join table."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from walletpass.models.base import Base, UUIDPrimaryKeyMixin


class Registration(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("device_id", "pass_id", name="uq_registration_device_pass"),
    )

    device_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pass_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("passes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Registration device={self.device_id} pass={self.pass_id}>"
