"""Operator API schemas for issuing and updating passes."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from walletpass.services.pass_producer import PassKind


class PassIssueRequest(BaseModel):
    kind: PassKind | None = None
    template_id: str | None = Field(None, min_length=1, max_length=255)
    properties: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def template_or_kind(self) -> "PassIssueRequest":
        if self.template_id is None and self.kind is None:
            raise ValueError("Either kind or template_id is required")
        return self

    @property
    def resolved_template_id(self) -> str:
        return self.template_id or self.kind.template_id


class PassUpdateRequest(BaseModel):
    properties: dict[str, Any] = Field(default_factory=dict)


class PassResponse(BaseModel):
    pass_type_identifier: str
    serial_number: str
    web_service_url: str | None
    template_id: str | None
    last_update_tag: int
    registered_devices: int = 0
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class UpdateQueuedResponse(BaseModel):
    status: str = "queued"
    pass_type_identifier: str
    serial_number: str
