"""PassKit web service request and response bodies.

Field names follow the PassKit web service wire format.
"""

from pydantic import BaseModel, Field


class PushTokenRequest(BaseModel):
    pushToken: str = Field(..., min_length=1, max_length=512)


class SerialNumbersResponse(BaseModel):
    serialNumbers: list[str]
    lastUpdated: str


class LogRequest(BaseModel):
    logs: list[str] = Field(default_factory=list, max_length=100)
