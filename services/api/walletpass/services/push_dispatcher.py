"""Silent "pass changed" pushes over the APNs HTTP/2 provider API."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum

import httpx

from walletpass.config import Settings
from walletpass.errors import DeadTokenError, TransientDeliveryError
from walletpass.metrics import push_deliveries_total, push_delivery_duration_seconds
from walletpass.services.provider_token import ProviderTokenSigner

logger = logging.getLogger(__name__)

_DEAD_TOKEN_REASONS = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"}
_RETRYABLE_STATUS = {429, 500, 503}


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    DEAD_TOKEN = "dead_token"
    # Gateway refused the request for a reason retrying will not fix
    # (bad topic, bad provider token, payload errors).
    REJECTED = "rejected"


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DeliveryOutcome
    status_code: int | None = None
    reason: str | None = None
    apns_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is DeliveryOutcome.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.outcome in (DeliveryOutcome.TIMEOUT, DeliveryOutcome.TRANSPORT_ERROR)

    def raise_for_outcome(self) -> None:
        if self.outcome is DeliveryOutcome.DEAD_TOKEN:
            raise DeadTokenError(self.reason)
        if self.retryable:
            raise TransientDeliveryError(self.reason)


def _extract_reason(response: httpx.Response) -> str:
    if not response.content:
        return f"HTTP {response.status_code}"
    try:
        parsed = response.json()
    except ValueError:
        return response.text[:255] or f"HTTP {response.status_code}"
    if not isinstance(parsed, dict):
        return f"HTTP {response.status_code}"
    reason = str(parsed.get("reason") or "").strip()
    return reason[:255] if reason else f"HTTP {response.status_code}"


def classify_response(status_code: int, reason: str) -> DeliveryOutcome:
    if status_code == 200:
        return DeliveryOutcome.SUCCESS
    if status_code == 410 or (status_code == 400 and reason in _DEAD_TOKEN_REASONS):
        return DeliveryOutcome.DEAD_TOKEN
    if status_code in _RETRYABLE_STATUS:
        return DeliveryOutcome.TRANSPORT_ERROR
    if status_code == 403 and reason == "ExpiredProviderToken":
        return DeliveryOutcome.TRANSPORT_ERROR
    return DeliveryOutcome.REJECTED


def _mask(push_token: str) -> str:
    return f"{push_token[:8]}..."


class PushDispatcher:
    """Delivers one background push to one device per call.

    The HTTP/2 client is shared by all calls on the instance so concurrent
    sends multiplex over one connection. Use as an async context manager, or
    call `aclose()`, to release the connection.
    """

    def __init__(
        self,
        settings: Settings,
        signer: ProviderTokenSigner,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._signer = signer
        self._timeout = settings.apns_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.apns_host,
                http2=True,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PushDispatcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def build_headers(self, topic: str) -> dict[str, str]:
        return {
            "authorization": f"bearer {self._signer.token()}",
            "apns-push-type": "background",
            "apns-priority": str(self._settings.apns_priority),
            "apns-expiration": str(self._settings.apns_expiration),
            # Must equal the passTypeIdentifier the pass was signed with
            "apns-topic": topic,
        }

    async def send_update(self, push_token: str, topic: str) -> DeliveryResult:
        """Tell the device behind `push_token` that a pass for `topic` changed."""
        start = time.monotonic()
        result = await self._send(push_token, topic)
        push_delivery_duration_seconds.observe(time.monotonic() - start)
        push_deliveries_total.labels(outcome=result.outcome.value).inc()
        return result

    async def _send(self, push_token: str, topic: str) -> DeliveryResult:
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(
                    f"/3/device/{push_token}",
                    content=json.dumps({}),
                    headers={**self.build_headers(topic), "content-type": "application/json"},
                ),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("APNs request timed out token=%s", _mask(push_token))
            return DeliveryResult(DeliveryOutcome.TIMEOUT, reason="timeout")
        except httpx.TransportError as e:
            logger.warning("APNs transport error token=%s: %s", _mask(push_token), e)
            return DeliveryResult(DeliveryOutcome.TRANSPORT_ERROR, reason=type(e).__name__)

        reason = _extract_reason(response) if response.status_code != 200 else None
        outcome = classify_response(response.status_code, reason or "")
        apns_id = response.headers.get("apns-id")

        if reason == "ExpiredProviderToken":
            self._signer.invalidate()

        if outcome is DeliveryOutcome.SUCCESS:
            logger.info("APNs sent token=%s topic=%s apns_id=%s", _mask(push_token), topic, apns_id)
        else:
            logger.warning(
                "APNs send failed token=%s topic=%s status=%s reason=%s",
                _mask(push_token),
                topic,
                response.status_code,
                reason,
            )
        return DeliveryResult(outcome, status_code=response.status_code, reason=reason, apns_id=apns_id)


def get_push_dispatcher(settings: Settings) -> PushDispatcher:
    return PushDispatcher(settings, ProviderTokenSigner.from_settings(settings))
