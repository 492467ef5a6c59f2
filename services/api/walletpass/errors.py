"""Error taxonomy shared by the web service, dispatcher and orchestrator."""


class WalletPassError(Exception):
    """Base class for all service errors."""

    status_code = 500
    detail = "An internal error occurred."

    def __init__(self, detail: str | None = None) -> None:
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class AuthorizationError(WalletPassError):
    """Missing or mismatched `ApplePass` credential. Never retried."""

    status_code = 401
    detail = "Unauthorized"


class NotFoundError(WalletPassError):
    """Unknown device, pass or registration."""

    status_code = 404
    detail = "Not found"


class InternalError(WalletPassError):
    """Registration store failure."""

    status_code = 500


class TransientDeliveryError(WalletPassError):
    """Push gateway timeout or transport failure; retried with backoff."""

    detail = "Push delivery failed"


class DeadTokenError(WalletPassError):
    """Gateway reported the push token as invalid or unregistered."""

    detail = "Push token is no longer valid"


class ConflictError(WalletPassError):
    """A pass with this serial number was already issued."""

    status_code = 409
    detail = "Conflict"
