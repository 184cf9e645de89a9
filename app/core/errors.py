"""Session Router – Exception hierarchy."""


class RouterError(Exception):
    """Base class for all session-router errors."""


class ChannelNotFoundError(RouterError):
    def __init__(self, tenant_id: str, slot_id: int) -> None:
        super().__init__(f"Channel {tenant_id}/slot{slot_id} not found")
        self.tenant_id = tenant_id
        self.slot_id = slot_id


class TransportError(RouterError):
    """Raised by a transport when a send/lookup fails at the transport level."""


class SocketNotReadyError(TransportError):
    """The channel's socket did not report ready within the bounded wait."""


class CrmError(RouterError):
    def __init__(self, message: str, status_code: int | None = None, body: object = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CrmAuthError(CrmError):
    """The CRM rejected the bearer token even after one refresh."""


class TokenUnavailableError(RouterError):
    """No CRM token is stored for the tenant."""
