"""Error taxonomy shared by every relay component.

Each error carries a short ``code`` used by the command dispatcher and the
HTTP layer to build structured failure payloads.
"""


class RelayError(RuntimeError):
    """Base class for errors surfaced to relay callers."""

    code = "error"

    def __init__(self, message: str = "relay error"):
        super().__init__(message)
        self.message = message


class ValidationError(RelayError):
    """Malformed input: bad domain, bad address or empty recipient list."""

    code = "validation"


class AuthError(RelayError):
    """Missing, malformed or unknown bearer token."""

    code = "unauthorized"


class ForbiddenError(RelayError):
    """The token is valid but does not authorize the sender domain."""

    code = "forbidden"


class ConflictError(RelayError):
    """The resource already exists."""

    code = "conflict"


class NotFoundError(RelayError):
    """The resource does not exist."""

    code = "not_found"


class TransportError(RelayError):
    """The outbound relay was unreachable, rejected the message or misbehaved."""

    code = "transport"


class PersistenceError(RelayError):
    """The underlying store failed or rejected a write."""

    code = "persistence"
