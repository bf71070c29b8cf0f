"""
Error taxonomy for the ckpool monitor.

Protocol failures derive from CKPoolError so request handlers can degrade a
single field with one except clause. The remaining errors map onto HTTP
responses in the server and access gate.
"""


class CKPoolError(Exception):
    """Base class for failures talking to the ckpool daemon."""


class CKPoolNotFoundError(CKPoolError):
    """The daemon socket path does not exist."""


class CKPoolConnectionError(CKPoolError):
    """The socket was unreachable or closed before sending anything."""


class CKPoolTimeoutError(CKPoolError):
    """No complete frame arrived within the socket timeout."""


class CKPoolParseError(CKPoolError):
    """The reply was neither valid JSON nor usable text."""


class EntityNotFoundError(Exception):
    """The daemon explicitly reported an unknown user or worker."""


class ValidationError(ValueError):
    """Malformed caller input, rejected before any daemon call."""


class RateLimitedError(Exception):
    """The client exceeded its request budget for the current window."""


class UnauthorizedError(Exception):
    """The request failed the shared-secret or same-origin check."""


class UpstreamUnavailableError(Exception):
    """An upstream source returned nothing usable for the whole response."""
