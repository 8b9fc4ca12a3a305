"""Legacy ERP integration errors.

These stay transport-agnostic; the auth orchestrator maps them to the typed
HTTP errors the client sees.
"""


class LegacyGatewayError(Exception):
    """Base class for legacy identity gateway failures."""


class LegacyGatewayUnavailable(LegacyGatewayError):
    """The legacy ERP could not be reached, timed out or answered with a server error."""


class LegacyTokenRejected(LegacyGatewayError):
    """The legacy ERP rejected the QR token as invalid or expired."""


class InvalidQrPayload(ValueError):
    """The scanned QR payload could not be decoded."""
