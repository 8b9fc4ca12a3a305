"""Legacy ERP identity gateway.

The legacy ERP is the source of truth for who a person is and what their ERP
password is. It may be slow or down, so every call is bounded and its failures
surface as ``LegacyGatewayError`` subclasses, never raw transport exceptions.
"""

import logging
import time
from typing import Protocol

import httpx
from pydantic import ValidationError

from src.config.settings import settings

from .exceptions import LegacyGatewayUnavailable, LegacyTokenRejected
from .schemas import LegacyIdentity

logger = logging.getLogger(__name__)


class LegacyIdentityGateway(Protocol):
    """Capabilities the auth flows need from the legacy ERP."""

    async def validate_token(self, token: str) -> LegacyIdentity:
        """Return the identity a QR token belongs to.

        Raises:
            LegacyTokenRejected: Token unknown, used or expired
            LegacyGatewayUnavailable: ERP unreachable or failing

        """
        ...

    async def verify_password(self, identity_ref: str, password: str) -> bool:
        """Check a plaintext ERP password for a canonical identity reference.

        Raises:
            LegacyGatewayUnavailable: ERP unreachable or failing

        """
        ...


class HttpLegacyIdentityGateway:
    """Legacy ERP client over its JSON HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.legacy_erp_base_url,
            headers={"Authorization": f"Bearer {api_key if api_key is not None else settings.legacy_erp_api_key}"},
            timeout=timeout or settings.legacy_erp_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, operation: str, path: str, payload: dict) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Legacy ERP {operation} failed after {time.perf_counter() - started:.3f}s: {e!r}")
            raise LegacyGatewayUnavailable(f"Legacy ERP {operation} failed") from e

        logger.info(f"Legacy ERP {operation} -> {response.status_code} in {time.perf_counter() - started:.3f}s")
        if response.status_code >= 500:
            raise LegacyGatewayUnavailable(f"Legacy ERP {operation} returned {response.status_code}")
        return response

    async def validate_token(self, token: str) -> LegacyIdentity:
        response = await self._post("qr_validation", "/auth/validate-qr", {"qrToken": token})

        if response.status_code in (400, 401, 403, 404, 410):
            raise LegacyTokenRejected("QR token rejected by legacy ERP")
        if response.status_code != 200:
            raise LegacyGatewayUnavailable(f"Unexpected legacy ERP status {response.status_code}")

        try:
            return LegacyIdentity.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise LegacyGatewayUnavailable("Legacy ERP returned a malformed identity") from e

    async def verify_password(self, identity_ref: str, password: str) -> bool:
        response = await self._post(
            "password_verification",
            "/auth/verify-password",
            {"userId": identity_ref, "password": password},
        )

        if response.status_code in (401, 403, 404):
            return False
        if response.status_code != 200:
            raise LegacyGatewayUnavailable(f"Unexpected legacy ERP status {response.status_code}")

        try:
            return bool(response.json().get("isValid", False))
        except (ValueError, AttributeError) as e:
            raise LegacyGatewayUnavailable("Legacy ERP returned a malformed password check") from e
