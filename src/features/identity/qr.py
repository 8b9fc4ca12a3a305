"""QR code payload decoding."""

import base64
import binascii
import json
import logging
import time
from typing import Any

from pydantic import ValidationError

from .exceptions import InvalidQrPayload
from .schemas import QrHints, QrPayload

logger = logging.getLogger(__name__)

MAX_PAYLOAD_LENGTH = 8192


def _load_json_object(raw: str) -> dict[str, Any]:
    """Parse the payload as JSON, falling back to base64-encoded JSON."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        try:
            decoded = base64.b64decode(raw, validate=True).decode("utf-8")
            data = json.loads(decoded)
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as err:
            raise InvalidQrPayload("QR code is neither JSON nor base64-encoded JSON") from err

    if not isinstance(data, dict):
        raise InvalidQrPayload("QR code must encode a JSON object")
    return data


def decode_qr_payload(raw: str, now_ms: int | None = None) -> QrPayload:
    """Decode a scanned QR string into a token and identity hints.

    Two layouts are accepted: the ERP layout (``qrToken``, ``userId``,
    ``username``, ``email``, ``name``, ``phone``) and the mobile export layout
    (``emp_id``, ``emp_uname``, ``emp_email``, ``emp_name``, ``emp_phone``).
    When no token is present but an employee id is, a ``qr_<emp_id>_<ms>`` token
    is derived.

    Args:
        raw: Text read from the QR code
        now_ms: Millisecond timestamp for derived tokens (defaults to now)

    Returns:
        QrPayload with the token and hints

    Raises:
        InvalidQrPayload: If the payload is empty, malformed or carries no token

    """
    raw = (raw or "").strip()
    if not raw:
        raise InvalidQrPayload("QR code is empty")
    if len(raw) > MAX_PAYLOAD_LENGTH:
        raise InvalidQrPayload("QR code payload is too large")

    data = _load_json_object(raw)

    try:
        hints = QrHints.model_validate(data)
    except ValidationError as err:
        raise InvalidQrPayload("QR code identity fields are malformed") from err

    token = data.get("qrToken") or data.get("qr_token")
    if not token:
        if hints.user_id is None:
            raise InvalidQrPayload("QR code carries neither a token nor an employee id")
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        token = f"qr_{hints.user_id}_{stamp}"
        logger.debug(f"Derived QR token for employee {hints.user_id}")

    if not isinstance(token, str):
        raise InvalidQrPayload("QR token must be a string")

    return QrPayload(token=token, hints=hints)
