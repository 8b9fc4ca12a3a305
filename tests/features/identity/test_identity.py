"""Tests for QR decoding, identity reference canonicalization and the HTTP ERP gateway."""

import base64
import json

import httpx
import pytest

from src.features.identity.exceptions import InvalidQrPayload, LegacyGatewayUnavailable, LegacyTokenRejected
from src.features.identity.gateway import HttpLegacyIdentityGateway
from src.features.identity.qr import MAX_PAYLOAD_LENGTH, decode_qr_payload
from src.features.identity.schemas import LegacyIdentity, canonical_identity_ref


class TestCanonicalIdentityRef:
    @pytest.mark.parametrize("raw", ["42", "usr_42", "usr_42_mobile", 42, " 42 "])
    def test_variants_collapse(self, raw):
        assert canonical_identity_ref(raw) == "42"

    def test_non_numeric_refs_are_kept(self):
        assert canonical_identity_ref("EMP-0007") == "EMP-0007"

    def test_empty_ref_is_rejected(self):
        with pytest.raises(ValueError):
            canonical_identity_ref("  ")

    def test_identity_accepts_erp_field_names(self):
        identity = LegacyIdentity.model_validate(
            {
                "emp_id": "usr_9_mobile",
                "emp_uname": "jdoe",
                "emp_email": "JDoe@Acme-Logistics.com ",
                "emp_name": "John Doe",
                "emp_mobile_no": "+15550199",
            }
        )
        assert identity.ref == "9"
        assert identity.email == "jdoe@acme-logistics.com"
        assert identity.phone == "+15550199"
        assert identity.is_active is True


class TestDecodeQrPayload:
    def test_erp_layout(self):
        payload = decode_qr_payload(json.dumps({"qrToken": "tok-1", "userId": 42, "email": "a@x.com"}))
        assert payload.token == "tok-1"
        assert payload.hints.user_id == "42"
        assert payload.hints.email == "a@x.com"

    def test_base64_layout(self):
        raw = base64.b64encode(json.dumps({"qrToken": "tok-2"}).encode()).decode()
        assert decode_qr_payload(raw).token == "tok-2"

    def test_mobile_export_layout_derives_token(self):
        payload = decode_qr_payload(json.dumps({"emp_id": "77", "emp_uname": "kim"}), now_ms=1700000000000)
        assert payload.token == "qr_77_1700000000000"
        assert payload.hints.username == "kim"

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "not json at all",
            json.dumps(["qrToken", "x"]),
            json.dumps({"email": "a@x.com"}),
            json.dumps({"qrToken": 12345}),
        ],
    )
    def test_rejects_malformed_payloads(self, raw):
        with pytest.raises(InvalidQrPayload):
            decode_qr_payload(raw)

    def test_rejects_oversized_payload(self):
        with pytest.raises(InvalidQrPayload, match="too large"):
            decode_qr_payload("x" * (MAX_PAYLOAD_LENGTH + 1))


def _gateway(handler) -> HttpLegacyIdentityGateway:
    return HttpLegacyIdentityGateway(
        base_url="http://erp.test",
        api_key="erp-key",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestHttpLegacyIdentityGateway:
    async def test_validate_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"id": "usr_5_mobile", "username": "amy", "email": "amy@acme-logistics.com", "name": "Amy"},
            )

        gateway = _gateway(handler)
        identity = await gateway.validate_token("tok")
        await gateway.aclose()

        assert identity.ref == "5"
        assert seen == {"path": "/auth/validate-qr", "auth": "Bearer erp-key", "body": {"qrToken": "tok"}}

    @pytest.mark.parametrize("status_code", [400, 401, 404, 410])
    async def test_rejected_token(self, status_code):
        gateway = _gateway(lambda request: httpx.Response(status_code))
        with pytest.raises(LegacyTokenRejected):
            await gateway.validate_token("tok")

    async def test_server_error_is_unavailable(self):
        gateway = _gateway(lambda request: httpx.Response(502))
        with pytest.raises(LegacyGatewayUnavailable):
            await gateway.validate_token("tok")

    async def test_transport_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        gateway = _gateway(handler)
        with pytest.raises(LegacyGatewayUnavailable):
            await gateway.validate_token("tok")

    async def test_malformed_identity_is_unavailable(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(LegacyGatewayUnavailable):
            await gateway.validate_token("tok")

    async def test_verify_password(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(200, json={"isValid": body == {"userId": "5", "password": "right"}})

        gateway = _gateway(handler)
        assert await gateway.verify_password("5", "right") is True
        assert await gateway.verify_password("5", "wrong") is False

    async def test_verify_password_unauthorized_is_false(self):
        gateway = _gateway(lambda request: httpx.Response(401))
        assert await gateway.verify_password("5", "pw") is False

    async def test_verify_password_server_error(self):
        gateway = _gateway(lambda request: httpx.Response(500))
        with pytest.raises(LegacyGatewayUnavailable):
            await gateway.verify_password("5", "pw")
