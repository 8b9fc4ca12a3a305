"""Legacy identity records and QR payload shapes."""

import re

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Upstream emits the same employee id as "42", "usr_42" or "usr_42_mobile"
_LEGACY_REF_PATTERN = re.compile(r"^usr_(?P<ref>.+?)(?:_mobile)?$")


def canonical_identity_ref(raw: str | int) -> str:
    """Collapse the legacy id spellings to one canonical form.

    Examples:
        >>> canonical_identity_ref("usr_42_mobile")
        '42'
        >>> canonical_identity_ref(42)
        '42'

    """
    ref = str(raw).strip()
    if not ref:
        raise ValueError("Identity reference cannot be empty")
    match = _LEGACY_REF_PATTERN.match(ref)
    if match:
        return match.group("ref")
    return ref


class LegacyIdentity(BaseModel):
    """Authoritative identity record returned by the legacy ERP."""

    model_config = ConfigDict(populate_by_name=True)

    ref: str = Field(validation_alias=AliasChoices("ref", "id", "userId", "emp_id"))
    username: str = Field(validation_alias=AliasChoices("username", "emp_uname"))
    email: str = Field(validation_alias=AliasChoices("email", "emp_email"))
    name: str = Field(validation_alias=AliasChoices("name", "emp_name"))
    phone: str | None = Field(default=None, validation_alias=AliasChoices("phone", "emp_phone", "emp_mobile_no"))
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))

    @field_validator("ref", mode="before")
    @classmethod
    def canonicalize_ref(cls, value: str | int) -> str:
        return canonical_identity_ref(value)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class QrHints(BaseModel):
    """Identity hints embedded in the QR code. Display-only, never trusted."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    user_id: str | None = Field(default=None, validation_alias=AliasChoices("userId", "emp_id"))
    username: str | None = Field(default=None, validation_alias=AliasChoices("username", "emp_uname"))
    email: str | None = Field(default=None, validation_alias=AliasChoices("email", "emp_email"))
    name: str | None = Field(default=None, validation_alias=AliasChoices("name", "emp_name"))
    phone: str | None = Field(default=None, validation_alias=AliasChoices("phone", "emp_phone", "emp_mobile_no"))


class QrPayload(BaseModel):
    """Decoded QR code: the token to validate plus the embedded hints."""

    token: str
    hints: QrHints
