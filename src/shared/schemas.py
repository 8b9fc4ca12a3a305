"""Base schemas shared across features."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Schema exchanged with the mobile client.

    Fields are snake_case in Python and camelCase on the wire; both spellings are
    accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SideEffectResult(CamelModel):
    """Outcome of a best-effort side action (email dispatch, device bookkeeping, cleanup).

    A failed side effect never fails the parent operation, but it is reported so
    callers and tests can see what happened.
    """

    attempted: bool
    succeeded: bool
    detail: str | None = None

    @classmethod
    def ok(cls, detail: str | None = None) -> "SideEffectResult":
        return cls(attempted=True, succeeded=True, detail=detail)

    @classmethod
    def failed(cls, detail: str) -> "SideEffectResult":
        return cls(attempted=True, succeeded=False, detail=detail)

    @classmethod
    def skipped(cls, detail: str) -> "SideEffectResult":
        return cls(attempted=False, succeeded=False, detail=detail)

    @classmethod
    def queued(cls, detail: str = "queued") -> "SideEffectResult":
        """Handed off to run after the response; the outcome is only logged."""
        return cls(attempted=True, succeeded=False, detail=detail)
