"""User profile schema published to the shared user directory."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from davchat.core.errors import ParseError


class UserProfile(BaseModel):
    """Public identity of a registered user, stored encrypted remotely."""

    id: str = Field(min_length=1, max_length=64)
    handle: str = Field(min_length=1)
    created_at: datetime = Field(alias="createdAt")
    last_seen_at: datetime | None = Field(default=None, alias="lastSeenAt")

    model_config = ConfigDict(frozen=True, populate_by_name=True, from_attributes=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "UserProfile":
        try:
            return cls.model_validate_json(data)
        except ValidationError as err:
            raise ParseError(f"Malformed user profile: {err.error_count()} validation error(s)") from err
