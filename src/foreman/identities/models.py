"""Identity models for worker credentials."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

# Reported for a category when the quota query failed or the category is unknown.
QUOTA_UNKNOWN = -1


class AuthKind(str, Enum):
    API_KEY = "api_key"
    GOOGLE = "google"


class Identity(BaseModel):
    """A credential a worker authenticates with."""

    name: str = Field(..., description="Display name, unique within the pool.")
    auth_type: AuthKind = Field(
        default=AuthKind.GOOGLE, description="How the identity authenticates."
    )
    home_directory: Path = Field(
        ..., description="Directory exported as HOME for workers using this identity."
    )

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Identity name must not be empty")
        return normalized


class IdentityQuota(BaseModel):
    """Remaining capacity per work category, as whole percentages."""

    identity: str
    categories: dict[str, int] = Field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return bool(self.categories) and all(
            value == QUOTA_UNKNOWN for value in self.categories.values()
        )

    def is_depleted(self) -> bool:
        """True when at least one category reported and every reported one is at zero."""

        known = [value for value in self.categories.values() if value != QUOTA_UNKNOWN]
        return bool(known) and all(value == 0 for value in known)

    def has_capacity(self) -> bool:
        return any(value > 0 for value in self.categories.values())


__all__ = ["AuthKind", "Identity", "IdentityQuota", "QUOTA_UNKNOWN"]
