from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.core.errors import InvalidProfile
from src.core.utils import normalize_email


class SsoProfile(BaseModel):
    """Provider-agnostic identity assertion handed to the resolution flow."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    email: str | None = None
    display_name: str = Field(default="Unknown User", alias="displayName")
    company_name: str | None = Field(default=None, alias="companyName")
    office_location: str | None = Field(default=None, alias="officeLocation")

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        return normalize_email(value)

    @field_validator("display_name", mode="before")
    @classmethod
    def _default_display_name(cls, value: str | None) -> str:
        return (value or "").strip() or "Unknown User"

    def require_email(self) -> str:
        """Returns the email or raises InvalidProfile when the provider sent none."""
        if not self.email:
            raise InvalidProfile()
        return self.email
