from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class AuthUser(BaseModel):
    """
    Represents an authenticated staff user from Supabase.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"
    app_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def roles(self) -> list[str]:
        """Roles granted through Supabase app_metadata, plus the token role."""
        granted = self.app_metadata.get("roles") or []
        if isinstance(granted, str):
            granted = [granted]
        return [self.role, *granted]
