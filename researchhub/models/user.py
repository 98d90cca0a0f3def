from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    PARTICIPANT = "participant"
    RESEARCHER = "researcher"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Role":
        """Map a provider role string onto the closed role set (default participant)."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.PARTICIPANT


class UserProfile(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    user_id: str
    email: Optional[str] = None
    role: Role = Role.PARTICIPANT


class AuthenticatedUser(BaseModel):
    """Identity resolved from a verified bearer token."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    role: Role = Role.PARTICIPANT

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
