"""
RescueBag — Explicit session context

Every order operation receives the caller's identity as an argument instead of
reading ambient auth state.
"""
from dataclasses import dataclass
from enum import Enum as PyEnum


class Role(str, PyEnum):
    USER = "user"
    BUSINESS = "business"
    SYSTEM = "system"


@dataclass(frozen=True)
class SessionContext:
    user_id: str
    role: Role = Role.USER
    business_id: str | None = None

    @property
    def is_business(self) -> bool:
        return self.role is Role.BUSINESS and self.business_id is not None

    @property
    def is_system(self) -> bool:
        return self.role is Role.SYSTEM

    @classmethod
    def system(cls, name: str = "system") -> "SessionContext":
        return cls(user_id=name, role=Role.SYSTEM)
