"""역할/소유권 기반 접근 제어.

모든 서비스는 `if role != ADMIN` 분기를 직접 쓰지 않고 이 모듈의 정책을 통해 판단한다.
"""
import enum
from dataclasses import dataclass
from typing import Optional

from errors import Forbidden
from models import Role


@dataclass(frozen=True)
class Principal:
    """토큰에서 복원한 신뢰 가능한 요청자 정보."""

    id: int
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Policy(str, enum.Enum):
    AUTHENTICATED = "authenticated"
    ADMIN_ONLY = "admin_only"
    OWNER_ONLY = "owner_only"
    OWNER_OR_ADMIN = "owner_or_admin"


def is_allowed(policy: Policy, principal: Principal, owner_id: Optional[int] = None) -> bool:
    if policy is Policy.AUTHENTICATED:
        return True
    if policy is Policy.ADMIN_ONLY:
        return principal.is_admin
    is_owner = owner_id is not None and owner_id == principal.id
    if policy is Policy.OWNER_ONLY:
        return is_owner
    if policy is Policy.OWNER_OR_ADMIN:
        return is_owner or principal.is_admin
    raise ValueError(f"unknown policy: {policy}")


def ensure_allowed(
    policy: Policy,
    principal: Principal,
    owner_id: Optional[int] = None,
    message: str = "You do not have permission to perform this action",
) -> None:
    if not is_allowed(policy, principal, owner_id):
        raise Forbidden(message)
