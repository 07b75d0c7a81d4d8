import uuid
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Request
from jose import jwt, JWTError

JWT_SECRET = os.getenv("JWT_SECRET", "demo_secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    DRIVER = "DRIVER"
    OPERATIONS = "OPERATIONS"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


# Storefront tokens still say USER for customers
_ROLE_ALIASES = {"USER": Role.CUSTOMER}

STAFF_ROLES = frozenset({Role.OPERATIONS, Role.ADMIN})


@dataclass(frozen=True)
class Actor:
    """The authenticated caller: who they are, what role, whether approved."""
    id: str
    role: Role
    status: str = UserStatus.APPROVED.value
    trace_id: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_approved(self) -> bool:
        return self.status == UserStatus.APPROVED.value


def parse_role(value: Optional[str]) -> Optional[Role]:
    if not value:
        return None
    value = value.upper()
    if value in _ROLE_ALIASES:
        return _ROLE_ALIASES[value]
    try:
        return Role(value)
    except ValueError:
        return None


def create_token(user_id: str, role: str, status: str = UserStatus.APPROVED.value) -> str:
    """Mint a session token; issuance lives in the auth service, this is for tools and tests."""
    return jwt.encode({"sub": user_id, "role": role, "status": status}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_session(token: Optional[str], trace_id: Optional[str] = None) -> Optional[Actor]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None

    role = parse_role(payload.get("role"))
    if not payload.get("sub") or role is None:
        return None
    return Actor(
        id=payload["sub"],
        role=role,
        status=(payload.get("status") or UserStatus.PENDING.value).upper(),
        trace_id=trace_id,
    )


async def get_optional_user(request: Request) -> Optional[Actor]:
    auth = request.headers.get("Authorization")
    trace_id = getattr(request.state, "trace_id", None) or str(uuid.uuid4())

    if not auth or not auth.lower().startswith("bearer "):
        return None

    token = auth.split(" ", 1)[1].strip()
    return decode_session(token, trace_id=trace_id)
