from dataclasses import dataclass
from typing import Optional

import bcrypt
from itsdangerous import BadData, URLSafeTimedSerializer

from config import get_settings
from models import Role


SESSION_COOKIE = "session"


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


def can_access(identity: Identity, owner_id: Optional[int]) -> bool:
    """Single ownership predicate: admins reach every record, users their own."""
    return identity.is_admin or (owner_id is not None and identity.user_id == owner_id)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session")


def issue_session_token(identity: Identity) -> str:
    return _serializer().dumps({"u": identity.user_id, "r": identity.role.value})


def read_session_token(token: str) -> Optional[Identity]:
    """Return the identity a signed token was issued for, or None.

    The caller still has to confirm the user exists; the role embedded in the
    token is only the one current at login time.
    """
    if not token:
        return None
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadData:
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("u")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return None
    try:
        role = Role(data.get("r"))
    except ValueError:
        return None
    return Identity(user_id=user_id, role=role)


def token_from_headers(authorization: Optional[str], cookie: Optional[str]) -> str:
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return cookie or ""
