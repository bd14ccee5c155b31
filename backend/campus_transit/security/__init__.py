from datetime import datetime, timedelta
from typing import Literal, Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from campus_transit.core.settings import get_settings

Role = Literal["student", "driver", "coordinator", "admin"]
ROLES = ("student", "driver", "coordinator", "admin")

ACCESS_TOKEN_EXPIRE_MINUTES = 60


class User:
    def __init__(self, id: int, role: Role):
        self.id = id
        self.role = role


def _jwt_config() -> tuple[str, str]:
    settings = get_settings()
    secret = settings.jwt_secret or "your-secret-key"
    algorithm = settings.jwt_algorithm or "HS256"
    return secret, algorithm


def create_access_token(profile_id: int, role: Role, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a bearer token for a profile.

    Tokens are issued by the campus identity provider in production; this
    helper exists for operators and tests.
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    secret, algorithm = _jwt_config()
    claims = {"sub": str(profile_id), "role": role, "exp": expire, "iat": datetime.utcnow()}
    return jwt.encode(claims, secret, algorithm=algorithm)


def _parse_jwt_token(token: str) -> tuple[Optional[int], Optional[Role]]:
    secret, algorithm = _jwt_config()
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError:
        return (None, None)

    subject = payload.get("sub")
    role = payload.get("role")
    if isinstance(subject, str) and subject.isdigit() and role in ROLES:
        return (int(subject), role)  # type: ignore[return-value]
    return (None, None)


def get_current_user(request: Request) -> User:
    auth = request.headers.get("authorization", "")
    parts = auth.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        profile_id, role = _parse_jwt_token(parts[1])
        if role and profile_id is not None:
            return User(id=profile_id, role=role)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")


def require_role(*need: Role):
    def _dep(user: User = Depends(get_current_user)) -> User:
        if user.role not in need:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
        return user

    return _dep
