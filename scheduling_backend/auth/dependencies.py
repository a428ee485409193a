from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from scheduling_backend.auth import jwt_handler
from scheduling_backend.database import SessionLocal
from scheduling_backend.models.user import User

ROLE_ADMIN = 'admin'
ROLE_COACH = 'coach'
ROLE_PARENT = 'parent'

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def load_user_from_token(token: str) -> User:
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
    finally:
        db.close()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> User:
    return load_user_from_token(credentials.credentials)
def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_security),
) -> User | None:
    """Anonymous callers are allowed; a bad token is still rejected."""
    if credentials is None:
        return None
    return load_user_from_token(credentials.credentials)


def require_coach_or_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in (ROLE_ADMIN, ROLE_COACH):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Coach or admin access required.")
    return user
