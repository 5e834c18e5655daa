import logging
from datetime import datetime, timedelta, timezone
from typing import Tuple

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import models
from config import Settings
from database import get_db
from errors import Unauthorized
from permissions import Policy, Principal, ensure_allowed

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# --------------------------- OAuth2 ---------------------------
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


# --------------------------- 유틸 ---------------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: models.User, settings: Settings, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {"sub": str(user.id), "role": user.role, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def to_principal(user: models.User) -> Principal:
    return Principal(id=user.id, email=user.email, role=models.Role(user.role))


# --------------------------- 인증 ---------------------------
def authenticate(db: Session, email: str, password: str, settings: Settings) -> Tuple[str, models.User]:
    user = db.query(models.User).filter(models.User.email == email.lower()).first()
    if not user or not verify_password(password, user.password):
        logger.info("failed login for %s", email)
        raise Unauthorized("Invalid credentials")
    return create_access_token(user, settings), user


def authenticate_admin(db: Session, email: str, password: str, settings: Settings) -> Tuple[str, models.User]:
    user = db.query(models.User).filter(models.User.email == email.lower()).first()
    # 관리자가 아니면 계정 존재 여부와 무관하게 같은 오류
    if not user or user.role != models.Role.ADMIN.value or not verify_password(password, user.password):
        logger.info("failed admin login for %s", email)
        raise Unauthorized("Invalid credentials")
    return create_access_token(user, settings), user


def resolve_session(db: Session, token: str, settings: Settings) -> Principal:
    """토큰을 검증하고 DB 의 사용자 행에서 역할을 읽어 Principal 을 만든다."""
    credentials_exception = Unauthorized("Could not validate credentials")
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        sub = payload.get("sub")
        if sub is None:
            raise credentials_exception
        user_id = int(sub)
    except (JWTError, ValueError):
        raise credentials_exception
    user = db.get(models.User, user_id)
    if not user:
        raise credentials_exception
    return to_principal(user)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Principal:
    return resolve_session(db, token, settings)


def require_admin(user: Principal = Depends(get_current_user)) -> Principal:
    ensure_allowed(Policy.ADMIN_ONLY, user, message="Admin privileges required")
    return user
