from datetime import timedelta
from typing import Optional
import bcrypt
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from turnstile.config import get_settings
from turnstile.database import get_db
from turnstile.helpers import utcnow
from turnstile.models.user import User, UserRole
from turnstile.schemas.user import UserCreate, TokenData
from turnstile.services.errors import PermissionDenied, Unauthenticated

settings = get_settings()
security = HTTPBearer(auto_error=False)


class AuthService:
    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )

    @staticmethod
    def get_password_hash(password: str) -> str:
        return bcrypt.hashpw(
            password.encode('utf-8'),
            bcrypt.gensalt()
        ).decode('utf-8')

    @staticmethod
    def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
        expire = utcnow() + (
            expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
        )
        to_encode = {"sub": str(user.id), "role": user.role.value, "exp": expire}
        return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)

    @staticmethod
    def decode_token(token: str) -> Optional[TokenData]:
        try:
            payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
            user_id = payload.get("sub")
            if user_id is None:
                return None
            return TokenData(user_id=int(user_id), role=payload.get("role"))
        except (JWTError, ValueError):
            return None

    @staticmethod
    def create_user(db: Session, user_data: UserCreate, role: UserRole = UserRole.GUEST) -> User:
        db_user = User(
            email=user_data.email,
            name=user_data.name,
            hashed_password=AuthService.get_password_hash(user_data.password),
            role=role
        )
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        return db_user

    @staticmethod
    def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            return None
        if not AuthService.verify_password(password, user.hashed_password):
            return None
        return user

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        return db.query(User).filter(User.email == email).first()

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    token = credentials.credentials if credentials else request.cookies.get("access_token")
    if not token:
        raise Unauthenticated()

    token_data = AuthService.decode_token(token)
    if token_data is None:
        raise Unauthenticated()

    user = AuthService.get_user_by_id(db, token_data.user_id)
    if user is None:
        raise Unauthenticated()
    return user


def require_roles(*roles: UserRole):
    """Dependency factory: the current user must hold one of `roles`."""
    def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise PermissionDenied()
        return current_user
    return checker
