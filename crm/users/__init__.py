"""User accounts, roles and phone based authentication."""

from .models import Role, User
from .repository import UserRepository
from .service import (
    AuthService,
    InvalidPhoneNumberError,
    InvalidTokenError,
    InvalidVerificationCodeError,
    LoginResult,
    UserNotFoundError,
)

__all__ = [
    "AuthService",
    "InvalidPhoneNumberError",
    "InvalidTokenError",
    "InvalidVerificationCodeError",
    "LoginResult",
    "Role",
    "User",
    "UserNotFoundError",
    "UserRepository",
]
