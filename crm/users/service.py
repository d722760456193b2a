from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from crm.security.tokens import TokenError, create_access_token, decode_access_token

from .models import Role, User
from .repository import UserRepository

logger = logging.getLogger(__name__)

_PHONE_STRIP_RE = re.compile(r"[\s\-\(\)]")
# Iranian mobile numbers: 09xxxxxxxxx, +989xxxxxxxxx, 00989xxxxxxxxx
_MOBILE_RE = re.compile(r"^(\+98|0098|0)?9\d{9}$")
_CODE_RE = re.compile(r"^\d{4,6}$")


class AuthServiceError(RuntimeError):
    """Base error for authentication issues."""


class InvalidPhoneNumberError(AuthServiceError):
    """Raised when a phone number is not a valid mobile number."""


class InvalidVerificationCodeError(AuthServiceError):
    """Raised when a verification code is rejected."""


class InvalidTokenError(AuthServiceError):
    """Raised when a bearer token does not resolve to an active user."""


class UserNotFoundError(AuthServiceError):
    """Raised when an operation targets a non-existent user."""


@dataclass(slots=True)
class LoginResult:
    user: User
    token: str


def normalize_phone(phone: str) -> str:
    """Return the canonical ``09xxxxxxxxx`` form of a mobile number."""

    normalized = _PHONE_STRIP_RE.sub("", phone or "")
    if normalized.startswith("+98"):
        normalized = "0" + normalized[3:]
    elif normalized.startswith("0098"):
        normalized = "0" + normalized[4:]
    elif normalized.startswith("98") and len(normalized) == 12:
        normalized = "0" + normalized[2:]
    if not normalized.startswith("0"):
        normalized = "0" + normalized
    return normalized


def is_valid_phone(phone: str) -> bool:
    return bool(_MOBILE_RE.match(_PHONE_STRIP_RE.sub("", phone or "")))


class AuthService:
    """Phone identity login, token issue and verification, role management."""

    def __init__(
        self,
        repository: UserRepository,
        *,
        secret: str,
        algorithm: str = "HS256",
        expires_minutes: int = 60,
        dev_code: str = "1234",
        accept_any_code: bool = False,
    ) -> None:
        self._repository = repository
        self._secret = secret
        self._algorithm = algorithm
        self._expires_minutes = expires_minutes
        self._dev_code = dev_code
        self._accept_any_code = accept_any_code

    def issue_token(self, user: User) -> str:
        return create_access_token(
            user_id=user.id,
            phone=user.phone,
            role=user.role.value,
            secret=self._secret,
            algorithm=self._algorithm,
            expires_minutes=self._expires_minutes,
        )

    async def login(self, phone: str) -> LoginResult:
        """Find or create the user behind ``phone`` and issue a token."""

        if not is_valid_phone(phone):
            raise InvalidPhoneNumberError("Invalid phone number format")
        normalized = normalize_phone(phone)

        user = await self._repository.get_by_phone(normalized)
        if user is None:
            user = await self._repository.create_user(phone=normalized, role=Role.CLIENT)
            logger.info("Created client account %s", user.id)
        if not user.is_active:
            raise InvalidTokenError("User account is disabled")

        user = await self._repository.record_login(user.id) or user
        return LoginResult(user=user, token=self.issue_token(user))

    async def verify(self, phone: str, code: str) -> LoginResult:
        if not _CODE_RE.match(code or ""):
            raise InvalidVerificationCodeError("Verification code must be 4-6 digits")
        if not (self._accept_any_code or code == self._dev_code):
            raise InvalidVerificationCodeError("Invalid verification code")
        return await self.login(phone)

    async def refresh(self, user: User) -> str:
        current = await self._repository.get_user(user.id)
        if current is None:
            raise UserNotFoundError(f"User {user.id} not found")
        return self.issue_token(current)

    async def resolve_token(self, token: str) -> User:
        try:
            payload = decode_access_token(token, secret=self._secret, algorithm=self._algorithm)
        except TokenError as exc:
            raise InvalidTokenError("Invalid or expired token") from exc

        user = await self._repository.get_user(payload["sub"])
        if user is None:
            raise InvalidTokenError("User not found")
        if user.phone != payload["phone"]:
            raise InvalidTokenError("Token phone mismatch")
        if not user.is_active:
            raise InvalidTokenError("User account is disabled")
        return user

    async def get_user(self, user_id: int) -> User:
        user = await self._repository.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    async def list_users(
        self, *, role: Role | None = None, page: int = 1, limit: int = 20
    ) -> tuple[Sequence[User], int]:
        return await self._repository.list_users(role=role, page=page, limit=limit)

    async def update_role(self, user_id: int, role: Role) -> User:
        updated = await self._repository.update_role(user_id, role)
        if updated is None:
            raise UserNotFoundError(f"User {user_id} not found")
        logger.info("User %s role changed to %s", user_id, role.value)
        return updated
