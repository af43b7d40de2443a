from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storefront.config import Settings
from storefront.logging import get_logger
from storefront.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    TokenExpiredError,
    ValidationError,
)
from storefront.storage.models import Role, User

logger = get_logger(__name__)

# Routes that still accept an expired token so it can be rotated or dropped
EXPIRY_EXEMPT_PATHS = frozenset({"/users/extend", "/users/logout"})


class AuthStore(Protocol):
    def create_user(
        self,
        account: str,
        password_hash: str,
        name: str,
        phone: str,
        *,
        role: str = "user",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_account(self, account: str) -> Optional[User]: ...

    def get_user_by_token(self, user_id: str, token: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def push_token(self, user_id: str, token: str) -> bool: ...

    def replace_token(self, user_id: str, old_token: str, new_token: str) -> bool: ...

    def pull_token(self, user_id: str, token: str) -> bool: ...


@dataclass
class AuthContext:
    """An authenticated request: the stored user and the bearer token it sent."""

    user: User
    token: str
    expired: bool = False

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


class AuthService:
    """Password checks and the per-user JWT list behind login, extend and logout.

    A token is valid only while it is both correctly signed and still present
    in ``User.tokens``; removing it from the list revokes it immediately.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def signup(
        self,
        account: str,
        password: str,
        name: str,
        phone: str,
        *,
        role: str = Role.USER.value,
    ) -> User:
        user = self.store.create_user(
            account=account,
            password_hash=self.hash_password(password),
            name=name,
            phone=phone,
            role=role,
        )
        self.logger.info("user_signup", user_id=user.id, role=user.role)
        return user

    async def login(
        self, account: Optional[str], password: Optional[str]
    ) -> Tuple[User, str]:
        if not account or not password:
            raise ValidationError("missing credentials")
        user = self.store.get_user_by_account(account)
        if user is None:
            raise AuthenticationError("account not found")
        if not self.verify_password(user, password):
            raise AuthenticationError("incorrect password")
        token = self._mint_token(user.id, self.settings.login_token_ttl_days)
        if not self.store.push_token(user.id, token):
            # user row vanished between lookup and write
            raise AuthenticationError("account not found")
        user.tokens.append(token)
        self.logger.info("user_login", user_id=user.id, active_tokens=len(user.tokens))
        return user, token

    async def extend(self, ctx: AuthContext) -> str:
        """Replace the presented token in place with a fresh shorter-lived one."""
        new_token = self._mint_token(ctx.user_id, self.settings.extend_token_ttl_days)
        if not self.store.replace_token(ctx.user_id, ctx.token, new_token):
            raise InvalidTokenError("invalid JWT")
        self.logger.info("token_extended", user_id=ctx.user_id, was_expired=ctx.expired)
        return new_token

    async def logout(self, ctx: AuthContext) -> None:
        removed = self.store.pull_token(ctx.user_id, ctx.token)
        self.logger.info("user_logout", user_id=ctx.user_id, removed=removed)

    async def authenticate(self, token: Optional[str], path: str) -> AuthContext:
        if not token:
            raise AuthenticationError("missing bearer token")
        payload, expired = self._decode_token(token, path)
        user_id = payload.get("sub")
        if not isinstance(user_id, str):
            raise InvalidTokenError("invalid JWT")
        user = self.store.get_user_by_token(user_id, token)
        if user is None:
            raise InvalidTokenError("invalid JWT")
        return AuthContext(user=user, token=token, expired=expired)

    def require_admin(self, ctx: AuthContext) -> AuthContext:
        if ctx.role != Role.ADMIN.value:
            raise ForbiddenError("admin access required")
        return ctx

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    def _mint_token(self, user_id: str, ttl_days: int) -> str:
        now = self._now()
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(days=ttl_days),
            # two logins in the same second must still yield distinct list entries
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(
            payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm
        )

    def _decode_token(self, token: str, path: str) -> Tuple[dict[str, Any], bool]:
        decode_kwargs = {
            "key": self.settings.jwt_secret,
            "algorithms": [self.settings.jwt_algorithm],
        }
        try:
            payload = jwt.decode(
                token, options={"require": ["sub", "exp"]}, **decode_kwargs
            )
            return payload, False
        except jwt.ExpiredSignatureError:
            if path not in EXPIRY_EXEMPT_PATHS:
                raise TokenExpiredError("JWT expired")
        except jwt.InvalidTokenError:
            raise InvalidTokenError("invalid JWT")
        # expired but allowed on this route; signature must still verify
        try:
            payload = jwt.decode(
                token,
                options={"require": ["sub", "exp"], "verify_exp": False},
                **decode_kwargs,
            )
        except jwt.InvalidTokenError:
            raise InvalidTokenError("invalid JWT")
        return payload, True
