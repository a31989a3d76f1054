import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request, Response

from config import Settings
from database import USERS, get_db
from errors import Forbidden, Unauthenticated
from schemas import Identity

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
COOKIE_NAME = "token"


def issue_token(email: str, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "email": email,
        "iat": now,
        "exp": now + timedelta(days=settings.token_ttl_days),
    }
    return jwt.encode(payload, settings.token_secret, algorithm=ALGORITHM)


def _cookie_options(settings: Settings) -> dict:
    return {
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "none" if settings.is_production else "strict",
    }


def set_token_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=settings.token_ttl_days * 24 * 60 * 60,
        **_cookie_options(settings),
    )


def clear_token_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(COOKIE_NAME, **_cookie_options(settings))


class CredentialVerifier:
    """Turns a raw token from a cookie or bearer header into an Identity."""

    def __init__(self, settings: Settings):
        self.secret = settings.token_secret
        self.transport = settings.auth_transport

    def extract(self, request: Request) -> Optional[str]:
        if self.transport in ("cookie", "both"):
            token = request.cookies.get(COOKIE_NAME)
            if token:
                return token
        if self.transport in ("bearer", "both"):
            authorization = request.headers.get("Authorization")
            if authorization and authorization.startswith("Bearer "):
                return authorization.split(" ", 1)[1].strip() or None
        return None

    def verify(self, raw_token: Optional[str]) -> Identity:
        if not raw_token:
            raise Unauthenticated()
        try:
            claims = jwt.decode(raw_token, self.secret, algorithms=[ALGORITHM], options={"require": ["exp"]})
        except jwt.PyJWTError as e:
            # expired and tampered tokens get the same answer
            logger.debug("Token rejected: %s", e)
            raise Unauthenticated()
        email = claims.get("email")
        if not email:
            raise Unauthenticated()
        try:
            return Identity(email=email)
        except ValueError:
            raise Unauthenticated()


class RoleAuthorizer:
    """Checks the stored role of an identity against one required role."""

    def __init__(self, users):
        self.users = users

    def authorize(self, identity: Identity, required_role: str) -> dict:
        user = self.users.find_one({"email": identity.email})
        role = user.get("role") if user else None
        if role != required_role:
            logger.info("Denied %s: requires %s, has %s", identity.email, required_role, role)
            raise Forbidden(role=role)
        return user


def get_verifier(request: Request) -> CredentialVerifier:
    return request.app.state.verifier


def current_identity(request: Request, verifier: CredentialVerifier = Depends(get_verifier)) -> Identity:
    identity = verifier.verify(verifier.extract(request))
    request.state.identity = identity
    return identity


def require_role(role: str):
    """Dependency that authenticates the caller and then checks their role."""

    def dependency(identity: Identity = Depends(current_identity), db=Depends(get_db)) -> Identity:
        RoleAuthorizer(db[USERS]).authorize(identity, role)
        return identity

    dependency.__name__ = f"require_{role}"
    return dependency


require_admin = require_role("admin")
require_seller = require_role("seller")
