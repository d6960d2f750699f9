"""Session-token authentication for FastAPI.

Session tokens are issued by the web frontend's auth service and signed with
a shared secret. This backend only verifies them.
"""

from dataclasses import dataclass

import jwt as pyjwt
import structlog
from fastapi import Request

from agent_vendor.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Authenticated user extracted from a session token."""

    user_id: str
    claims: dict


class InvalidSessionError(Exception):
    """Raised when a session token fails verification."""

    pass


def decode_session_token(token: str, settings: Settings | None = None) -> AuthenticatedUser:
    """Verify and decode a session token.

    Raises ``InvalidSessionError`` on any validation failure.
    """
    settings = settings or get_settings()
    if not settings.session_secret:
        raise InvalidSessionError("Session secret is not configured")

    options = {
        "verify_exp": True,
        "verify_iat": True,
        "require": ["sub", "exp", "iat"],
    }
    kwargs = {}
    if settings.session_issuer:
        options["require"].append("iss")
        kwargs["issuer"] = settings.session_issuer

    try:
        payload = pyjwt.decode(
            token,
            settings.session_secret,
            algorithms=[settings.session_algorithm],
            options=options,
            **kwargs,
        )
    except pyjwt.ExpiredSignatureError as exc:
        raise InvalidSessionError("Token expired") from exc
    except pyjwt.MissingRequiredClaimError as exc:
        raise InvalidSessionError(f"Missing required claim: {exc}") from exc
    except pyjwt.InvalidTokenError as exc:
        raise InvalidSessionError(f"Invalid token: {exc}") from exc

    sub = payload.get("sub")
    if not sub:
        raise InvalidSessionError("Token missing sub claim")

    return AuthenticatedUser(user_id=str(sub), claims=payload)


class SessionAuthenticator:
    """Resolves the caller's identity from a bearer token or session cookie."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    def _extract_token(self, request: Request) -> str | None:
        header = request.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            return value.strip()
        return request.cookies.get(self._settings.session_cookie_name)

    async def authenticate(self, request: Request) -> AuthenticatedUser | None:
        """Return the authenticated user, or None when no valid session exists."""
        token = self._extract_token(request)
        if not token:
            return None

        try:
            user = decode_session_token(token, self._settings)
        except InvalidSessionError as exc:
            logger.info("session_rejected", reason=str(exc))
            return None

        request.state.user_id = user.user_id
        return user


def get_authenticator() -> SessionAuthenticator:
    return SessionAuthenticator(get_settings())

