"""
qrauth/dependencies.py -- FastAPI Depends() helpers for the QR endpoints.

Service accessors:
  get_authority(), get_store(), get_issuer(), get_redeemer() read the
  process-wide objects the lifespan put on app.state. A missing authority
  (AUTHORITY_URL / AUTHORITY_SERVICE_KEY unset) raises ConfigurationError
  here, before any store access -- no partial work.

Caller authentication (issuance endpoints only):
  The caller presents the access token the identity authority gave them in
  "Authorization: Bearer <jwt>". It is verified with python-jose against
  AUTHORITY_JWT_SECRET (HS256). Verification returns None on any failure --
  require_caller() turns that into 401.

  Redemption endpoints are unauthenticated: the QR token IS the
  credential.

Layer rule: no imports from api/ or web/. fastapi is allowed because this
module is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from core.config import get_settings
from core.errors import ConfigurationError
from identity.authority import IdentityAuthority
from qrauth.issuer import TokenIssuer
from qrauth.models import Caller
from qrauth.redeemer import TokenRedeemer
from qrauth.store import TokenStore

_ALGORITHM = "HS256"
_AUDIENCE = "authenticated"


# ---------------------------------------------------------------------------
# Service accessors
# ---------------------------------------------------------------------------


def get_authority(request: Request) -> IdentityAuthority:
    authority = getattr(request.app.state, "authority", None)
    if authority is None:
        raise ConfigurationError("identity authority is not configured")
    return authority


def get_store(request: Request) -> TokenStore:
    return request.app.state.token_store


def get_issuer(request: Request) -> TokenIssuer:
    return TokenIssuer(get_store(request), get_authority(request), get_settings())


def get_redeemer(request: Request) -> TokenRedeemer:
    return TokenRedeemer(get_store(request), get_authority(request), get_settings())


# ---------------------------------------------------------------------------
# Caller authentication
# ---------------------------------------------------------------------------


def decode_caller_token(token: str, secret: str) -> Caller | None:
    """Decode and verify an authority-issued JWT. Returns None on any failure."""
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM], audience=_AUDIENCE)
    except JWTError:
        return None
    role = payload.get("role")
    if not role:
        return None
    return Caller(user_id=str(payload.get("sub") or ""), email=payload.get("email") or "", role=role)


def try_get_caller(request: Request) -> Caller | None:
    """Return the verified caller from the Authorization header, or None.

    Raises ConfigurationError if no JWT secret is configured -- without it
    no caller can ever be verified, and that is an operator problem, not a
    client one.
    """
    secret = get_settings().authority_jwt_secret
    if not secret:
        raise ConfigurationError("AUTHORITY_JWT_SECRET is not set")
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return decode_caller_token(auth_header[7:], secret)


def require_caller(request: Request) -> Caller:
    """Require a verified caller. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.post("/auth/qr")
        def route(caller: Caller = Depends(require_caller)): ...
    """
    caller = try_get_caller(request)
    if caller is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return caller


def ensure_may_act_for(caller: Caller, email: str) -> None:
    """Raise HTTP 403 unless caller owns email or is a service caller."""
    if not caller.may_act_for(email):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "You can only manage your own QR login."},
        )
