"""
api/routes/v1/qr.py -- Persistent QR login REST endpoints.

Routes:
  POST /api/v1/auth/qr           -- issue or reuse the caller's QR token (requires auth)
  POST /api/v1/auth/qr/rotate    -- replace the active token with a new one (requires auth)
  POST /api/v1/auth/qr/revoke    -- deactivate all tokens for an email (requires auth)
  GET  /api/v1/auth/qr/history   -- audit list of issued tokens, prefixes only (requires auth)
  POST /api/v1/auth/qr/redeem    -- exchange a token for a session, JSON response (public)

The GET redirect form of redemption (/auth/qr/{token}) lives in web/routes.py.

Security:
  Issuance routes require the caller's authority JWT and only let a caller
  manage their own email; service_role callers may manage any email.
  POST /redeem is public -- the QR token is the credential -- and is rate
  limited per IP (REDEEM_RATE_LIMIT).
  Cache-Control: no-store on every response that carries a token.

Failures are raised as core.errors.QRAuthError subclasses and rendered by the
exception handler in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    EmailRequest,
    IssueRequest,
    IssueResponse,
    RedeemRequest,
    RedeemResponse,
    RevokeResponse,
    TokenHistoryRow,
)
from core.limiter import issue_limit, limiter, redeem_limit
from core.qrimage import render_png_base64
from qrauth.dependencies import ensure_may_act_for, get_issuer, get_redeemer, get_store, require_caller
from qrauth.models import Caller

# Auth policy:
# - POST /api/v1/auth/qr:          requires auth (require_caller) + ownership
# - POST /api/v1/auth/qr/rotate:   requires auth (require_caller) + ownership
# - POST /api/v1/auth/qr/revoke:   requires auth (require_caller) + ownership
# - GET  /api/v1/auth/qr/history:  requires auth (require_caller) + ownership
# - POST /api/v1/auth/qr/redeem:   public -- the token is the credential
router = APIRouter()


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Issuance (authenticated)
# ---------------------------------------------------------------------------


@limiter.limit(issue_limit)
@router.post("/auth/qr", response_model=IssueResponse)
def issue_qr(request: Request, body: IssueRequest, caller: Caller = Depends(require_caller)) -> JSONResponse:
    """Return the caller's persistent QR URL, creating a token only if none is active.

    Calling this repeatedly returns the same token -- printed codes stay valid.
    """
    ensure_may_act_for(caller, body.email)
    issued = get_issuer(request).issue_or_reuse(body.email)
    image = render_png_base64(issued.url) if body.include_image else None
    return _no_store(IssueResponse.from_issued(issued, image).model_dump())


@limiter.limit(issue_limit)
@router.post("/auth/qr/rotate", response_model=IssueResponse)
def rotate_qr(request: Request, body: IssueRequest, caller: Caller = Depends(require_caller)) -> JSONResponse:
    """Issue a brand-new token. The previous QR code stops working immediately."""
    ensure_may_act_for(caller, body.email)
    issued = get_issuer(request).rotate(body.email)
    image = render_png_base64(issued.url) if body.include_image else None
    return _no_store(IssueResponse.from_issued(issued, image).model_dump())


@router.post("/auth/qr/revoke", response_model=RevokeResponse)
def revoke_qr(request: Request, body: EmailRequest, caller: Caller = Depends(require_caller)) -> RevokeResponse:
    """Deactivate every QR token for the email. No new token is issued."""
    ensure_may_act_for(caller, body.email)
    return RevokeResponse(revoked=get_issuer(request).revoke(body.email))


@router.get("/auth/qr/history", response_model=list[TokenHistoryRow])
def token_history(request: Request, email: str, caller: Caller = Depends(require_caller)) -> list[TokenHistoryRow]:
    """List every token issued to the email, newest first. Raw tokens are never returned."""
    ensure_may_act_for(caller, email)
    identity = get_issuer(request).resolve_identity(email)
    rows = get_store(request).list_for_user(identity.id)
    return [
        TokenHistoryRow(
            token_prefix=r.prefix,
            is_active=r.is_active,
            created_at=r.created_at or "",
            expires_at=r.expires_at,
            deactivated_at=r.deactivated_at,
        )
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Redemption (public)
# ---------------------------------------------------------------------------


@limiter.limit(redeem_limit)
@router.post("/auth/qr/redeem", response_model=RedeemResponse)
def redeem_qr(request: Request, body: Optional[RedeemRequest] = None) -> JSONResponse:
    """Exchange a QR token for session credentials or an activation link.

    A missing body, missing field, or empty string all produce token_missing.
    """
    result = get_redeemer(request).redeem(body.token if body else None)
    return _no_store(RedeemResponse.from_result(result).model_dump(by_alias=True, exclude_none=True))
