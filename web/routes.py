"""
web/routes.py -- Browser-facing redemption route for scanned QR codes.

A scanned code opens {PUBLIC_BASE_URL}/auth/qr/{token} in the phone's
browser. This route redeems the token and answers with a redirect, never
JSON -- the visitor is a person, not an API client.

Redirect targets:
  needs activation -> the authority's one-time link (it signs the browser in
                      and then lands on LOGIN_REDIRECT_URL)
  direct session   -> LOGIN_REDIRECT_URL#access_token=...&refresh_token=...
                      The fragment never reaches a server, so the tokens
                      stay in the browser.
  any failure      -> ERROR_REDIRECT_URL?error=<coarse message>

Route registration order matters: GET /auth/qr must be registered before
GET /auth/qr/{token}, otherwise a trailing-slash variant could be captured
as an empty token.

Routes:
  GET /auth/qr           -- no token: redirect to the error page
  GET /auth/qr/{token}   -- redeem and redirect
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse

from core.config import get_settings
from core.errors import QRAuthError, TokenMissing
from core.limiter import limiter, redeem_limit
from core.models import QR_ROUTE_PREFIX, DirectSession, RedemptionResult
from qrauth.dependencies import get_redeemer

logger = logging.getLogger("qrlogin.web")

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _redirect(location: str) -> RedirectResponse:
    resp = RedirectResponse(location, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Referrer-Policy"] = "no-referrer"
    return resp


def _error_redirect(exc: QRAuthError) -> RedirectResponse:
    """Send the visitor to the error page with the coarse public message only.

    The exception's own message may carry internal detail (user ids, upstream
    error text) and is logged instead.
    """
    logger.warning("QR redemption failed (%s): %s", exc.code, exc)
    query = urlencode({"error": exc.public_message})
    return _redirect(f"{get_settings().error_redirect_url}?{query}")


def success_location(result: RedemptionResult) -> str:
    outcome = result.outcome
    if isinstance(outcome, DirectSession):
        creds = outcome.credentials
        params = {
            "access_token": creds.access_token,
            "refresh_token": creds.refresh_token,
            "token_type": creds.token_type,
            "type": "magiclink",
        }
        if creds.expires_in is not None:
            params["expires_in"] = str(creds.expires_in)
        return f"{get_settings().login_redirect_url}#{urlencode(params)}"
    return outcome.activation_url


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get(QR_ROUTE_PREFIX, include_in_schema=False)
def redeem_without_token(request: Request) -> RedirectResponse:
    return _error_redirect(TokenMissing("bare QR route requested"))


@limiter.limit(redeem_limit)
@router.get(QR_ROUTE_PREFIX + "/{token}", include_in_schema=False)
def redeem_redirect(request: Request, token: str) -> RedirectResponse:
    """Redeem the token in the path and redirect the browser onward."""
    try:
        result = get_redeemer(request).redeem(token)
    except QRAuthError as exc:
        return _error_redirect(exc)
    return _redirect(success_location(result))
