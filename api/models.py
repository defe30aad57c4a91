"""
API request and response models for the QR login REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.

Naming: issuance responses use snake_case like the rest of the API. The
redemption response is camelCase (accessToken, needsActivation, ...) because
it is consumed directly by the browser sign-in code, which expects the
authority's own session field names.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.models import DirectSession, IssuedToken, RedemptionResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Loose: the identity authority is the judge of what a valid
# email is. This only rejects input that cannot possibly be one.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class EmailRequest(BaseModel):
    """Request body for POST /api/v1/auth/qr/rotate and /revoke."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)


class IssueRequest(EmailRequest):
    """Request body for POST /api/v1/auth/qr."""

    include_image: bool = Field(default=False, description="Also return the QR code as a base64 PNG.")


class RedeemRequest(BaseModel):
    """Request body for POST /api/v1/auth/qr/redeem.

    token is unconstrained at the schema level. The redeemer classifies it:
    missing or empty is token_missing (400); wrong type, oversized and unknown
    are all token_invalid (401), so a malformed token is indistinguishable
    from one that never existed.
    """

    token: Any = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class IssueResponse(BaseModel):
    """Response for the issue and rotate endpoints."""

    model_config = ConfigDict(frozen=True)

    persistent_url: str
    token: str
    reused: bool
    message: str
    qr_png_base64: Optional[str] = None

    @classmethod
    def from_issued(cls, issued: IssuedToken, qr_png_base64: Optional[str] = None) -> "IssueResponse":
        message = "Existing persistent QR token" if issued.reused else "New persistent QR token generated"
        return cls(
            persistent_url=issued.url,
            token=issued.token,
            reused=issued.reused,
            message=message,
            qr_png_base64=qr_png_base64,
        )


class RevokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class TokenHistoryRow(BaseModel):
    """One issued token in the audit view. Only the first 8 characters are shown."""

    model_config = ConfigDict(frozen=True)

    token_prefix: str
    is_active: bool
    created_at: str
    expires_at: Optional[str] = None
    deactivated_at: Optional[str] = None


class RedeemUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class RedeemResponse(BaseModel):
    """Response for POST /api/v1/auth/qr/redeem.

    Exactly one of two shapes:
      direct session   -- success, accessToken, refreshToken, user
      needs activation -- success, redirectUrl, needsActivation=true, user
    Serialize with model_dump(by_alias=True, exclude_none=True).
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    user: Optional[RedeemUser] = None
    redirect_url: Optional[str] = None
    needs_activation: Optional[bool] = None

    @classmethod
    def from_result(cls, result: RedemptionResult) -> "RedeemResponse":
        """Factory Method: map a core RedemptionResult onto the wire shape."""
        outcome = result.outcome
        user = RedeemUser(
            id=outcome.identity.id,
            email=outcome.identity.email,
            metadata=outcome.identity.metadata,
        )
        if isinstance(outcome, DirectSession):
            creds = outcome.credentials
            return cls(
                access_token=creds.access_token,
                refresh_token=creds.refresh_token,
                expires_in=creds.expires_in,
                token_type=creds.token_type,
                user=user,
            )
        return cls(redirect_url=outcome.activation_url, needs_activation=True, user=user)


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
