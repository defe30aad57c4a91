"""
qrauth/models.py -- Domain dataclass for the persistent QR token.

Pattern: Data class (pure data container, zero logic). The store maps rows to
this shape; the issuer and redeemer do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class QRToken:
    """One row of user_qr_tokens.

    Rows are superseded, never deleted. At most one row per user_id has
    is_active=True at any instant; old rows stay behind with is_active=False
    and a deactivated_at stamp for audit.

    expires_at is None for tokens issued while QR_TOKEN_TTL_SECONDS=0. Those
    tokens stay valid until rotated or revoked.
    """

    user_id: str
    token: str  # 64 hex chars, the lookup key
    is_active: bool = True
    id: int | None = None
    created_at: str | None = None
    expires_at: str | None = None  # ISO 8601 UTC, None = no expiry
    deactivated_at: str | None = None

    @property
    def prefix(self) -> str:
        """First 8 characters -- the only part of a token that may be logged."""
        return self.token[:8]


@dataclass
class Caller:
    """The authenticated caller of an issuance endpoint, from the authority's JWT.

    role is the JWT "role" claim: "authenticated" for end users,
    "service_role" for trusted backends that may act on any email.
    """

    user_id: str
    email: str
    role: str

    @property
    def is_service(self) -> bool:
        return self.role == "service_role"

    def may_act_for(self, email: str) -> bool:
        return self.is_service or (bool(self.email) and self.email.lower() == email.strip().lower())
