"""
qrauth/issuer.py -- Token Issuer: issue, reuse, rotate, revoke.

Security design decisions:
  Token format: secrets.token_hex(32) -- 32 random bytes as 64 hex chars,
      256 bits of entropy from the OS CSPRNG. Collisions are negligible and
      the UNIQUE constraint on the token column catches the impossible case.

  Idempotent issuance: issue_or_reuse() hands back the user's existing
      active token unchanged. QR codes that were already printed or shared
      keep working; only rotate() or revoke() invalidates them.

  Single active token: new tokens are written with TokenStore.replace_active
      (deactivate-all + insert in one transaction). If a concurrent request
      for the same user wins the race, the database raises
      ActiveTokenConflict and the issuer returns the winner's token instead.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from core.config import Settings, get_settings
from core.errors import ActiveTokenConflict, ExchangeFailed, IdentityNotFound, StorageError
from core.models import QR_ROUTE_PREFIX, Identity, IssuedToken
from identity.authority import IdentityAuthority
from identity.result import Err
from qrauth.models import QRToken
from qrauth.store import TokenStore, to_iso

logger = logging.getLogger("qrlogin.issuer")


def generate_token() -> str:
    """Return a fresh 64-hex-character token (256 bits of entropy)."""
    return secrets.token_hex(32)


class TokenIssuer:
    def __init__(self, store: TokenStore, authority: IdentityAuthority, settings: Settings | None = None) -> None:
        self.store = store
        self.authority = authority
        self.settings = settings or get_settings()

    def redemption_url(self, token: str) -> str:
        return f"{self.settings.public_base_url}{QR_ROUTE_PREFIX}/{token}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def issue_or_reuse(self, email: str) -> IssuedToken:
        """Return the user's active token, creating one only if none exists.

        Raises IdentityNotFound if no identity has this email, ExchangeFailed
        if the authority cannot be queried, StorageError on database failure.
        """
        identity = self.resolve_identity(email)
        existing = self.store.find_active_by_user(identity.id)
        if existing is not None:
            logger.info("Reusing active token %s... for user %s", existing.prefix, identity.id)
            return self._issued(existing, reused=True)
        return self._write_new(identity, winner_is_reuse=True)

    def rotate(self, email: str) -> IssuedToken:
        """Always mint a new token, superseding whatever was active."""
        identity = self.resolve_identity(email)
        return self._write_new(identity, winner_is_reuse=False)

    def revoke(self, email: str) -> int:
        """Deactivate every active token for the user. Returns the number revoked."""
        identity = self.resolve_identity(email)
        count = self.store.deactivate_all_for_user(identity.id)
        logger.info("Revoked %d token(s) for user %s", count, identity.id)
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def resolve_identity(self, email: str) -> Identity:
        email = (email or "").strip()
        if not email:
            raise IdentityNotFound("empty email")
        result = self.authority.find_identity_by_email(email)
        if isinstance(result, Err):
            raise ExchangeFailed(f"identity lookup failed ({result.reason.value}): {result.message}")
        if result.value is None:
            logger.info("Issue refused: no identity for the supplied email")
            raise IdentityNotFound(f"User {email} not found")
        return result.value

    def _expires_at(self) -> str | None:
        ttl = self.settings.qr_token_ttl_seconds
        if ttl <= 0:
            return None
        return to_iso(datetime.now(timezone.utc) + timedelta(seconds=ttl))

    def _write_new(self, identity: Identity, winner_is_reuse: bool) -> IssuedToken:
        token = generate_token()
        try:
            row = self.store.replace_active(identity.id, token, expires_at=self._expires_at())
        except ActiveTokenConflict:
            winner = self.store.find_active_by_user(identity.id)
            if winner is None:
                raise StorageError(f"active token conflict for user {identity.id} but no active row found")
            logger.info("Concurrent issuance for user %s; returning token %s...", identity.id, winner.prefix)
            return self._issued(winner, reused=winner_is_reuse)
        logger.info("Issued new token %s... for user %s", row.prefix, identity.id)
        return self._issued(row, reused=False)

    def _issued(self, row: QRToken, reused: bool) -> IssuedToken:
        return IssuedToken(url=self.redemption_url(row.token), token=row.token, user_id=row.user_id, reused=reused)
