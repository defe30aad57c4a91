"""
qrauth/redeemer.py -- Token Redeemer.

Presented token -> active row -> identity -> session material.

Failure classes, in the order they can occur:
  TokenMissing           -- nothing usable was presented.
  TokenInvalidOrExpired  -- no active, unexpired row. One class for every
                            reason so probing reveals nothing.
  IdentityNotFound       -- the row points at a user the authority no longer
                            has. Data drift, logged at ERROR.
  ExchangeFailed         -- the authority would not mint a session.
  StorageError           -- the token database failed.

Redemption does not consume the token unless QR_SINGLE_USE=true: a persistent
QR code keeps signing its owner in until it is rotated or revoked. In
single-use mode the token is claimed before the session is minted, so a
failed exchange still spends it.
"""

from __future__ import annotations

import logging
from typing import Any

from core.config import Settings, get_settings
from core.errors import ExchangeFailed, IdentityNotFound, TokenInvalidOrExpired, TokenMissing
from core.models import MAX_TOKEN_LENGTH, ROUTE_NAMES, RedemptionResult
from identity.authority import IdentityAuthority
from identity.result import Err, ErrorReason
from qrauth.exchange import SessionExchange
from qrauth.store import TokenStore

logger = logging.getLogger("qrlogin.redeemer")


def normalize_presented_token(raw: Any) -> str:
    """Return the cleaned token, raising TokenMissing for absent input.

    The literal route name counts as absent: a GET to /auth/qr/redeem or to
    the bare function route yields the route name as its last path segment.
    Input that cannot be a token (not a string, or longer than any issued
    token) is TokenInvalidOrExpired, the same answer as an unknown token.
    """
    if raw is None:
        raise TokenMissing("no token supplied")
    if not isinstance(raw, str):
        raise TokenInvalidOrExpired(f"presented token has type {type(raw).__name__}")
    token = raw.strip()
    if not token or token.lower() in ROUTE_NAMES:
        raise TokenMissing("no token supplied")
    if len(token) > MAX_TOKEN_LENGTH:
        raise TokenInvalidOrExpired(f"presented token is {len(token)} characters")
    return token


class TokenRedeemer:
    def __init__(
        self,
        store: TokenStore,
        authority: IdentityAuthority,
        settings: Settings | None = None,
        exchange: SessionExchange | None = None,
    ) -> None:
        self.store = store
        self.authority = authority
        self.settings = settings or get_settings()
        self.exchange = exchange or SessionExchange(authority, self.settings)

    def redeem(self, presented_token: Any) -> RedemptionResult:
        token = normalize_presented_token(presented_token)

        row = self.store.find_active_by_token(token)
        if row is None:
            logger.warning("Redemption refused for token %s...", token[:8])
            raise TokenInvalidOrExpired("no active row for presented token")

        result = self.authority.get_identity(row.user_id)
        if isinstance(result, Err):
            if result.reason is ErrorReason.NOT_FOUND:
                logger.error("Token %s... is bound to missing user %s", row.prefix, row.user_id)
                raise IdentityNotFound(f"user {row.user_id} no longer exists")
            raise ExchangeFailed(f"identity lookup failed ({result.reason.value}): {result.message}")
        identity = result.value

        consumed = False
        if self.settings.qr_single_use:
            # The conditional deactivation is the claim: only one concurrent
            # redemption flips the row, every other one sees False.
            if not self.store.deactivate_token(token):
                logger.warning("Single-use token %s... already claimed", row.prefix)
                raise TokenInvalidOrExpired("single-use token claimed by a concurrent redemption")
            consumed = True
            logger.info("Single-use token %s... consumed", row.prefix)

        outcome = self.exchange.mint_session(identity)

        return RedemptionResult(outcome=outcome, user_id=identity.id, consumed=consumed)
