"""Unit tests for qrauth/redeemer.py -- presented token to session outcome.

Covers:
- issue -> redeem yields an activation link for the token's owner
- direct session when the authority's link already carries tokens
- rotation and revocation invalidate the old token immediately
- unknown / malformed / oversized / non-string / empty / route-name tokens
- redemption does not mutate stored state (persistent QR)
- single-use mode claims the token before minting; a lost claim gets no session
- identity drift (row points at a deleted user) -> IdentityNotFound
- full issue -> redeem -> reuse -> rotate lifecycle for one user
"""

from unittest.mock import patch

import pytest

from core.config import Settings
from core.errors import ExchangeFailed, IdentityNotFound, TokenInvalidOrExpired, TokenMissing
from core.models import DirectSession, NeedsActivation
from identity.result import Err, ErrorReason
from qrauth.issuer import TokenIssuer
from qrauth.redeemer import TokenRedeemer, normalize_presented_token
from qrauth.store import TokenStore
from tests.conftest import ANA, AUTHORITY_URL, BEN


class TestNormalize:
    @pytest.mark.parametrize("raw", [None, "", "   ", "qr", "QR", "redeem", "auth-by-qr-token"])
    def test_missing(self, raw) -> None:
        with pytest.raises(TokenMissing):
            normalize_presented_token(raw)

    def test_strips_whitespace(self) -> None:
        assert normalize_presented_token("  abc  ") == "abc"

    @pytest.mark.parametrize("raw", [12345, ["a" * 64], {"token": "a" * 64}, True])
    def test_non_string_is_invalid(self, raw) -> None:
        with pytest.raises(TokenInvalidOrExpired):
            normalize_presented_token(raw)

    def test_oversized_is_invalid(self) -> None:
        with pytest.raises(TokenInvalidOrExpired):
            normalize_presented_token("a" * 300)

    def test_longest_accepted_length(self) -> None:
        assert normalize_presented_token("a" * 256) == "a" * 256


class TestRedeem:
    def test_redeem_returns_activation_for_owner(self, issuer: TokenIssuer, redeemer: TokenRedeemer, authority) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        result = redeemer.redeem(issued.token)

        assert result.user_id == ANA.id
        assert result.needs_activation is True
        assert isinstance(result.outcome, NeedsActivation)
        assert result.outcome.identity.email == ANA.email
        assert result.outcome.activation_url.startswith(f"{AUTHORITY_URL}/auth/v1/verify")
        assert result.consumed is False
        # The link is addressed to the owner's email and lands on the callback page.
        assert authority.link_requests[-1] == (ANA.email, "https://qr.example.com/auth/callback")

    def test_redeem_direct_session(self, issuer: TokenIssuer, redeemer: TokenRedeemer, authority) -> None:
        authority.link = "https://qr.example.com/auth/callback#access_token=at&refresh_token=rt&expires_in=3600"
        issued = issuer.issue_or_reuse(BEN.email)
        result = redeemer.redeem(issued.token)

        assert isinstance(result.outcome, DirectSession)
        assert result.outcome.credentials.access_token == "at"
        assert result.outcome.credentials.refresh_token == "rt"
        assert result.outcome.credentials.expires_in == 3600
        assert result.outcome.identity.id == BEN.id

    def test_tokens_resolve_to_their_own_owner(self, issuer: TokenIssuer, redeemer: TokenRedeemer) -> None:
        ana = issuer.issue_or_reuse(ANA.email)
        ben = issuer.issue_or_reuse(BEN.email)
        assert redeemer.redeem(ana.token).user_id == ANA.id
        assert redeemer.redeem(ben.token).user_id == BEN.id

    def test_unknown_token(self, redeemer: TokenRedeemer) -> None:
        with pytest.raises(TokenInvalidOrExpired):
            redeemer.redeem("0" * 64)

    def test_malformed_token_is_indistinguishable(self, redeemer: TokenRedeemer) -> None:
        with pytest.raises(TokenInvalidOrExpired):
            redeemer.redeem("not-a-real-token")

    @pytest.mark.parametrize("raw", [None, "", "redeem"])
    def test_missing_token(self, redeemer: TokenRedeemer, raw) -> None:
        with pytest.raises(TokenMissing):
            redeemer.redeem(raw)

    def test_rotated_token_is_rejected(self, issuer: TokenIssuer, redeemer: TokenRedeemer) -> None:
        old = issuer.issue_or_reuse(ANA.email)
        new = issuer.rotate(ANA.email)
        with pytest.raises(TokenInvalidOrExpired):
            redeemer.redeem(old.token)
        assert redeemer.redeem(new.token).user_id == ANA.id

    def test_revoked_token_is_rejected(self, issuer: TokenIssuer, redeemer: TokenRedeemer) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        issuer.revoke(ANA.email)
        with pytest.raises(TokenInvalidOrExpired):
            redeemer.redeem(issued.token)

    def test_expired_token_is_rejected(self, store: TokenStore, redeemer: TokenRedeemer) -> None:
        store.insert_active(ANA.id, "f" * 64, expires_at="2000-01-01T00:00:00.000000+00:00")
        with pytest.raises(TokenInvalidOrExpired):
            redeemer.redeem("f" * 64)

    def test_redemption_does_not_mutate_state(
        self, issuer: TokenIssuer, redeemer: TokenRedeemer, store: TokenStore
    ) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        before = store.list_for_user(ANA.id)
        redeemer.redeem(issued.token)
        redeemer.redeem(issued.token)
        assert store.list_for_user(ANA.id) == before


class TestFailures:
    def test_identity_drift(self, store: TokenStore, redeemer: TokenRedeemer) -> None:
        store.insert_active("deleted-user", "1" * 64)
        with pytest.raises(IdentityNotFound):
            redeemer.redeem("1" * 64)

    def test_authority_unavailable_on_lookup(self, issuer: TokenIssuer, redeemer: TokenRedeemer, authority) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        authority.lookup_error = Err(ErrorReason.UNAVAILABLE, "timeout")
        with pytest.raises(ExchangeFailed):
            redeemer.redeem(issued.token)

    def test_link_generation_refused(self, issuer: TokenIssuer, redeemer: TokenRedeemer, authority) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        authority.link_error = Err(ErrorReason.RATE_LIMITED, "over_email_send_rate_limit", 429)
        with pytest.raises(ExchangeFailed):
            redeemer.redeem(issued.token)

    def test_failed_exchange_leaves_token_active(
        self, issuer: TokenIssuer, redeemer: TokenRedeemer, authority, store: TokenStore
    ) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        authority.link_error = Err(ErrorReason.UNAVAILABLE, "down")
        with pytest.raises(ExchangeFailed):
            redeemer.redeem(issued.token)
        assert store.find_active_by_token(issued.token) is not None


class TestSingleUse:
    @pytest.fixture
    def single_use_redeemer(self, store, authority) -> TokenRedeemer:
        settings = Settings(
            public_base_url="https://qr.example.com",
            authority_url=AUTHORITY_URL,
            authority_service_key="service-key",
            qr_single_use=True,
        )
        return TokenRedeemer(store, authority, settings)

    def test_token_is_consumed(self, issuer: TokenIssuer, single_use_redeemer: TokenRedeemer) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        result = single_use_redeemer.redeem(issued.token)
        assert result.consumed is True
        with pytest.raises(TokenInvalidOrExpired):
            single_use_redeemer.redeem(issued.token)

    def test_next_issue_creates_fresh_token(self, issuer: TokenIssuer, single_use_redeemer: TokenRedeemer) -> None:
        first = issuer.issue_or_reuse(ANA.email)
        single_use_redeemer.redeem(first.token)
        second = issuer.issue_or_reuse(ANA.email)
        assert second.token != first.token
        assert second.reused is False

    def test_lost_claim_is_rejected_without_minting(
        self, issuer: TokenIssuer, single_use_redeemer: TokenRedeemer, store: TokenStore, authority
    ) -> None:
        """Two scans of one single-use code: the one that loses the claim gets no session."""
        issued = issuer.issue_or_reuse(ANA.email)
        lookup = store.find_active_by_token

        def other_scan_claims_first(token):
            row = lookup(token)
            store.deactivate_token(token)
            return row

        with patch.object(store, "find_active_by_token", side_effect=other_scan_claims_first):
            with pytest.raises(TokenInvalidOrExpired):
                single_use_redeemer.redeem(issued.token)
        assert authority.link_requests == []

    def test_failed_exchange_spends_token(
        self, issuer: TokenIssuer, single_use_redeemer: TokenRedeemer, store: TokenStore, authority
    ) -> None:
        issued = issuer.issue_or_reuse(ANA.email)
        authority.link_error = Err(ErrorReason.UNAVAILABLE, "down")
        with pytest.raises(ExchangeFailed):
            single_use_redeemer.redeem(issued.token)
        assert store.find_active_by_token(issued.token) is None


def test_issue_redeem_rotate_lifecycle(
    issuer: TokenIssuer, redeemer: TokenRedeemer, store: TokenStore, authority
) -> None:
    """One user end to end: issue, redeem, reissue, rotate, redeem both codes."""
    t1 = issuer.issue_or_reuse(ANA.email)
    assert t1.reused is False

    first = redeemer.redeem(t1.token)
    assert first.user_id == ANA.id
    assert first.outcome.identity.email == ANA.email

    again = issuer.issue_or_reuse(ANA.email)
    assert again.reused is True
    assert again.token == t1.token
    assert again.url == t1.url

    t2 = issuer.rotate(ANA.email)
    assert t2.token != t1.token
    assert store.count_active_for_user(ANA.id) == 1

    with pytest.raises(TokenInvalidOrExpired):
        redeemer.redeem(t1.token)
    assert redeemer.redeem(t2.token).user_id == ANA.id
    assert [r.token for r in store.list_for_user(ANA.id)] == [t2.token, t1.token]
