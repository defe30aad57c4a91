"""
qrauth/exchange.py -- Session Exchange Adapter.

Turns a resolved identity into session material by asking the identity
authority for a one-time magic link, then trying to pull an access/refresh
token pair out of that link.

Where the tokens live in the link is not stable across authority
configurations: sometimes in the query string, sometimes in the fragment
(implicit-flow style), usually nowhere (the link must be clicked first). The
adapter therefore runs an ordered chain of extraction strategies, each a
plain function returning SessionCredentials or None, first hit wins:

  1. _from_query     -- ?access_token=...&refresh_token=...
  2. _from_fragment  -- #access_token=...&refresh_token=...

With EXCHANGE_RESOLVE_LINKS=true the adapter additionally visits the link
once (no redirects followed) and runs the same chain over the Location the
authority answers with. That consumes the one-time link.

No hit -> NeedsActivation with the raw link, so the caller can send the end
user there. The adapter degrades; it does not fail because extraction did.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from core.config import Settings, get_settings
from core.errors import ExchangeFailed
from core.models import DirectSession, ExchangeOutcome, Identity, NeedsActivation, SessionCredentials
from identity.authority import IdentityAuthority
from identity.result import Err

logger = logging.getLogger("qrlogin.exchange")

ExtractionStrategy = Callable[[str], Optional[SessionCredentials]]


# ---------------------------------------------------------------------------
# Extraction strategies
# ---------------------------------------------------------------------------


def _credentials_from_params(raw: str) -> Optional[SessionCredentials]:
    params = parse_qs(raw, keep_blank_values=False)
    access = params.get("access_token", [""])[0]
    refresh = params.get("refresh_token", [""])[0]
    if not access or not refresh:
        return None
    expires_in: Optional[int] = None
    raw_expiry = params.get("expires_in", [""])[0]
    if raw_expiry.isdigit():
        expires_in = int(raw_expiry)
    return SessionCredentials(
        access_token=access,
        refresh_token=refresh,
        expires_in=expires_in,
        token_type=params.get("token_type", ["bearer"])[0],
    )


def _from_query(url: str) -> Optional[SessionCredentials]:
    return _credentials_from_params(urlsplit(url).query)


def _from_fragment(url: str) -> Optional[SessionCredentials]:
    fragment = urlsplit(url).fragment
    # Some authorities put a path before the params: "#/callback?access_token=..."
    if "?" in fragment:
        fragment = fragment.split("?", 1)[1]
    return _credentials_from_params(fragment)


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (_from_query, _from_fragment)


def extract_credentials(
    url: str, strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES
) -> Optional[SessionCredentials]:
    """Run each strategy left to right and return the first match."""
    for strategy in strategies:
        credentials = strategy(url)
        if credentials is not None:
            return credentials
    return None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class SessionExchange:
    def __init__(
        self,
        authority: IdentityAuthority,
        settings: Settings | None = None,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self.authority = authority
        self.settings = settings or get_settings()
        self.strategies = tuple(strategies)

    def mint_session(self, identity: Identity) -> ExchangeOutcome:
        """Produce a DirectSession or NeedsActivation for identity.

        Raises ExchangeFailed if the authority refuses to produce a link.
        """
        if not identity.email:
            raise ExchangeFailed(f"identity {identity.id} has no email to address a login link to")

        result = self.authority.generate_login_link(identity.email, self.settings.login_redirect_url)
        if isinstance(result, Err):
            raise ExchangeFailed(f"login link generation failed ({result.reason.value}): {result.message}")
        link = result.value

        credentials = extract_credentials(link, self.strategies)
        if credentials is None and self.settings.exchange_resolve_links:
            credentials = self._resolve(link)

        if credentials is not None:
            logger.info("Direct session minted for user %s", identity.id)
            return DirectSession(credentials=credentials, identity=identity)

        logger.info("Activation link issued for user %s", identity.id)
        return NeedsActivation(activation_url=link, identity=identity)

    def _resolve(self, link: str) -> Optional[SessionCredentials]:
        result = self.authority.resolve_login_link(link)
        if isinstance(result, Err):
            raise ExchangeFailed(f"login link resolution failed ({result.reason.value}): {result.message}")
        if not result.value:
            return None
        credentials = extract_credentials(result.value, self.strategies)
        if credentials is None:
            # The authority redirected, so the one-time link is spent; handing
            # it to the user as an activation link would only produce an error.
            raise ExchangeFailed("login link was consumed without yielding a session")
        return credentials
