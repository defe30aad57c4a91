"""
identity/authority.py -- HTTP client for the external identity authority.

The authority is a GoTrue-compatible admin API (the auth server behind
Supabase). This service never stores credentials of its own: it asks the
authority who a user is and asks it to mint one-time login links.

Endpoints used:
  GET  {base}/auth/v1/admin/users?page=&per_page=  -- list identities
  GET  {base}/auth/v1/admin/users/{id}             -- one identity
  POST {base}/auth/v1/admin/generate_link          -- magic link for an email

Lifecycle:
  One IdentityAuthority per process. The API lifespan builds it at startup
  (from_settings) and closes it at shutdown; route handlers reuse it via
  app.state. The underlying requests.Session pools connections across calls.

Every public method returns a Result (identity/result.py). Network failures
and timeouts become Err(UNAVAILABLE); nothing here raises for an authority
failure, and nothing retries.

Layer rule: no imports from api/, web/, or qrauth/.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from core.config import Settings, get_settings
from core.errors import ConfigurationError
from core.models import Identity
from identity.result import Err, ErrorReason, Ok, Result, classify_error, error_message

logger = logging.getLogger("qrlogin.authority")

_ADMIN_USERS = "/auth/v1/admin/users"
_GENERATE_LINK = "/auth/v1/admin/generate_link"
_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

# The admin API caps per_page at 1000.
_PAGE_SIZE = 1000


class IdentityAuthority:
    """Thin, typed wrapper over the authority's admin endpoints.

    Usage:
        authority = IdentityAuthority.from_settings()
        result = authority.find_identity_by_email("ana@example.com")
        authority.close()
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        # The authority is a known host; a long redirect chain is never legitimate.
        self._session.max_redirects = 3
        self._session.headers.update(
            {
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Accept": "application/json",
            }
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> IdentityAuthority:
        """Build the client from configuration.

        Raises ConfigurationError if the authority URL or service key is
        missing -- before any network traffic happens.
        """
        cfg = settings or get_settings()
        if not cfg.authority_configured:
            raise ConfigurationError("AUTHORITY_URL and AUTHORITY_SERVICE_KEY must both be set")
        return cls(cfg.authority_url, cfg.authority_service_key, timeout=cfg.authority_timeout_seconds)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs: Any) -> Result[requests.Response]:
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("Authority %s %s failed: %s", method, url, e)
            return Err(ErrorReason.UNAVAILABLE, str(e))
        if resp.status_code >= 400:
            try:
                body: Any = resp.json()
            except ValueError:
                body = resp.text
            reason = classify_error(resp.status_code, body)
            message = error_message(body) or f"HTTP {resp.status_code}"
            logger.warning("Authority %s %s -> %d (%s): %s", method, url, resp.status_code, reason.value, message)
            return Err(reason, message, resp.status_code)
        return Ok(resp)

    def _json(self, method: str, path: str, **kwargs: Any) -> Result[Any]:
        result = self._request(method, f"{self.base_url}{path}", **kwargs)
        if isinstance(result, Err):
            return result
        try:
            return Ok(result.value.json())
        except ValueError:
            return Err(ErrorReason.UNKNOWN, "authority returned a non-JSON body", result.value.status_code)

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def list_identities(self, page: int = 1, per_page: int = _PAGE_SIZE) -> Result[list[Identity]]:
        """Return one page of identities."""
        result = self._json("GET", _ADMIN_USERS, params={"page": page, "per_page": per_page})
        if isinstance(result, Err):
            return result
        payload = result.value
        users = payload.get("users", []) if isinstance(payload, dict) else payload
        return Ok([_to_identity(u) for u in users or [] if u.get("id")])

    def find_identity_by_email(self, email: str) -> Result[Identity | None]:
        """Find an identity by email (case-insensitive). Ok(None) when absent.

        The admin API has no lookup-by-email endpoint, so this pages through
        the full user list and stops at the first match. Acceptable for the
        user counts this service targets; an authority that offers a direct
        email filter should be queried with it instead.
        """
        wanted = email.strip().lower()
        page = 1
        while True:
            result = self.list_identities(page=page)
            if isinstance(result, Err):
                return result
            for identity in result.value:
                if identity.email.lower() == wanted:
                    return Ok(identity)
            if len(result.value) < _PAGE_SIZE:
                return Ok(None)
            page += 1

    def get_identity(self, user_id: str) -> Result[Identity]:
        """Return the identity for user_id, or Err(NOT_FOUND)."""
        result = self._json("GET", f"{_ADMIN_USERS}/{user_id}")
        if isinstance(result, Err):
            return result
        payload = result.value
        if not isinstance(payload, dict) or not payload.get("id"):
            return Err(ErrorReason.NOT_FOUND, f"no identity for {user_id}")
        return Ok(_to_identity(payload))

    # ------------------------------------------------------------------
    # Login artifacts
    # ------------------------------------------------------------------

    def generate_login_link(self, email: str, redirect_to: str) -> Result[str]:
        """Ask the authority for a one-time magic link for email.

        The link is returned either at the top level (raw GoTrue) or under
        "properties" (supabase-js shaped proxies); both are accepted.
        """
        result = self._json(
            "POST",
            _GENERATE_LINK,
            json={"type": "magiclink", "email": email, "redirect_to": redirect_to},
        )
        if isinstance(result, Err):
            return result
        payload = result.value if isinstance(result.value, dict) else {}
        properties = payload.get("properties") or {}
        link = payload.get("action_link") or properties.get("action_link")
        if not link:
            return Err(ErrorReason.UNKNOWN, "authority response contained no action_link")
        return Ok(link)

    def resolve_login_link(self, url: str) -> Result[str | None]:
        """Visit a login link once without following redirects.

        Returns the Location header (where the authority would send the
        browser, typically with session tokens in the fragment), or Ok(None)
        if the response is not a redirect. Links pointing anywhere other than
        the configured authority are never visited -- the service key travels
        in the session headers.
        """
        if not url.startswith(f"{self.base_url}/"):
            logger.warning("Refusing to resolve login link outside the authority host")
            return Ok(None)
        result = self._request("GET", url, allow_redirects=False)
        if isinstance(result, Err):
            return result
        resp = result.value
        if resp.status_code in _REDIRECT_STATUSES:
            return Ok(resp.headers.get("Location"))
        return Ok(None)

    def close(self) -> None:
        self._session.close()


def _to_identity(payload: dict) -> Identity:
    return Identity(
        id=str(payload["id"]),
        email=payload.get("email") or "",
        metadata=dict(payload.get("user_metadata") or {}),
    )
