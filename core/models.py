from dataclasses import dataclass, field
from typing import Any, Optional, Union

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Path prefix of the durable redemption URL. Shared by the issuer (which builds
# URLs) and the web router (which serves them).
QR_ROUTE_PREFIX = "/auth/qr"

# Last path segments that are route names, not tokens. A request to the bare
# route must not be mistaken for a redemption attempt with token "qr".
ROUTE_NAMES = frozenset({"qr", "redeem", "auth-by-qr-token"})

# Issued tokens are 64 hex chars. Anything longer is rejected before lookup.
MAX_TOKEN_LENGTH = 256


@dataclass
class Identity:
    id: str
    email: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionCredentials:
    access_token: str
    refresh_token: str
    expires_in: Optional[int] = None
    token_type: str = "bearer"


@dataclass
class IssuedToken:
    url: str
    token: str
    user_id: str
    reused: bool = False


# ---------------------------------------------------------------------------
# Exchange outcomes -- exactly one of these comes back from a redemption
# ---------------------------------------------------------------------------


@dataclass
class DirectSession:
    """Session credentials were recovered; the caller can sign in directly."""

    credentials: SessionCredentials
    identity: Identity


@dataclass
class NeedsActivation:
    """Only a one-time link is available; the end user must visit it."""

    activation_url: str
    identity: Identity


ExchangeOutcome = Union[DirectSession, NeedsActivation]


@dataclass
class RedemptionResult:
    outcome: ExchangeOutcome
    user_id: str
    consumed: bool = False

    @property
    def needs_activation(self) -> bool:
        return isinstance(self.outcome, NeedsActivation)
