"""
qrauth/store.py -- SQLAlchemy Core persistence layer for persistent QR tokens.

Pattern: Repository + Data Mapper. TokenStore is the repository; _row_to_token
is the mapper. Issuer and redeemer code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Tokens are stored raw, not hashed. Issuance is idempotent -- an existing
  active token is handed back unchanged so printed QR codes keep working --
  which requires the stored value to be recoverable.

Single-active invariant:
  Enforced twice. replace_active() runs deactivate-all + insert inside one
  transaction, and the partial UNIQUE index uq_user_qr_tokens_one_active
  (user_id WHERE is_active = 1) makes the database itself reject a second
  active row from a concurrent writer. That rejection surfaces as
  ActiveTokenConflict so the issuer can re-read the winner.

Expiry:
  expires_at NULL means no expiry. Expired rows keep is_active = 1 until the
  next replace/revoke, but every "find active" query filters them out, so to
  callers they are indistinguishable from inactive rows.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, create_engine, event, or_, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.config import get_settings
from core.errors import ActiveTokenConflict, StorageError
from qrauth.models import QRToken

logger = logging.getLogger("qrlogin.store")

_ACTIVE_INDEX = "uq_user_qr_tokens_one_active"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_qr_tokens = Table(
    "user_qr_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),  # authority's user UUID
    Column("token", String(64), nullable=False, unique=True),  # secrets.token_hex(32)
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),  # NULL = no expiry
    Column("deactivated_at", String(32)),
)

Index("ix_user_qr_tokens_user_active", _qr_tokens.c.user_id, _qr_tokens.c.is_active)
Index(
    _ACTIVE_INDEX,
    _qr_tokens.c.user_id,
    unique=True,
    sqlite_where=_qr_tokens.c.is_active == 1,
    postgresql_where=_qr_tokens.c.is_active == 1,
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    # Fixed microsecond precision keeps ISO strings lexicographically ordered,
    # which the expiry filter relies on.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _is_active_conflict(exc: IntegrityError) -> bool:
    # SQLite reports the indexed column ("user_qr_tokens.user_id"); PostgreSQL
    # reports the index name.
    message = str(exc.orig)
    return _ACTIVE_INDEX in message or "user_qr_tokens.user_id" in message


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into the service's StorageError family."""
    try:
        yield
    except IntegrityError as exc:
        if _is_active_conflict(exc):
            raise ActiveTokenConflict(f"{operation}: active token already exists") from exc
        logger.error("Integrity error during %s: %s", operation, exc.orig)
        raise StorageError(f"{operation} failed: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        logger.error("Storage error during %s: %s", operation, exc)
        raise StorageError(f"{operation} failed") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for QRToken rows.

    Usage:
        store = TokenStore()
        row = store.replace_active(user_id, token)
        store.find_active_by_token(token)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with _storage_errors("schema creation"):
            _metadata.create_all(self.engine)

    def _active_filter(self, now: str):
        return (_qr_tokens.c.is_active == 1) & or_(
            _qr_tokens.c.expires_at.is_(None),
            _qr_tokens.c.expires_at > now,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_active_by_token(self, token: str) -> QRToken | None:
        """Look up an active, unexpired token. O(1) via the UNIQUE index on token."""
        with _storage_errors("token lookup"), self.engine.connect() as conn:
            row = conn.execute(
                _qr_tokens.select().where((_qr_tokens.c.token == token) & self._active_filter(_now_iso()))
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def find_active_by_user(self, user_id: str) -> QRToken | None:
        """Return the user's active, unexpired token, or None."""
        with _storage_errors("user token lookup"), self.engine.connect() as conn:
            row = conn.execute(
                _qr_tokens.select()
                .where((_qr_tokens.c.user_id == user_id) & self._active_filter(_now_iso()))
                .order_by(_qr_tokens.c.id.desc())
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[QRToken]:
        """Return every token ever issued to the user, newest first (audit view)."""
        with _storage_errors("token history"), self.engine.connect() as conn:
            rows = conn.execute(
                _qr_tokens.select().where(_qr_tokens.c.user_id == user_id).order_by(_qr_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def count_active_for_user(self, user_id: str) -> int:
        """Count rows flagged active for the user, expired or not."""
        with _storage_errors("active count"), self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM user_qr_tokens WHERE user_id = :uid AND is_active = 1"),
                {"uid": user_id},
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def deactivate_all_for_user(self, user_id: str) -> int:
        """Flip every active row for the user to inactive. Returns rows changed."""
        with _storage_errors("deactivation"), self.engine.begin() as conn:
            return self._deactivate_all(conn, user_id)

    def insert_active(self, user_id: str, token: str, expires_at: str | None = None) -> QRToken:
        """Insert a new active row.

        Raises ActiveTokenConflict if the user already has an active row --
        callers that want supersede semantics use replace_active().
        """
        with _storage_errors("token insert"), self.engine.begin() as conn:
            return self._insert(conn, user_id, token, expires_at)

    def replace_active(self, user_id: str, token: str, expires_at: str | None = None) -> QRToken:
        """Deactivate all of the user's tokens and insert a new active one, atomically.

        Both statements share one transaction: a failure between them rolls
        the deactivation back, so the user never ends up with zero active
        tokens because of a half-finished rotation.
        """
        with _storage_errors("token rotation"), self.engine.begin() as conn:
            superseded = self._deactivate_all(conn, user_id)
            row = self._insert(conn, user_id, token, expires_at)
        if superseded:
            logger.info("Superseded %d token(s) for user %s", superseded, user_id)
        return row

    def deactivate_token(self, token: str) -> bool:
        """Deactivate a single token. Returns True if an active row was changed."""
        with _storage_errors("token deactivation"), self.engine.begin() as conn:
            result = conn.execute(
                _qr_tokens.update()
                .where((_qr_tokens.c.token == token) & (_qr_tokens.c.is_active == 1))
                .values(is_active=0, deactivated_at=_now_iso())
            )
        return result.rowcount > 0

    def _deactivate_all(self, conn, user_id: str) -> int:
        result = conn.execute(
            _qr_tokens.update()
            .where((_qr_tokens.c.user_id == user_id) & (_qr_tokens.c.is_active == 1))
            .values(is_active=0, deactivated_at=_now_iso())
        )
        return result.rowcount

    def _insert(self, conn, user_id: str, token: str, expires_at: str | None) -> QRToken:
        created_at = _now_iso()
        result = conn.execute(
            _qr_tokens.insert().values(
                user_id=user_id,
                token=token,
                is_active=1,
                created_at=created_at,
                expires_at=expires_at,
            )
        )
        return QRToken(
            id=result.inserted_primary_key[0],
            user_id=user_id,
            token=token,
            is_active=True,
            created_at=created_at,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_token(row) -> QRToken:
    return QRToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        expires_at=row.expires_at,
        deactivated_at=row.deactivated_at,
    )
