#!/usr/bin/env python3
"""
QR Login -- operator CLI for persistent QR login tokens.

Talks to the same token database and identity authority as the API server,
using the same settings (environment variables or .env).

Usage:
  python main.py issue ana@example.com
  python main.py issue ana@example.com --png ana.png
  python main.py rotate ana@example.com --json
  python main.py revoke ana@example.com
  python main.py history ana@example.com
  python main.py redeem 3f9c...e1

Environment variables:
  AUTHORITY_URL           Base URL of the identity authority (required)
  AUTHORITY_SERVICE_KEY   Service-role key for its admin API (required)
  PUBLIC_BASE_URL         Base of the printed QR URLs (default http://localhost:3000)
  DATABASE_URL            SQLAlchemy URL of the token database
"""

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path

from core.config import get_settings
from core.errors import QRAuthError
from core.models import DirectSession, IssuedToken
from core.qrimage import render_png
from identity.authority import IdentityAuthority
from qrauth.issuer import TokenIssuer
from qrauth.redeemer import TokenRedeemer
from qrauth.store import TokenStore


def _print_issued(issued: IssuedToken, as_json: bool) -> None:
    if as_json:
        print(json.dumps(asdict(issued), indent=2))
        return
    state = "existing token reused" if issued.reused else "new token issued"
    print(f"  {state} for user {issued.user_id}")
    print(f"  URL: {issued.url}")


def _write_png(url: str, path: str) -> None:
    target = Path(path)
    target.write_bytes(render_png(url))
    print(f"  QR code written to {target}")


def _run(args: argparse.Namespace, issuer: TokenIssuer, redeemer: TokenRedeemer, store: TokenStore) -> None:
    if args.command in ("issue", "rotate"):
        issued = issuer.issue_or_reuse(args.email) if args.command == "issue" else issuer.rotate(args.email)
        _print_issued(issued, args.json)
        if args.png:
            _write_png(issued.url, args.png)

    elif args.command == "revoke":
        count = issuer.revoke(args.email)
        print(json.dumps({"revoked": count}) if args.json else f"  {count} token(s) revoked.")

    elif args.command == "history":
        identity = issuer.resolve_identity(args.email)
        rows = store.list_for_user(identity.id)
        if args.json:
            print(json.dumps([{**asdict(r), "token": r.prefix} for r in rows], indent=2))
            return
        if not rows:
            print("  No tokens issued.")
        for r in rows:
            status = "ACTIVE  " if r.is_active else "inactive"
            print(f"  {r.prefix}...  {status}  created {r.created_at}  expires {r.expires_at or 'never'}")

    elif args.command == "redeem":
        result = redeemer.redeem(args.token)
        outcome = result.outcome
        if args.json:
            print(json.dumps(asdict(outcome), indent=2))
        elif isinstance(outcome, DirectSession):
            print(f"  Session minted for {outcome.identity.email}")
        else:
            print(f"  Activation link for {outcome.identity.email}:")
            print(f"  {outcome.activation_url}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="qr-login",
        description="Issue, rotate, revoke and test persistent QR login tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Output structured JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("issue", "Return the user's active QR URL, creating one if needed"),
        ("rotate", "Replace the user's QR token; the old code stops working"),
    ):
        p = sub.add_parser(name, help=help_text, parents=[common])
        p.add_argument("email")
        p.add_argument("--png", metavar="PATH", help="Also write the QR code as a PNG file")

    sub.add_parser("revoke", help="Deactivate every QR token for the user", parents=[common]).add_argument("email")
    sub.add_parser("history", help="List tokens issued to the user (prefixes only)", parents=[common]).add_argument("email")
    sub.add_parser("redeem", help="Redeem a token as a scan would", parents=[common]).add_argument("token")

    args = parser.parse_args()
    settings = get_settings()

    store = TokenStore(settings.database_url)
    authority = None
    try:
        authority = IdentityAuthority.from_settings(settings)
        _run(args, TokenIssuer(store, authority, settings), TokenRedeemer(store, authority, settings), store)
    except QRAuthError as e:
        print(f"  [!] {e.public_message} ({e.code}: {e})", file=sys.stderr)
        sys.exit(1)
    finally:
        if authority is not None:
            authority.close()
        store.close()


if __name__ == "__main__":
    main()
