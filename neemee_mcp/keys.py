"""Command line administration of API keys stored in the local backend."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Sequence, TextIO

from .config import DEFAULT_VALUES, ENV_FIELD_MAP
from .errors import NeemeeError
from .logging import configure_logging, get_logger
from .models import KNOWN_SCOPES, format_timestamp, parse_timestamp
from .service import LocalNotesService
from .storage import Storage

LOGGER = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="neemee-mcp-keys", description="Manage Neemee MCP API keys")
    parser.add_argument(
        "--storage-dir",
        default=os.environ.get(ENV_FIELD_MAP["storage_dir"], DEFAULT_VALUES["storage_dir"]),
        help="Directory holding the LanceDB tables",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    issue = commands.add_parser("issue", help="Create a key and print the secret once")
    issue.add_argument("--tenant", required=True)
    issue.add_argument("--scope", action="append", choices=KNOWN_SCOPES, required=True, dest="scopes")
    issue.add_argument("--expires-at", help="ISO-8601 expiry timestamp")

    listing = commands.add_parser("list", help="List keys without their hashes")
    listing.add_argument("--tenant")

    revoke = commands.add_parser("revoke", help="Delete a key by id")
    revoke.add_argument("key_id")
    return parser


def run(argv: Sequence[str] | None = None, *, out: TextIO | None = None) -> int:
    """Execute one key command and return the process exit status."""

    stream = out or sys.stdout
    args = _build_parser().parse_args(argv)
    storage = Storage(args.storage_dir)

    if args.command == "issue":
        try:
            expires_at = parse_timestamp(args.expires_at)
        except ValueError:
            print(f"invalid --expires-at: {args.expires_at}", file=sys.stderr)
            return 2
        try:
            raw_key, record = LocalNotesService(storage).issue_api_key(args.tenant, args.scopes, expires_at)
        except NeemeeError as exc:
            print(exc.message, file=sys.stderr)
            return 2
        payload = {"key_id": record.id, "tenant_id": record.tenant_id, "scopes": record.scopes, "api_key": raw_key}
        print(json.dumps(payload, indent=2), file=stream)
        return 0

    if args.command == "list":
        rows = [
            {
                "key_id": record.id,
                "tenant_id": record.tenant_id,
                "scopes": record.scopes,
                "expires_at": format_timestamp(record.expires_at),
                "last_used_at": format_timestamp(record.last_used_at),
                "active": record.is_active(),
            }
            for record in storage.list_api_keys(args.tenant)
        ]
        print(json.dumps(rows, indent=2), file=stream)
        return 0

    if not storage.revoke_api_key(args.key_id):
        print(f"no such key: {args.key_id}", file=sys.stderr)
        return 1
    LOGGER.info("auth.key.revoked", extra={"context": {"key_id": args.key_id}})
    print(json.dumps({"revoked": args.key_id}), file=stream)
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    configure_logging()
    raise SystemExit(run(argv))


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    main()
