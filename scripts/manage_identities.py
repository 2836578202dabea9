#!/usr/bin/env python3
"""Administrative maintenance for identities.

Usage:
    # Make sure the default role exists:
    python scripts/manage_identities.py seed-role
    python scripts/manage_identities.py seed-role --name ROLE_ADMIN

    # Clear a lockout before it expires:
    python scripts/manage_identities.py unlock alice@example.com

    # Disable or re-enable an account (disabling revokes refresh tokens):
    python scripts/manage_identities.py disable alice@example.com
    python scripts/manage_identities.py enable alice@example.com

    # Show the derived lifecycle state:
    python scripts/manage_identities.py state alice@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    SHARED_FS_ROOT: Directory for the memory store snapshot and generated JWT secret
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_command(args: argparse.Namespace) -> str:
    """Execute one subcommand against the configured runtime and return its output line."""
    # Import here to avoid loading config before env vars are set
    from validauth.service.runtime import get_runtime

    runtime = get_runtime()
    lifecycle = runtime.lifecycle

    if args.command == "seed-role":
        name = args.name or runtime.settings.default_role
        role = runtime.store.ensure_role(name)
        return f"Role {role.name} present (id: {role.id})"
    if args.command == "unlock":
        return (await lifecycle.unlock(args.email)).message
    if args.command == "disable":
        return (await lifecycle.set_enabled(args.email, False)).message
    if args.command == "enable":
        return (await lifecycle.set_enabled(args.email, True)).message
    if args.command == "state":
        state = await lifecycle.get_identity_state(args.email)
        return f"{args.email}: {state.value}"
    raise ValueError(f"unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage validauth identities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed-role", help="Create a role if it is missing")
    seed.add_argument("--name", default=None, help="Role name (defaults to DEFAULT_ROLE)")

    for command, help_text in (
        ("unlock", "Clear failed attempts and any active lock"),
        ("disable", "Disable an account and revoke its refresh tokens"),
        ("enable", "Re-enable a disabled account"),
        ("state", "Print the derived lifecycle state"),
    ):
        cmd = sub.add_parser(command, help=help_text)
        cmd.add_argument("email", help="Account email address")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from validauth.service.errors import ServiceError

    try:
        print(asyncio.run(run_command(args)))
    except ServiceError as e:
        print(f"Error [{e.error_code}]: {e.message}")
        sys.exit(1)
    except RuntimeError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
