#!/usr/bin/env python3
"""Revoke stored refresh sessions.

Usage:
    # Flush one namespace:
    python scripts/flush_sessions.py --namespace admin-panel

    # Flush every namespace:
    python scripts/flush_sessions.py --all

    # Count what would be flushed:
    python scripts/flush_sessions.py --all --dry-run

Environment Variables:
    REDIS_URL: Redis connection string holding the refresh records
    TOKEN_PREFIX: Key prefix used when the tokens were issued (default: jwt)
    JWT_SECRET: Signing key of the issuing deployment
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def flush_sessions(
    namespace: Optional[str] = None, all_namespaces: bool = False, dry_run: bool = False
) -> dict:
    """Flush refresh sessions from the configured store.

    Returns:
        dict with scope, count, and status ('flushed' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from jwtsessions.service.codec import TokenCodec
    from jwtsessions.service.runtime import get_runtime
    from jwtsessions.service.session import Session
    from jwtsessions.service.tokens import RefreshToken

    runtime = get_runtime()
    scope = "all" if all_namespaces else namespace

    if dry_run:
        tokens = RefreshToken.all(
            namespace,
            runtime.store,
            codec=TokenCodec.from_settings(runtime.settings),
            all_namespaces=all_namespaces,
        )
        print(f"[DRY RUN] Would flush {len(tokens)} session(s) in {scope}")
        return {"scope": scope, "count": len(tokens), "status": "dry_run"}

    if all_namespaces:
        count = Session.flush_all(runtime.store, runtime.settings)
    else:
        session = Session(namespace=namespace, store=runtime.store, settings=runtime.settings)
        count = session.flush_namespaced()
    print(f"Flushed {count} session(s) in {scope}")
    return {"scope": scope, "count": count, "status": "flushed"}


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Flush stored JWT refresh sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--namespace", help="Namespace whose sessions are flushed")
    scope.add_argument(
        "--all",
        dest="all_namespaces",
        action="store_true",
        help="Flush sessions in every namespace",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.namespace and not args.all_namespaces:
        print("Error: --namespace or --all required")
        sys.exit(1)

    try:
        flush_sessions(args.namespace, args.all_namespaces, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
