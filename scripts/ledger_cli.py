#!/usr/bin/env python
"""
Command-line access to a file-backed transaction ledger.

Usage:
    python scripts/ledger_cli.py export -o backup.json
    python scripts/ledger_cli.py import backup.json
    python scripts/ledger_cli.py stats --user 0xabc... --chain 97
    python scripts/ledger_cli.py refresh --user 0xabc... --chain 97
    python scripts/ledger_cli.py info
    python scripts/ledger_cli.py clear --yes

The ledger directory defaults to STORAGE_DIR (or .txledger).
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    parser = argparse.ArgumentParser(description="Inspect and maintain the transaction ledger")
    parser.add_argument("--storage-dir", "-d",
                        help="Ledger directory (or set STORAGE_DIR env var)")
    sub = parser.add_subparsers(dest="command", required=True)

    export_parser = sub.add_parser("export", help="Write the ledger as JSON")
    export_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    import_parser = sub.add_parser("import", help="Merge an exported ledger")
    import_parser.add_argument("file", help="JSON file produced by export")

    for name, help_text in (("stats", "Show aggregate statistics"),
                            ("refresh", "Reconcile pending records and discover chain history")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--user", help="Wallet address to scope to")
        p.add_argument("--chain", type=int, help="Chain id to scope to")

    sub.add_parser("info", help="Show storage size and record count")

    clear_parser = sub.add_parser("clear", help="Remove every record")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm removal")

    args = parser.parse_args()

    os.environ["STORAGE_BACKEND"] = "file"
    if args.storage_dir:
        os.environ["STORAGE_DIR"] = args.storage_dir

    # Import after setting env vars
    from txledger.app import build_ledger
    from txledger.config import get_settings
    from txledger.services.orchestrator import AccountSession
    from txledger.utils.logging import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level)
    ledger = build_ledger(settings)

    if args.command == "export":
        payload = ledger.store.export_all()
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(payload)
            print(f"Exported {len(ledger.store.get_all())} transactions to {args.output}")
        else:
            print(payload)

    elif args.command == "import":
        with open(args.file, encoding="utf-8") as f:
            ok = ledger.store.import_all(f.read())
        if not ok:
            print("Import failed: file is not a valid ledger export")
            sys.exit(1)
        print(f"Import completed, ledger holds {len(ledger.store.get_all())} transactions")

    elif args.command == "stats":
        stats = ledger.store.stats(args.user, args.chain)
        for key, value in stats.model_dump().items():
            print(f"{key}: {value}")

    elif args.command == "refresh":
        orchestrator = ledger.orchestrator
        orchestrator.session = AccountSession(user_address=args.user, chain_id=args.chain)
        asyncio.run(orchestrator.refresh())
        if orchestrator.error:
            print(f"Refresh failed: {orchestrator.error}")
            sys.exit(1)
        print(
            f"{len(orchestrator.transactions)} transactions, "
            f"{orchestrator.stats.pending_transactions} pending"
        )

    elif args.command == "info":
        info = ledger.store.storage_info()
        print(f"Records: {info['count']} / {info['max_size']}")
        print(f"Size: {info['size']} bytes")

    elif args.command == "clear":
        if not args.yes:
            print("Refusing to clear without --yes")
            sys.exit(1)
        ledger.store.clear()
        print("All transactions cleared")


if __name__ == "__main__":
    main()
