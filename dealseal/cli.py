#!/usr/bin/env python3
"""
DealSeal Command Line Interface

Usage:
    dealseal verify --bundle <file>
    dealseal export --public-id <id> [--db <file>] [--output <file>]
    dealseal hash --file <file>
"""

import argparse
import json
import sys

from .config import load_settings
from .db import Store
from .errors import DealError
from .hashing import compute_seal
from .verifier import DealVerifier, verify_bundle
from .audit import AuditLog


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json(data: dict, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def cmd_verify(args) -> int:
    """Recompute the seal in an exported bundle and re-walk its audit chain."""
    report = verify_bundle(load_json(args.bundle))
    seal = report["seal"]

    if seal["valid"]:
        print(f"✓ seal matches: {seal['stored_seal']}")
    else:
        print(f"✗ seal INVALID: {seal['reason']}")
        if seal.get("recomputed_seal"):
            print(f"  stored:     {seal['stored_seal']}")
            print(f"  recomputed: {seal['recomputed_seal']}")

    chain = report.get("audit_chain")
    if chain is not None:
        if chain["valid"]:
            print(f"✓ audit chain valid ({chain['entries_checked']} entries)")
        else:
            print(f"✗ audit chain broken at entry {chain['broken_at']}: {chain['reason']}")

    return 0 if report["valid"] else 1


def cmd_export(args) -> int:
    """Export a confirmed deal's seal bundle from a database file."""
    store = Store(args.db or load_settings().db_path)
    store.init_db()
    verifier = DealVerifier(store, AuditLog(store))
    try:
        bundle = verifier.export_bundle(args.public_id)
    except DealError as e:
        print(f"✗ {e.message}", file=sys.stderr)
        return 1
    finally:
        store.close_connection()

    if args.output:
        save_json(bundle, args.output)
        print(f"Bundle saved to: {args.output}", file=sys.stderr)
    else:
        print(json.dumps(bundle, indent=2))
    return 0


def cmd_hash(args) -> int:
    """Compute a seal from seal inputs (or a whole bundle)."""
    data = load_json(args.file)
    inputs = data.get("seal_inputs", data)
    seal = compute_seal(
        inputs["deal_id"],
        inputs["terms"],
        inputs.get("signature_url", ""),
        inputs["timestamp"],
        inputs.get("verifications", []),
    )
    print(f"deal_seal: {seal}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="DealSeal CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dealseal export -p Ab3dE5gH9k -o bundle.json
  dealseal verify -b bundle.json
  dealseal hash -f bundle.json
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a seal bundle offline")
    verify_parser.add_argument("-b", "--bundle", required=True, help="Seal bundle JSON file")

    # export
    export_parser = subparsers.add_parser("export", help="Export a seal bundle")
    export_parser.add_argument("-p", "--public-id", required=True, help="Deal public id")
    export_parser.add_argument("-d", "--db", help="SQLite database (default: DEALSEAL_DB_PATH)")
    export_parser.add_argument("-o", "--output", help="Output file for the bundle")

    # hash
    hash_parser = subparsers.add_parser("hash", help="Compute a deal seal")
    hash_parser.add_argument("-f", "--file", required=True, help="Seal inputs or bundle JSON file")

    args = parser.parse_args(argv)

    if args.command == "verify":
        return cmd_verify(args)
    elif args.command == "export":
        return cmd_export(args)
    elif args.command == "hash":
        return cmd_hash(args)
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
