#!/usr/bin/env python3
"""
EvidenceChain Management CLI

Commands for operating the evidence pipeline:
- init-db: Create the PostgreSQL schema
- list-evidence: Print stored evidence (newest first)
- export-evidence: Export evidence records to JSON
- reconcile: Insert missing records for orphaned ledger receipts
- verify-ledger: Check every stored record's receipt against the ledger
- generate-key: Generate a submitter (secp256k1) keypair for development
- sign-message: Sign the submission message for a content hash
- generate-node-key: Generate the in-memory ledger node's Ed25519 key
- health-check: Check store and ledger connectivity

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage sign-message --content-hash QmXyz --private-key 0xabc...
    python -m tools.manage reconcile
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_db(args):
    """Create tables, indexes and the clock row."""
    from evidencechain.db import PostgresRecordStore, DatabaseConfig

    config = DatabaseConfig.from_env()
    print(f"Initializing schema on {config.to_url(include_password=False)}")
    PostgresRecordStore.from_config(config).ensure_schema()
    print("[OK] Schema ready")


def cmd_list_evidence(args):
    """Print evidence records, newest first."""
    from evidencechain.db import create_record_store

    store = create_record_store()
    if args.submitter:
        records = store.list_evidence_by_submitter(args.submitter)
    else:
        records = store.list_evidence()

    print(f"Found {len(records)} evidence records")
    for record in records[: args.limit]:
        print(f"  {record.created_at.isoformat()}  {record.id}")
        print(f"    content:   {record.content_hash}")
        print(f"    submitter: {record.submitter_identity}")
        print(f"    receipt:   {record.ledger_receipt}")


def cmd_export_evidence(args):
    """Export all evidence records to a JSON file."""
    from evidencechain.db import create_record_store

    store = create_record_store()
    records = store.list_evidence()
    export_data = [record.model_dump(mode="json") for record in records]

    output_file = args.output or "evidence_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(records)} records to {output_file}")


def cmd_reconcile(args):
    """Insert the missing record for every orphan the ledger confirms."""
    from evidencechain.core import reconcile
    from evidencechain.runtime import Runtime

    runtime = Runtime.from_env()
    try:
        if runtime.orphan_log.path is None:
            print("Error: EVIDENCECHAIN_RECONCILIATION_LOG is not set")
            return 1

        orphans = runtime.orphan_log.entries()
        print(f"Found {len(orphans)} orphaned receipts")
        if not orphans:
            return 0

        report = reconcile(runtime.orphan_log, runtime.ledger, runtime.store)
        print(f"  Inserted:        {len(report.inserted)}")
        print(f"  Already present: {len(report.already_present)}")
        print(f"  Unconfirmed:     {len(report.unconfirmed)}")
        print(f"  Failed:          {len(report.failed)}")
        return 1 if report.remaining else 0
    finally:
        runtime.close()


def cmd_verify_ledger(args):
    """Confirm every stored record's receipt on the ledger."""
    from evidencechain.runtime import Runtime

    runtime = Runtime.from_env()
    try:
        records = runtime.store.list_evidence()
        print(f"Checking {len(records)} records against {type(runtime.ledger).__name__}...")

        missing = [r for r in records if runtime.ledger.get_receipt(r.ledger_receipt) is None]
        for record in missing:
            print(f"  [FAIL] {record.id}: receipt {record.ledger_receipt} not on ledger")

        if missing:
            print(f"[FAIL] {len(missing)} records without a ledger receipt")
            return 1
        print("[OK] Every record is backed by a ledger receipt")
        return 0
    finally:
        runtime.close()


def cmd_generate_key(args):
    """Generate a secp256k1 submitter keypair."""
    from evidencechain.core.verifier import generate_keypair

    private_key, address = generate_keypair()
    print(f"  Address:     {address}")
    print(f"  Private key: 0x{private_key}")
    print("\n  Development only. Real submitters sign with their own wallet.")


def cmd_sign_message(args):
    """Sign the submission message for a content hash."""
    from evidencechain.core.verifier import address_for_private_key, sign_message, submission_message

    message = submission_message(args.content_hash, args.template_version)
    signature = sign_message(message, args.private_key)

    print(json.dumps({
        "content_hash": args.content_hash,
        "message": message,
        "signature": signature,
        "submitter": address_for_private_key(args.private_key),
        "template_version": args.template_version,
    }, indent=2))


def cmd_generate_node_key(args):
    """Generate the Ed25519 key that seals in-memory ledger entries."""
    from evidencechain.core import Signer

    private_key, public_key = Signer.generate_keypair()
    print("\n  Set these environment variables:")
    print(f"  EVIDENCECHAIN_NODE_PRIVATE_KEY={private_key}")
    print(f"  EVIDENCECHAIN_NODE_PUBLIC_KEY={public_key}")


def cmd_health_check(args):
    """Check store and ledger connectivity."""
    from evidencechain.observability import check_health
    from evidencechain.runtime import Runtime

    print("=== EvidenceChain Health Check ===\n")
    runtime = Runtime.from_env()
    try:
        status = check_health(record_store=runtime.store, ledger=runtime.ledger)
        for name, check in status.checks.items():
            marker = "[OK]" if check["status"] == "healthy" else "[FAIL]"
            print(f"  {name}: {marker} {check}")

        pending = len(runtime.orphan_log)
        if pending:
            print(f"\n  [WARN] {pending} orphaned receipts awaiting reconciliation")
    finally:
        runtime.close()

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main():
    parser = argparse.ArgumentParser(
        description="EvidenceChain Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create the PostgreSQL schema")

    p_list = subparsers.add_parser("list-evidence", help="List evidence records")
    p_list.add_argument("--submitter", help="Only records from this address")
    p_list.add_argument("--limit", type=int, default=50, help="Max records to print")

    p_export = subparsers.add_parser("export-evidence", help="Export evidence to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: evidence_export.json)")

    subparsers.add_parser("reconcile", help="Reconcile orphaned ledger receipts")

    subparsers.add_parser("verify-ledger", help="Check stored records against the ledger")

    subparsers.add_parser("generate-key", help="Generate a submitter keypair (development)")

    p_sign = subparsers.add_parser("sign-message", help="Sign a submission message")
    p_sign.add_argument("--content-hash", required=True, help="Content hash being submitted")
    p_sign.add_argument("--private-key", required=True, help="Hex secp256k1 private key")
    p_sign.add_argument("--template-version", type=int, default=1, help="Message template version")

    subparsers.add_parser("generate-node-key", help="Generate the ledger node Ed25519 key")

    subparsers.add_parser("health-check", help="Check store and ledger connectivity")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "list-evidence": cmd_list_evidence,
        "export-evidence": cmd_export_evidence,
        "reconcile": cmd_reconcile,
        "verify-ledger": cmd_verify_ledger,
        "generate-key": cmd_generate_key,
        "sign-message": cmd_sign_message,
        "generate-node-key": cmd_generate_node_key,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
