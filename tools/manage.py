#!/usr/bin/env python3
"""
Evidence Custody Management CLI

Commands:
- generate-keypair: Generate an Ed25519 keypair for the system principal
- demo: Run the demo lifecycle against an in-memory ledger
- export-bundle: Run the demo and export one item's verification bundle
- health-check: Check configuration and audit a fresh ledger

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-keypair
    python -m tools.manage demo
    python -m tools.manage export-bundle --output bundle.json
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _demo_service():
    """An in-memory service with the demo lifecycle recorded."""
    from custody.core import CustodyService, InMemoryKeyCustody
    from custody.config import CustodyConfig
    from custody.demo import seed_demo

    keys = InMemoryKeyCustody()
    system = keys.load_system_principal(CustodyConfig.from_env())
    service = CustodyService(keys=keys)
    seed_demo(service, system.principal_id)
    return service


def cmd_generate_keypair(args):
    """Print a fresh system keypair as environment assignments."""
    from custody.core import Signer

    private_key, public_key = Signer.generate_keypair()

    print("# Keep the private key secret. Anyone holding it can sign as the system.")
    print(f"CUSTODY_SYSTEM_PRIVATE_KEY={private_key}")
    print(f"CUSTODY_SYSTEM_PUBLIC_KEY={public_key}")


def cmd_demo(args):
    """Record the demo lifecycle, then verify and trace every item."""
    service = _demo_service()
    records = service.list_evidence()

    print(f"Recorded {len(records)} evidence items\n")

    failed = 0
    for record in records:
        report = service.verify_evidence(record.id)
        timeline = service.build_timeline(record.id)

        marker = "[OK]" if report.status.value == "VERIFIED" else "[FAIL]"
        print(f"{marker} {record.evidence_number} {record.name} ({record.case_no})")
        print(f"  Status:    {report.status.value}")
        print(f"  Signature: {report.signature_valid}  Merkle: {report.merkle_valid}  "
              f"Chain: {report.hash_chain_valid}")
        print(f"  Timeline:  {timeline.summary['total']} events "
              f"(location: {timeline.current_location})")

        if args.verbose:
            for event in timeline.events:
                print(f"    {event.sequence:>2}. {event.timestamp.isoformat()} {event.kind.value}")
        print()

        if report.status.value != "VERIFIED":
            failed += 1

    root = service.store.latest_root()
    if root is not None:
        print(f"Merkle root: {root.root[:16]}... over {root.leaf_count} items "
              f"(root #{root.sequence})")

    return 1 if failed else 0


def cmd_export_bundle(args):
    """Export the first demo item's verification bundle to a JSON file."""
    service = _demo_service()
    record = service.list_evidence()[0]

    bundle = service.export_bundle(record.id)

    output_file = args.output or "bundle.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(bundle, f, indent=2)

    print(f"[OK] Exported {record.evidence_number} to {output_file}")
    print(f"Verify with: python tools/verify.py {output_file}")


def cmd_health_check(args):
    """Check configuration and audit a freshly seeded ledger."""
    from custody.config import CustodyConfig
    from custody.core import Signer
    from custody.observability import check_health

    print("=== Evidence Custody Health Check ===\n")

    print("Configuration:")
    try:
        config = CustodyConfig.from_env()
    except ValueError as e:
        print(f"  Status: [FAIL] {e}")
        return 1

    print(f"  Production: {config.production}")
    print(f"  Log level:  {config.log_level} ({config.log_format})")

    if config.has_system_keys:
        if Signer.keypair_matches(config.system_private_key, config.system_public_key):
            print("  System signing key: [OK] Set")
        else:
            print("  System signing key: [FAIL] Private and public key do not match")
            return 1
    elif config.production:
        print("  System signing key: [FAIL] Required in production")
        return 1
    else:
        print("  System signing key: [WARN] Using ephemeral (development)")

    print("\nLedger:")
    health = check_health(_demo_service())
    for name, check in health.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        print(f"  {name}: {marker}")

    print("\n=== Health Check Complete ===")
    return 0 if health.healthy else 1


def main():
    parser = argparse.ArgumentParser(
        description="Evidence Custody Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # generate-keypair
    subparsers.add_parser(
        "generate-keypair",
        help="Generate a system Ed25519 keypair"
    )

    # demo
    p_demo = subparsers.add_parser(
        "demo",
        help="Run the demo lifecycle and verify every item"
    )
    p_demo.add_argument("--verbose", "-v", action="store_true", help="Print every timeline event")

    # export-bundle
    p_export = subparsers.add_parser(
        "export-bundle",
        help="Export a demo verification bundle"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: bundle.json)")

    # health-check
    subparsers.add_parser(
        "health-check",
        help="Run configuration and ledger health checks"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-keypair": cmd_generate_keypair,
        "demo": cmd_demo,
        "export-bundle": cmd_export_bundle,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
