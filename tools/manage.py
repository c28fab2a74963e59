#!/usr/bin/env python3
"""
HerbTrace Management CLI

Commands for operating the ledger:
- seed-demo: Register demo actors/herbs and record the sample journeys
- verify-batch: Re-verify the hash chain of one batch (or every batch)
- export-provenance: Write a product/batch journey plus its raw chain to JSON
- stats: Print batch counts by quality state
- serve: Run the API with uvicorn

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage seed-demo
    python -m tools.manage verify-batch ASH-2024-001
    python -m tools.manage verify-batch --all
    python -m tools.manage export-provenance QR-ASH-2024-001-1707900000000 -o journey.json
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

EXPORT_FORMAT = "herbtrace-provenance"
EXPORT_VERSION = 1


def build_export(ledger, provenance, identifier: str) -> dict[str, Any]:
    """
    Assemble the export document for one product code or batch id.

    The raw chain travels next to the consumer view so the file can be
    re-verified offline with tools/verify.py.
    """
    view = provenance.get_provenance(identifier, verify=True)
    chain = ledger.get_batch_events(view.batch_id)
    return {
        "_meta": {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "identifier": identifier,
            "exported_at": datetime.now(timezone.utc).isoformat(),
        },
        "provenance": view.model_dump(mode="json"),
        "chain": [event.model_dump(mode="json") for event in chain],
    }


def cmd_seed_demo(args):
    """Register the demo reference data and record both sample journeys."""
    from herbtrace import shared_ledger
    from herbtrace.seed import PASSING_BATCH, FAILING_BATCH, run_sample_journeys, seed_reference_data

    ledger = shared_ledger.get_ledger()

    added = seed_reference_data(ledger.store)
    print(f"Reference data: {added} new actors/herbs")

    if args.reference_only:
        return 0

    product = run_sample_journeys(ledger)
    print(f"Batches: {PASSING_BATCH}, {FAILING_BATCH}")
    if product:
        print(f"[OK] Product minted: {product.qr_code}")
    else:
        print("Sample batches already recorded, nothing appended")
    return 0


def cmd_verify_batch(args):
    """Verify linkage and hashes of stored batch chains."""
    from herbtrace import shared_ledger
    from herbtrace.core.errors import NoEventsFoundError

    ledger = shared_ledger.get_ledger()

    if args.all:
        batch_ids = ledger.store.list_batch_ids()
    elif args.batch_id:
        batch_ids = [args.batch_id]
    else:
        print("ERROR: give a batch id or --all")
        return 2

    if not batch_ids:
        print("No batches recorded.")
        return 0

    broken = 0
    for batch_id in batch_ids:
        try:
            report = ledger.verify_batch(batch_id)
        except NoEventsFoundError as e:
            print(f"[FAIL] {e}")
            broken += 1
            continue

        if report.valid:
            head = report.head_hash[:16] + "..." if report.head_hash else "None"
            print(f"[OK] {batch_id}: {report.event_count} events, head {head}")
        else:
            broken += 1
            print(f"[FAIL] {batch_id}: chain INVALID")
            for issue in report.issues:
                print(f"    #{issue.position} {issue.kind}: {issue.detail}")

    return 1 if broken else 0


def cmd_export_provenance(args):
    """Export a journey with its raw chain to a JSON file."""
    from herbtrace import shared_ledger
    from herbtrace.core.errors import NotFoundError

    try:
        export = build_export(
            shared_ledger.get_ledger(),
            shared_ledger.get_provenance_service(),
            args.identifier,
        )
    except NotFoundError as e:
        print(f"ERROR: {e}")
        return 2

    output_file = args.output or f"{export['provenance']['batch_id']}_provenance.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(export, f, indent=2, ensure_ascii=False)

    integrity = export["provenance"]["integrity"] or {}
    print(f"[OK] Exported {len(export['chain'])} events to {output_file}")
    if not integrity.get("valid", True):
        print("[WARN] Chain failed verification at export time")
    return 0


def cmd_stats(args):
    """Print batch counts by quality state."""
    from herbtrace import shared_ledger

    stats = shared_ledger.get_ledger().batch_statistics()
    print(f"Total batches:    {stats.total_batches}")
    print(f"Verified:         {stats.verified_batches}")
    print(f"Pending testing:  {stats.pending_batches}")
    print(f"Flagged:          {stats.flagged_batches}")
    return 0


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    uvicorn.run("herbtrace.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="HerbTrace Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # seed-demo
    p_seed = subparsers.add_parser(
        "seed-demo",
        help="Seed demo actors, herbs and sample journeys"
    )
    p_seed.add_argument(
        "--reference-only",
        action="store_true",
        help="Only register actors and herbs"
    )

    # verify-batch
    p_verify = subparsers.add_parser(
        "verify-batch",
        help="Verify batch chain integrity"
    )
    p_verify.add_argument("batch_id", nargs="?", help="Batch to verify")
    p_verify.add_argument("--all", action="store_true", help="Verify every batch")

    # export-provenance
    p_export = subparsers.add_parser(
        "export-provenance",
        help="Export a product or batch journey to JSON"
    )
    p_export.add_argument("identifier", help="Product code (QR-...) or batch id")
    p_export.add_argument("--output", "-o", help="Output file (default: <batch>_provenance.json)")

    # stats
    subparsers.add_parser(
        "stats",
        help="Show batch counts by quality state"
    )

    # serve
    p_serve = subparsers.add_parser(
        "serve",
        help="Run the API with uvicorn"
    )
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "seed-demo": cmd_seed_demo,
        "verify-batch": cmd_verify_batch,
        "export-provenance": cmd_export_provenance,
        "stats": cmd_stats,
        "serve": cmd_serve,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
