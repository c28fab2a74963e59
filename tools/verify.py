#!/usr/bin/env python3
"""
HerbTrace Provenance Verifier

Checks an exported provenance file (tools/manage.py export-provenance)
without a server or database: every block hash is recomputed from the
exported chain and the consumer view is cross-checked against it.

Usage:
    python verify.py journey.json
    python verify.py journey.json --verbose
    python verify.py journey.json --json

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash, linkage or view mismatch
    2 - INCOMPLETE: Missing required data
    3 - INVALID_FORMAT: File structure invalid
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import pydantic

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from herbtrace.core.hasher import verify_chain  # noqa: E402
from herbtrace.schemas import ChainEvent, EventType  # noqa: E402

EXPORT_FORMAT = "herbtrace-provenance"
SUPPORTED_VERSIONS = {1}


# ============================================================
# Result Types
# ============================================================

class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INCOMPLETE = "INCOMPLETE"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.INCOMPLETE: 2,
    VerificationResult.INVALID_FORMAT: 3,
}


@dataclass
class VerificationReport:
    result: VerificationResult
    batch_id: str
    event_count: int
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.result]


# ============================================================
# Export Verifier
# ============================================================

class ProvenanceVerifier:
    """Verifies one exported provenance document."""

    def __init__(self, export: Any, verbose: bool = False):
        self.export = export
        self.verbose = verbose
        self.chain: list[ChainEvent] = []
        self.checks_passed: list[str] = []
        self.checks_failed: list[str] = []
        self.warnings: list[str] = []
        self.details: dict[str, Any] = {}

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        """Run all verification checks."""
        # 1. Document structure
        if not self._check_structure():
            return self._report(VerificationResult.INVALID_FORMAT)

        # 2. Chain events parse
        if not self._load_chain():
            return self._report(VerificationResult.INVALID_FORMAT)

        if not self.chain:
            self.checks_failed.append("Exported chain is empty")
            return self._report(VerificationResult.INCOMPLETE)

        # 3. Hashes and linkage
        if not self._verify_chain():
            return self._report(VerificationResult.TAMPERED)

        # 4. Consumer view agrees with the chain
        if not self._verify_view():
            return self._report(VerificationResult.TAMPERED)

        # 5. Product points at the chain
        if not self._verify_product():
            return self._report(VerificationResult.TAMPERED)

        return self._report(VerificationResult.VERIFIED)

    def _check_structure(self) -> bool:
        self.log("Checking file structure...")

        if not isinstance(self.export, dict):
            self.checks_failed.append("Top level must be a JSON object")
            return False

        missing = [k for k in ("_meta", "provenance", "chain") if k not in self.export]
        if missing:
            self.checks_failed.append(f"Missing required keys: {missing}")
            return False

        meta = self.export["_meta"]
        if not isinstance(meta, dict) or meta.get("format") != EXPORT_FORMAT:
            self.checks_failed.append(f"Not a {EXPORT_FORMAT} export")
            return False
        if meta.get("version") not in SUPPORTED_VERSIONS:
            self.checks_failed.append(f"Unsupported export version: {meta.get('version')}")
            return False

        if not isinstance(self.export["chain"], list):
            self.checks_failed.append("'chain' must be a list")
            return False
        if not isinstance(self.export["provenance"], dict):
            self.checks_failed.append("'provenance' must be an object")
            return False

        self.details["exported_at"] = meta.get("exported_at")
        self.checks_passed.append("File structure valid")
        return True

    def _load_chain(self) -> bool:
        self.log("Parsing chain events...")
        for position, raw in enumerate(self.export["chain"], start=1):
            try:
                self.chain.append(ChainEvent.model_validate(raw))
            except pydantic.ValidationError as e:
                self.checks_failed.append(
                    f"Event #{position} is malformed: {e.error_count()} field error(s)"
                )
                return False
        self.checks_passed.append(f"Parsed {len(self.chain)} chain events")
        return True

    def _verify_chain(self) -> bool:
        self.log("Recomputing block hashes...")
        batch_id = self.export["provenance"].get("batch_id") or self.chain[0].batch_id
        report = verify_chain(self.chain, batch_id)
        self.details["head_hash"] = report.head_hash

        if not report.valid:
            for issue in report.issues:
                self.checks_failed.append(f"Event #{issue.position} {issue.kind}: {issue.detail}")
            return False

        self.checks_passed.append(f"All {report.event_count} block hashes recompute")
        self.checks_passed.append("Chain linkage intact")

        flagged = [e for e in self.chain if not e.is_valid]
        if flagged:
            self.warnings.append(f"{len(flagged)} event(s) were flagged by validation rules")
        return True

    def _verify_view(self) -> bool:
        self.log("Cross-checking provenance view...")
        by_id = {str(event.id): event for event in self.chain}
        view_events = self.export["provenance"].get("events") or []

        if len(view_events) != len(self.chain):
            self.checks_failed.append(
                f"View lists {len(view_events)} events, chain has {len(self.chain)}"
            )
            return False

        for shown in view_events:
            event = by_id.get(str(shown.get("id")))
            if event is None:
                self.checks_failed.append(f"View event {shown.get('id')} not in chain")
                return False
            if shown.get("block_hash") != event.block_hash:
                self.checks_failed.append(f"View event {event.id} shows a different block hash")
                return False
            if shown.get("is_valid") != event.is_valid:
                self.checks_failed.append(f"View event {event.id} misreports its validity")
                return False

        integrity = self.export["provenance"].get("integrity")
        if integrity is None:
            self.warnings.append("Export was made without server-side verification")
        elif not integrity.get("valid"):
            self.warnings.append("Server reported the chain as broken at export time")

        self.checks_passed.append("Provenance view matches chain")
        return True

    def _verify_product(self) -> bool:
        product = self.export["provenance"].get("product")
        if not product:
            self.warnings.append("No product minted for this batch")
            return True

        self.log("Checking product anchor...")
        anchor = self._find_by_hash(product.get("blockchain_hash"))
        if anchor is None or anchor.event_type != EventType.MANUFACTURING:
            self.checks_failed.append("Product hash does not match a manufacturing event")
            return False
        if anchor.metadata.get("qr_code") != product.get("qr_code"):
            self.checks_failed.append("Product code differs from its manufacturing event")
            return False

        self.details["qr_code"] = product.get("qr_code")
        self.checks_passed.append("Product anchored to manufacturing event")
        return True

    def _find_by_hash(self, block_hash: Optional[str]) -> Optional[ChainEvent]:
        return next((e for e in self.chain if e.block_hash == block_hash), None)

    def _report(self, result: VerificationResult) -> VerificationReport:
        batch_id = "unknown"
        if isinstance(self.export, dict) and isinstance(self.export.get("provenance"), dict):
            batch_id = self.export["provenance"].get("batch_id", batch_id)
        return VerificationReport(
            result=result,
            batch_id=batch_id,
            event_count=len(self.chain),
            checks_passed=self.checks_passed,
            checks_failed=self.checks_failed,
            warnings=self.warnings,
            details=self.details,
        )


# ============================================================
# CLI
# ============================================================

BANNERS = {
    VerificationResult.VERIFIED: "All checks passed",
    VerificationResult.TAMPERED: "Hash, linkage or view mismatch detected",
    VerificationResult.INCOMPLETE: "Missing required data",
    VerificationResult.INVALID_FORMAT: "File structure invalid",
}


def print_report(report: VerificationReport, json_output: bool = False):
    if json_output:
        output = {
            "result": report.result.value,
            "batch_id": report.batch_id,
            "event_count": report.event_count,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
            "warnings": report.warnings,
            "details": report.details,
        }
        print(json.dumps(output, indent=2))
        return

    print("\n" + "=" * 60)
    print(f"  [{report.result.value}] - {BANNERS[report.result]}")
    print("=" * 60)

    print(f"\nBatch:  {report.batch_id}")
    print(f"Events: {report.event_count}")

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    if report.warnings:
        print("\nWarnings:")
        for warning in report.warnings:
            print(f"  ! {warning}")

    print()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify an exported HerbTrace provenance file",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 2=INCOMPLETE, 3=INVALID_FORMAT"
    )
    parser.add_argument("export", type=str, help="Path to the exported JSON file")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed verification progress"
    )
    parser.add_argument("--json", action="store_true", help="Output result as JSON")

    args = parser.parse_args(argv)

    export_path = Path(args.export)
    if not export_path.exists():
        print(f"ERROR: File not found: {export_path}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    try:
        with open(export_path, "r", encoding="utf-8") as f:
            export = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    report = ProvenanceVerifier(export, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
