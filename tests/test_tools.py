"""Tests for the management CLI and the offline provenance verifier."""

import json

import pytest

from herbtrace import shared_ledger
from herbtrace.seed import MANUFACTURER, PASSING_BATCH
from tools import manage, verify
from tools.verify import ProvenanceVerifier, VerificationResult

from .conftest import FAILING_RESULTS


@pytest.fixture
def export(ledger, provenance, tested_batch):
    batch_id = tested_batch()
    product = ledger.create_product(batch_id, "Ashwagandha Capsules", MANUFACTURER)
    return manage.build_export(ledger, provenance, product.qr_code)


def round_trip(document):
    """What a consumer sees after the file has been written and read back."""
    return json.loads(json.dumps(document))


class TestVerifier:

    def test_untouched_export_verifies(self, export):
        report = ProvenanceVerifier(round_trip(export)).verify()
        assert report.result == VerificationResult.VERIFIED, report.checks_failed
        assert report.event_count == 4
        assert report.exit_code == 0
        assert report.details["qr_code"] == export["provenance"]["product"]["qr_code"]

    def test_edited_measurement_is_tampered(self, export):
        document = round_trip(export)
        document["chain"][2]["metadata"]["moisture_content"] = 9.0
        report = ProvenanceVerifier(document).verify()
        assert report.result == VerificationResult.TAMPERED
        assert report.exit_code == 1

    def test_dropped_event_is_tampered(self, export):
        document = round_trip(export)
        del document["chain"][1]
        assert ProvenanceVerifier(document).verify().result == VerificationResult.TAMPERED

    def test_view_disagreeing_with_chain(self, export):
        document = round_trip(export)
        document["provenance"]["events"][2]["is_valid"] = False
        report = ProvenanceVerifier(document).verify()
        assert report.result == VerificationResult.TAMPERED
        assert "misreports" in report.checks_failed[0]

    def test_product_code_swapped(self, export):
        document = round_trip(export)
        document["provenance"]["product"]["qr_code"] = "QR-FAKE-1"
        assert ProvenanceVerifier(document).verify().result == VerificationResult.TAMPERED

    def test_empty_chain_is_incomplete(self, export):
        document = round_trip(export)
        document["chain"] = []
        assert ProvenanceVerifier(document).verify().result == VerificationResult.INCOMPLETE

    @pytest.mark.parametrize("document", [
        [],
        {"chain": []},
        {"_meta": {"format": "something-else", "version": 1}, "provenance": {}, "chain": []},
    ])
    def test_invalid_format(self, document):
        report = ProvenanceVerifier(document).verify()
        assert report.result == VerificationResult.INVALID_FORMAT
        assert report.exit_code == 3

    def test_malformed_event(self, export):
        document = round_trip(export)
        del document["chain"][0]["block_hash"]
        assert ProvenanceVerifier(document).verify().result == VerificationResult.INVALID_FORMAT

    def test_failed_batch_still_verifies(self, ledger, provenance, tested_batch):
        batch_id = tested_batch("B-FAIL", results=FAILING_RESULTS)
        report = ProvenanceVerifier(round_trip(manage.build_export(ledger, provenance, batch_id))).verify()
        assert report.result == VerificationResult.VERIFIED
        assert any("flagged" in w for w in report.warnings)
        assert "No product minted for this batch" in report.warnings

    def test_cli_exit_codes(self, export, tmp_path, capsys):
        path = tmp_path / "journey.json"
        path.write_text(json.dumps(export), encoding="utf-8")
        capsys.readouterr()
        assert verify.main([str(path), "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["result"] == "VERIFIED"

        assert verify.main([str(tmp_path / "missing.json")]) == 3

        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        assert verify.main([str(broken)]) == 3


class TestManage:

    @pytest.fixture(autouse=True)
    def memory_ledger(self, monkeypatch):
        for name in ("DATABASE_URL", "DATABASE_HOST", "LEDGERSTORE_DRIVER"):
            monkeypatch.delenv(name, raising=False)
        shared_ledger.reset()
        yield
        shared_ledger.reset()

    def test_seed_then_verify_all(self, capsys):
        assert manage.main(["seed-demo"]) == 0
        assert "Product minted" in capsys.readouterr().out
        assert manage.main(["verify-batch", "--all"]) == 0
        assert "[OK] ASH-2024-001" in capsys.readouterr().out

    def test_verify_unknown_batch(self):
        assert manage.main(["verify-batch", "B-404"]) == 1

    def test_verify_needs_target(self):
        assert manage.main(["verify-batch"]) == 2

    def test_export_round_trip(self, tmp_path):
        manage.main(["seed-demo"])
        output = tmp_path / "journey.json"
        assert manage.main(["export-provenance", PASSING_BATCH, "-o", str(output)]) == 0
        assert verify.main([str(output)]) == 0

    def test_export_unknown(self, tmp_path):
        assert manage.main(["export-provenance", "QR-NOPE", "-o", str(tmp_path / "x.json")]) == 2

    def test_stats(self, capsys):
        manage.main(["seed-demo"])
        assert manage.main(["stats"]) == 0
        assert "Total batches:    2" in capsys.readouterr().out

    def test_no_command(self):
        assert manage.main([]) == 1
