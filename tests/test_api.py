"""HTTP surface tests using FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from herbtrace.api import routes
from herbtrace.main import app
from herbtrace.seed import FARMER, HERB, LABORATORY, MANUFACTURER, PROCESSOR

from .conftest import FAILING_RESULTS, PASSING_RESULTS

API = "/api/v1"


@pytest.fixture
def client(store, ledger, provenance):
    app.dependency_overrides[routes.get_ledger] = lambda: ledger
    app.dependency_overrides[routes.get_provenance] = lambda: provenance
    app.state.store = store
    yield TestClient(app)
    app.dependency_overrides.clear()


def post_harvest(client, batch_id="B-1", **overrides):
    body = {
        "herb_name": HERB,
        "actor_name": FARMER,
        "coordinates": {"lat": 26.9124, "lng": 75.7873},
        "metadata": {"quantity": "100", "harvest_method": "Hand Picking"},
        "timestamp": "2024-02-10T06:30:00Z",
    }
    body.update(overrides)
    return client.post(f"{API}/batches/{batch_id}/harvest", json=body)


def record_tested_batch(client, batch_id="B-1", results=PASSING_RESULTS):
    assert post_harvest(client, batch_id).status_code == 201
    client.post(
        f"{API}/batches/{batch_id}/processing",
        json={"actor_name": PROCESSOR, "metadata": {"processing_method": "Drying"}},
    )
    return client.post(
        f"{API}/batches/{batch_id}/quality-tests",
        json={"actor_name": LABORATORY, "test_results": results},
    )


class TestCommands:

    def test_harvest(self, client):
        response = post_harvest(client)
        assert response.status_code == 201
        body = response.json()
        assert body["event_type"] == "harvest"
        assert body["previous_hash"] is None
        assert body["is_valid"] is True
        assert body["gps_coordinates"] == "(26.9124,75.7873)"

    def test_harvest_with_raw_coordinates_is_flagged(self, client):
        response = post_harvest(client, coordinates="north field")
        assert response.status_code == 201
        assert response.json()["is_valid"] is False

    def test_harvest_with_out_of_range_coordinates_is_flagged(self, client):
        response = post_harvest(client, coordinates={"lat": 200, "lng": 5})
        assert response.status_code == 201
        body = response.json()
        assert body["is_valid"] is False
        assert body["validation_errors"][0].startswith("Malformed GPS coordinates")

    def test_harvest_unknown_actor(self, client):
        response = post_harvest(client, actor_name="Nobody")
        assert response.status_code == 404

    def test_missing_body_fields(self, client):
        response = client.post(f"{API}/batches/B-1/harvest", json={"herb_name": HERB})
        assert response.status_code == 422

    def test_step_without_harvest(self, client):
        response = client.post(
            f"{API}/batches/B-404/processing",
            json={"actor_name": PROCESSOR, "metadata": {"processing_method": "Drying"}},
        )
        assert response.status_code == 404

    def test_collection(self, client):
        post_harvest(client)
        response = client.post(
            f"{API}/batches/B-1/collection",
            json={"actor_name": FARMER, "metadata": {"actual_weight": 98.5}},
        )
        assert response.status_code == 201
        assert response.json()["metadata"]["actual_weight"] == 98.5

    def test_quality_test_result_computed(self, client):
        response = record_tested_batch(client, results=FAILING_RESULTS)
        assert response.status_code == 201
        body = response.json()
        assert body["metadata"]["test_result"] == "fail"
        assert body["is_valid"] is False

    def test_product_flow(self, client):
        record_tested_batch(client)
        response = client.post(
            f"{API}/batches/B-1/product",
            json={"product_name": "Ashwagandha Capsules", "manufacturer_name": MANUFACTURER},
        )
        assert response.status_code == 201
        product = response.json()
        assert product["qr_code"].startswith("QR-B-1-")

        again = client.post(
            f"{API}/batches/B-1/product",
            json={"product_name": "Ashwagandha Capsules", "manufacturer_name": MANUFACTURER},
        )
        assert again.status_code == 409

    def test_product_refused_after_failed_test(self, client):
        record_tested_batch(client, results=FAILING_RESULTS)
        response = client.post(
            f"{API}/batches/B-1/product",
            json={"product_name": "Capsules", "manufacturer_name": MANUFACTURER},
        )
        assert response.status_code == 409
        assert "did not pass" in response.json()["detail"]


class TestQueries:

    def test_batch_events(self, client):
        record_tested_batch(client)
        response = client.get(f"{API}/batches/B-1/events")
        assert response.status_code == 200
        events = response.json()
        assert [e["event_type"] for e in events] == ["harvest", "processing", "quality_test"]
        assert events[1]["previous_hash"] == events[0]["block_hash"]

    def test_unknown_batch_events(self, client):
        assert client.get(f"{API}/batches/B-404/events").status_code == 404

    def test_verify(self, client):
        record_tested_batch(client)
        body = client.get(f"{API}/batches/B-1/verify").json()
        assert body["valid"] is True
        assert body["event_count"] == 3

    def test_provenance_by_code(self, client):
        record_tested_batch(client)
        product = client.post(
            f"{API}/batches/B-1/product",
            json={"product_name": "Capsules", "manufacturer_name": MANUFACTURER},
        ).json()

        response = client.get(f"{API}/provenance/{product['qr_code']}")
        assert response.status_code == 200
        view = response.json()
        assert view["batch_id"] == "B-1"
        assert view["summary"]["chain_intact"] is True
        assert len(view["timeline"]) == 4

    def test_provenance_strict_on_tampered_chain(self, client, store):
        record_tested_batch(client)
        chain = store._events["B-1"]
        chain[0] = chain[0].model_copy(update={"metadata": {"quantity": "1000"}})

        lenient = client.get(f"{API}/provenance/B-1")
        assert lenient.status_code == 200
        assert lenient.json()["summary"]["chain_intact"] is False

        strict = client.get(f"{API}/provenance/B-1", params={"strict": "true"})
        assert strict.status_code == 409

    def test_provenance_not_found(self, client):
        assert client.get(f"{API}/provenance/QR-NOPE").status_code == 404

    def test_statistics(self, client):
        record_tested_batch(client, "PASS")
        record_tested_batch(client, "FAIL", results=FAILING_RESULTS)
        body = client.get(f"{API}/statistics").json()
        assert body == {
            "total_batches": 2,
            "verified_batches": 1,
            "pending_batches": 0,
            "flagged_batches": 1,
        }


class TestSystem:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_detailed_health(self, client):
        record_tested_batch(client)
        response = client.get("/health/detailed", params={"verify_chains": "true"})
        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["ledger_store"]["event_count"] == 3
        assert checks["chain_integrity"]["broken_batches"] == []

    def test_detailed_health_reports_broken_chain(self, client, store):
        record_tested_batch(client)
        del store._events["B-1"][1]
        response = client.get("/health/detailed", params={"verify_chains": "true"})
        assert response.status_code == 503

    def test_metrics(self, client):
        post_harvest(client)
        body = client.get("/metrics").json()
        assert body["events_appended"] == 1
        assert body["requests_total"] >= 1

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc12345"})
        assert response.headers["X-Request-ID"] == "abc12345"
