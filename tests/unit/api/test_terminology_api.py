"""Tests for the HTTP API."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from ayush_terminology.main import create_app
from ayush_terminology.terminology.service import TerminologyService
from ayush_terminology.terminology.sync import SyncCursor
from tests.conftest import CSV_HEADER, FakeAuthority, make_settings

API = "/api/v1"
FHIR_JSON = "application/fhir+json"


class SlowAuthority(FakeAuthority):
    """Authority whose cycles never finish on their own."""

    def initial_cursor(self):
        return SyncCursor(pending=())

    async def fetch_page(self, cursor):
        self.calls += 1
        await asyncio.sleep(60)
        raise AssertionError("slow authority was not cancelled")


def _client(csv_path, authority=None, **overrides):
    settings = make_settings(load_on_startup=True, mapping_csv_path=str(csv_path), **overrides)
    service = TerminologyService(settings, authority=authority or FakeAuthority())
    return TestClient(create_app(settings, service))


@pytest.fixture
def client(csv_file):
    with _client(csv_file) as test_client:
        yield test_client


def _params(resource):
    return {p["name"]: p for p in resource["parameter"]}


class TestTerminologyEndpoints:
    """Test search, mappings and validation."""

    def test_search(self, client):
        response = client.get(f"{API}/terminology/search", params={"query": "vata"})

        assert response.status_code == 200
        body = response.json()
        assert body["query"] == "vata"
        assert body["system"] == "ALL"
        assert body["total"] == len(body["results"])
        top = body["results"][0]
        assert top["code"] == "NAM001"
        assert top["confidence"] == 92
        assert top["icd11Mapping"]["code"] == "TM26.0"
        assert top["biomedicalMapping"]["code"] == "XM123"

    def test_search_system_filter_and_limit(self, client):
        response = client.get(
            f"{API}/terminology/search",
            params={"query": "dosha", "system": "NAMASTE", "limit": 2},
        )
        body = response.json()
        assert body["total"] == 2
        assert {r["system"] for r in body["results"]} == {"NAMASTE"}

    def test_short_query(self, client):
        response = client.get(f"{API}/terminology/search", params={"query": "a"})
        assert response.status_code == 400
        assert response.json()["error"] == "EMPTY_QUERY"

    def test_unknown_system(self, client):
        response = client.get(
            f"{API}/terminology/search", params={"query": "vata", "system": "SNOMED"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "UNSUPPORTED_SYSTEM"

    def test_missing_query_parameter(self, client):
        response = client.get(f"{API}/terminology/search")
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_mappings(self, client):
        response = client.get(
            f"{API}/terminology/mappings", params={"system": "NAMASTE", "code": "NAM001"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["display"] == "Vata Dosha Imbalance"
        assert {m["code"] for m in body["mappings"]} == {"TM26.0", "XM123"}
        assert body["reverseMappings"] == []
        tm2 = next(m for m in body["mappings"] if m["code"] == "TM26.0")
        assert tm2["confidence"] == 92
        assert tm2["equivalence"] == "equivalent"

    def test_reverse_mappings(self, client):
        response = client.get(
            f"{API}/terminology/mappings", params={"system": "ICD11_TM2", "code": "TM26.0"}
        )
        body = response.json()
        assert body["mappings"] == []
        assert [m["code"] for m in body["reverseMappings"]] == ["NAM001"]
        assert body["reverseMappings"][0]["system"] == "NAMASTE"

    def test_mappings_unknown_code(self, client):
        response = client.get(
            f"{API}/terminology/mappings", params={"system": "NAMASTE", "code": "ZZZ"}
        )
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    def test_validate(self, client):
        response = client.get(
            f"{API}/terminology/validate",
            params={"system": "NAMASTE", "code": "NAM001", "display": "Vata Prakopa"},
        )
        body = response.json()
        assert body["valid"] is True
        assert body["issues"] == []

    def test_validate_unknown_code(self, client):
        response = client.get(
            f"{API}/terminology/validate", params={"system": "NAMASTE", "code": "ZZZ"}
        )
        assert response.status_code == 200
        assert response.json()["valid"] is False


class TestFhirEndpoints:
    """Test FHIR terminology operations."""

    def test_lookup(self, client):
        response = client.get(
            "/fhir/CodeSystem/$lookup", params={"system": "NAMASTE", "code": "NAM001"}
        )
        assert response.status_code == 200
        params = _params(response.json())
        assert params["display"]["valueString"] == "Vata Dosha Imbalance"
        assert params["definition"]["valueString"] == "Disturbance of the Vata dosha"

    def test_lookup_unknown_code_is_operation_outcome(self, client):
        response = client.get(
            "/fhir/CodeSystem/$lookup", params={"system": "NAMASTE", "code": "ZZZ"}
        )
        assert response.status_code == 404
        assert response.headers["content-type"].startswith(FHIR_JSON)
        body = response.json()
        assert body["resourceType"] == "OperationOutcome"
        assert body["issue"][0]["code"] == "not-found"

    def test_lookup_missing_parameter(self, client):
        response = client.get("/fhir/CodeSystem/$lookup", params={"system": "NAMASTE"})
        assert response.status_code == 400
        body = response.json()
        assert body["resourceType"] == "OperationOutcome"
        assert body["issue"][0]["code"] == "invalid"

    def test_lookup_post_parameters(self, client):
        body = {
            "resourceType": "Parameters",
            "parameter": [
                {
                    "name": "coding",
                    "valueCoding": {
                        "system": "http://namaste.ayush.gov.in/fhir/CodeSystem/namaste",
                        "code": "NAM002",
                    },
                }
            ],
        }
        response = client.post(
            "/fhir/CodeSystem/$lookup",
            content=json.dumps(body),
            headers={"Content-Type": FHIR_JSON},
        )
        assert response.status_code == 200
        assert _params(response.json())["display"]["valueString"] == "Pitta Dosha Imbalance"

    def test_post_rejects_non_parameters_body(self, client):
        response = client.post("/fhir/CodeSystem/$lookup", json={"resourceType": "Patient"})
        assert response.status_code == 400
        assert response.json()["resourceType"] == "OperationOutcome"

    @pytest.mark.parametrize(
        "parameter",
        [
            ["system"],
            {"name": "system", "valueUri": "NAMASTE"},
            [{"name": "system", "valueUri": "NAMASTE"}, 7],
        ],
    )
    def test_post_rejects_malformed_parameter_list(self, client, parameter):
        response = client.post(
            "/fhir/CodeSystem/$lookup",
            json={"resourceType": "Parameters", "parameter": parameter},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["resourceType"] == "OperationOutcome"
        assert body["issue"][0]["code"] == "invalid"

    def test_post_ignores_parameter_without_string_name(self, client):
        body = {
            "resourceType": "Parameters",
            "parameter": [
                {"name": ["system"], "valueUri": "ICD11_TM2"},
                {"name": "system", "valueUri": "NAMASTE"},
                {"name": "code", "valueCode": "NAM001"},
            ],
        }
        response = client.post("/fhir/CodeSystem/$lookup", json=body)
        assert response.status_code == 200
        assert _params(response.json())["display"]["valueString"] == "Vata Dosha Imbalance"

    def test_validate_code(self, client):
        response = client.get(
            "/fhir/CodeSystem/$validate-code",
            params={"system": "ICD11_TM2", "code": "TM26.0", "display": "Wrong"},
        )
        params = _params(response.json())
        assert params["result"]["valueBoolean"] is True
        assert "message" in params

    def test_translate(self, client):
        response = client.get(
            "/fhir/ConceptMap/$translate",
            params={"system": "NAMASTE", "code": "NAM001", "targetsystem": "ICD11_BIOMEDICAL"},
        )
        params = _params(response.json())
        assert params["result"]["valueBoolean"] is True
        parts = {p["name"]: p for p in params["match"]["part"]}
        assert parts["concept"]["valueCoding"]["code"] == "XM123"

    def test_translate_post(self, client):
        body = {
            "resourceType": "Parameters",
            "parameter": [
                {"name": "system", "valueUri": "NAMASTE"},
                {"name": "code", "valueCode": "NAM003"},
                {"name": "targetsystem", "valueUri": "http://id.who.int/icd/release/11/tm2"},
            ],
        }
        response = client.post("/fhir/ConceptMap/$translate", json=body)
        params = _params(response.json())
        parts = {p["name"]: p for p in params["match"]["part"]}
        assert parts["equivalence"]["valueCode"] == "relatedto"

    def test_translate_missing_target(self, client):
        body = {
            "resourceType": "Parameters",
            "parameter": [
                {"name": "system", "valueUri": "NAMASTE"},
                {"name": "code", "valueCode": "NAM001"},
            ],
        }
        response = client.post("/fhir/ConceptMap/$translate", json=body)
        assert response.status_code == 400
        assert "targetsystem" in response.json()["issue"][0]["details"]["text"]

    def test_expand(self, client):
        response = client.get(
            "/fhir/ValueSet/$expand", params={"system": "NAMASTE", "count": 2, "offset": 1}
        )
        expansion = response.json()["expansion"]
        assert expansion["total"] == 4
        assert [c["code"] for c in expansion["contains"]] == ["NAM002", "NAM003"]

    def test_expand_implicit_value_set_url(self, client):
        response = client.get(
            "/fhir/ValueSet/$expand",
            params={"url": "http://id.who.int/icd/release/11/mms?fhir_vs"},
        )
        assert response.json()["expansion"]["total"] == 2

    def test_expand_post_with_filter(self, client):
        body = {
            "resourceType": "Parameters",
            "parameter": [
                {"name": "filter", "valueString": "vata"},
                {"name": "count", "valueInteger": 1},
            ],
        }
        response = client.post("/fhir/ValueSet/$expand", json=body)
        contains = response.json()["expansion"]["contains"]
        assert [c["code"] for c in contains] == ["NAM001"]

    def test_read_code_system(self, client):
        response = client.get("/fhir/CodeSystem/icd11-tm2", params={"_summary": "true"})
        body = response.json()
        assert body["resourceType"] == "CodeSystem"
        assert body["count"] == 3
        assert "concept" not in body

    def test_read_unknown_code_system(self, client):
        response = client.get("/fhir/CodeSystem/snomed")
        assert response.status_code == 404
        assert response.json()["resourceType"] == "OperationOutcome"

    def test_read_concept_map(self, client):
        response = client.get("/fhir/ConceptMap/namaste-to-icd11-mms")
        body = response.json()
        assert body["resourceType"] == "ConceptMap"
        assert [e["code"] for e in body["group"][0]["element"]] == ["NAM001", "NAM002"]

    def test_unknown_fhir_route(self, client):
        response = client.get("/fhir/Patient/1")
        assert response.status_code == 404
        assert response.json()["resourceType"] == "OperationOutcome"


class TestUploadEndpoints:
    """Test mapping CSV uploads."""

    def _upload(self, client, content, params=None, filename="extra.csv"):
        return client.post(
            f"{API}/terminology/upload",
            params=params,
            files={"file": (filename, content, "text/csv")},
        )

    def test_upload_merges_into_store(self, client):
        content = (
            f"{CSV_HEADER}\n"
            "NAM900,Shirashula,TM26.9,Head pain pattern,,,0.9\n"
            "NAM901,,,,,,\n"
        ).encode("utf-8")

        response = self._upload(client, content)

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "upload:extra.csv"
        assert body["rows_indexed"] == 1
        assert body["rows_skipped"] == 1
        assert body["replace"] is False
        assert body["entries"] == 11

        search = client.get(f"{API}/terminology/search", params={"query": "shirashula"})
        assert [r["code"] for r in search.json()["results"]] == ["NAM900"]
        vata = client.get(f"{API}/terminology/search", params={"query": "vata"})
        assert vata.json()["total"] > 0

    def test_upload_replace(self, client):
        content = f"{CSV_HEADER}\nNAM900,Shirashula,,,,,\n".encode("utf-8")

        response = self._upload(client, content, params={"replace": "true"})

        assert response.status_code == 200
        assert response.json()["entries"] == 1
        vata = client.get(f"{API}/terminology/search", params={"query": "vata"})
        assert vata.json()["total"] == 0

    def test_upload_accepts_byte_order_mark(self, client):
        content = f"{CSV_HEADER}\nNAM900,Shirashula,,,,,\n".encode("utf-8-sig")
        response = self._upload(client, content)
        assert response.status_code == 200
        assert response.json()["rows_indexed"] == 1

    @pytest.mark.parametrize(
        "content",
        [b"code,display\nNAM900,Shirashula\n", b"", b"\xff\xfenamaste_code\n"],
    )
    def test_rejected_upload_keeps_store(self, client, content):
        before = client.get("/health").json()["terminology"]

        response = self._upload(client, content)

        assert response.status_code == 400
        assert response.json()["error"] == "PARSE_ERROR"
        assert client.get("/health").json()["terminology"] == before

    def test_upload_size_limit(self, csv_file):
        with _client(csv_file, mapping_upload_max_bytes=16) as client:
            content = f"{CSV_HEADER}\nNAM900,Shirashula,,,,,\n".encode("utf-8")
            response = self._upload(client, content)
            assert response.status_code == 400
            assert response.json()["error"] == "INVALID_REQUEST"

    def test_missing_file(self, client):
        response = client.post(f"{API}/terminology/upload")
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestDiagnosisSessionEndpoints:
    """Test diagnosis session creation."""

    def test_create_session(self, client):
        response = client.post(
            f"{API}/diagnosis-sessions",
            json={
                "clinicianName": "Dr. Rao",
                "patientRef": "Patient/7",
                "diagnosisEntries": [
                    {"namasteCode": "NAM001", "icd11Code": "TM26.0"},
                    {"namasteCode": "NAM004", "clinicalNotes": "Morning stiffness"},
                ],
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["clinician_name"] == "Dr. Rao"
        assert body["total_codes"] == 3
        bundle = body["fhir_bundle"]
        assert bundle["type"] == "collection"
        assert len(bundle["entry"]) == 2
        assert bundle["entry"][0]["resource"]["subject"] == {"reference": "Patient/7"}

    def test_unresolved_code(self, client):
        response = client.post(
            f"{API}/diagnosis-sessions",
            json={
                "clinicianName": "Dr. Rao",
                "diagnosisEntries": [
                    {"namasteCode": "NAM001"},
                    {"namasteCode": "NAM999"},
                ],
            },
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "UNRESOLVED_CODE"
        assert body["entry_index"] == 1
        assert body["code"] == "NAM999"

    def test_unresolved_middle_entry_index(self, client):
        response = client.post(
            f"{API}/diagnosis-sessions",
            json={
                "clinicianName": "Dr. Rao",
                "diagnosisEntries": [
                    {"namasteCode": "NAM001"},
                    {"namasteCode": "NAM999"},
                    {"namasteCode": "NAM002"},
                ],
            },
        )

        assert response.status_code == 422
        body = response.json()
        assert body["entry_index"] == 1
        assert body["unresolved"] == [{"entry_index": 1, "code": "NAM999"}]

    def test_empty_entries(self, client):
        response = client.post(
            f"{API}/diagnosis-sessions",
            json={"clinicianName": "Dr. Rao", "diagnosisEntries": []},
        )
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestAdminEndpoints:
    """Test sync and reload administration."""

    def test_trigger_sync_and_status(self, client):
        response = client.post(f"{API}/admin/sync")
        assert response.status_code == 202
        assert response.json()["status"] == "started"

        status = client.get(f"{API}/admin/sync/status")
        assert status.status_code == 200
        assert status.json()["status"] in ("running", "idle")

    def test_concurrent_trigger_is_rejected(self, csv_file):
        authority = SlowAuthority()
        with _client(csv_file, authority=authority) as client:
            first = client.post(f"{API}/admin/sync")
            second = client.post(f"{API}/admin/sync")

            assert first.status_code == 202
            assert second.status_code == 409
            body = second.json()
            assert body["status"] == "skipped"
            assert body["reason"] == "AlreadyRunning"
            assert body["sync"]["status"] == "running"

    def test_reload(self, client, csv_file):
        response = client.post(f"{API}/admin/reload")
        assert response.status_code == 200
        assert response.json()["rows_indexed"] == 4

        response = client.post(f"{API}/admin/reload", json={"path": str(csv_file)})
        assert response.json()["entries"] == 9
        assert response.json()["rows_skipped"] == 0

    def test_reload_missing_source(self, client, tmp_path):
        response = client.post(
            f"{API}/admin/reload", json={"path": str(tmp_path / "missing.csv")}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "PARSE_ERROR"

        search = client.get(f"{API}/terminology/search", params={"query": "vata"})
        assert search.json()["total"] > 0

    @pytest.mark.parametrize("path", ["/etc/passwd", "../other/mappings.csv"])
    def test_reload_rejects_path_outside_data_dir(self, client, path):
        before = client.get("/health").json()["terminology"]["snapshot_version"]

        response = client.post(f"{API}/admin/reload", json={"path": path})

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_REQUEST"
        assert client.get("/health").json()["terminology"]["snapshot_version"] == before


class TestUnexpectedErrors:
    """Test rendering of unhandled failures."""

    @pytest.fixture
    def failing_client(self, csv_file, monkeypatch):
        settings = make_settings(load_on_startup=True, mapping_csv_path=str(csv_file))
        service = TerminologyService(settings, authority=FakeAuthority())

        def fail(*args, **kwargs):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(service.fhir, "code_system_lookup", fail)
        monkeypatch.setattr(service.search_engine, "search", fail)
        app = create_app(settings, service)
        with TestClient(app, raise_server_exceptions=False) as test_client:
            yield test_client

    def test_fhir_route_returns_operation_outcome(self, failing_client):
        response = failing_client.get(
            "/fhir/CodeSystem/$lookup", params={"system": "NAMASTE", "code": "NAM001"}
        )

        assert response.status_code == 500
        assert response.headers["content-type"].startswith(FHIR_JSON)
        body = response.json()
        assert body["resourceType"] == "OperationOutcome"
        assert body["issue"][0]["code"] == "processing"
        assert body["issue"][0]["diagnostics"] == "INTERNAL_ERROR"
        assert "index corrupted" not in response.text

    def test_api_route_returns_json_error(self, failing_client):
        response = failing_client.get(f"{API}/terminology/search", params={"query": "vata"})

        assert response.status_code == 500
        assert response.json() == {
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
        }


class TestHealthEndpoints:
    """Test health and readiness."""

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["environment"] == "development"
        assert body["terminology"]["entries"] == 9
        assert "timestamp" in body

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["ready"] is True

    def test_not_ready_when_bulk_load_failed(self, tmp_path):
        with _client(tmp_path / "missing.csv") as client:
            response = client.get("/health/ready")
            assert response.status_code == 503
            body = response.json()
            assert body["ready"] is False
            assert body["startup_tasks"][0]["status"] == "failed"

            # the service keeps answering with an empty store
            search = client.get(f"{API}/terminology/search", params={"query": "vata"})
            assert search.status_code == 200
            assert search.json()["total"] == 0

    def test_root(self, client):
        body = client.get("/").json()
        assert body["fhirVersion"] == "4.0.1"
        assert body["endpoints"]["fhir"]["operations"]["lookup"] == "/fhir/CodeSystem/$lookup"

    def test_unknown_route(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"
