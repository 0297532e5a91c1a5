import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

os.environ["SKIP_DB_INIT"] = "1"

from app.api.dependencies import get_import_engine, get_mapping_advisor, get_session_store
from app.core.config import settings
from app.domain.imports.advisor import KeywordMappingAdvisor
from app.main import app
from tests.utils.uploads import make_csv

SCENARIO_CSV = make_csv("Name,Serial,Widget Color", "Pump,SN-100,Red", "Pump copy,SN-200,Blue", "Valve,SN-300,")


@pytest.fixture
def client(engine, store):
    app.dependency_overrides[get_import_engine] = lambda: engine
    app.dependency_overrides[get_session_store] = lambda: store
    app.dependency_overrides[get_mapping_advisor] = lambda: KeywordMappingAdvisor()
    yield TestClient(app)
    app.dependency_overrides.clear()


def _preview(client, content=SCENARIO_CSV, file_name="equipment.csv", content_type="text/csv"):
    return client.post("/equipment/import/preview", files={"file": (file_name, content, content_type)})


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Equipment Import API", "version": "1.0.0"}
    assert client.get("/health").json()["status"] == "healthy"


def test_fields_endpoint_lists_catalog(client):
    data = client.get("/equipment/import/fields").json()

    assert data["required_fields"] == ["name"]
    assert set(data["equipment_fields"]) == {
        "name", "model", "serial_number", "manufacturer", "location", "description"
    }
    assert "__new__" in data["sentinels"]


def test_preview_returns_session_and_keyword_suggestion(client):
    response = _preview(client)

    assert response.status_code == 200
    data = response.json()
    assert data["headers"] == ["Name", "Serial", "Widget Color"]
    assert data["total_rows"] == 3
    assert data["preview_rows"][0] == {"Name": "Pump", "Serial": "SN-100", "Widget Color": "Red"}
    assert data["suggested_mapping"] == {
        "Name": "name",
        "Serial": "serial_number",
        "Widget Color": "__new__",
    }
    assert data["advisor_confidence"] == "medium"
    assert data["required_fields"] == ["name"]

    session = client.get(f"/equipment/import/sessions/{data['handle']}").json()
    assert session["state"] == "uploaded"


def test_preview_rejects_unsupported_and_empty_files(client):
    response = _preview(client, b"%PDF-1.4", file_name="manual.pdf", content_type="application/pdf")
    assert response.status_code == 415
    assert response.json()["detail"]["code"] == "unsupported_format"

    response = _preview(client, b"", file_name="empty.csv")
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "empty_file"


def test_preview_rejects_oversized_upload(client, monkeypatch):
    monkeypatch.setattr(settings, "upload_max_file_size_mb", 0)

    response = _preview(client)

    assert response.status_code == 413
    assert response.json()["detail"]["code"] == "file_too_large"


def test_mapping_update_then_execute_scenario(client, engine):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO equipment (id, name, serial_number) VALUES ('seed-1', 'Existing', 'sn-200')")
        )
    handle = _preview(client).json()["handle"]
    mapping = {"Name": "name", "Serial": "serial_number", "Widget Color": "__new__"}

    draft = client.put(
        f"/equipment/import/sessions/{handle}/mapping",
        json={"mapping": mapping, "options": {"skip_duplicates": True}},
    )
    assert draft.status_code == 200
    assert draft.json()["valid"] is True
    assert draft.json()["new_attributes"] == ["Widget Color"]

    response = client.post(
        "/equipment/import/execute",
        json={"handle": handle, "mapping": mapping, "options": {"skip_duplicates": True}, "actor_id": "op-1"},
    )

    assert response.status_code == 200
    result = response.json()
    assert result["imported"] == 2
    assert result["skipped"] == 1
    assert result["errors"] == []
    assert result["attributes_created"] == ["Widget Color"]

    again = client.post("/equipment/import/execute", json={"handle": handle, "mapping": mapping})
    assert again.status_code == 404
    assert again.json()["detail"]["code"] == "session_not_found"

    runs = client.get("/equipment/import/runs").json()
    assert runs["total_count"] == 1
    run = client.get(f"/equipment/import/runs/{result['import_id']}").json()["run"]
    assert run["status"] == "completed"
    assert run["imported"] == 2


def test_execute_with_invalid_mapping_is_422_and_session_survives(client):
    handle = _preview(client).json()["handle"]

    response = client.post(
        "/equipment/import/execute",
        json={"handle": handle, "mapping": {"Serial": "serial_number"}},
    )

    assert response.status_code == 422
    assert response.json()["detail"] == {
        "code": "missing_required_field",
        "message": "Equipment name field must be mapped",
    }
    assert client.get(f"/equipment/import/sessions/{handle}").status_code == 200


def test_cancel_then_cancel_again(client, store):
    handle = _preview(client).json()["handle"]

    first = client.post("/equipment/import/cancel", json={"handle": handle})
    second = client.post("/equipment/import/cancel", json={"handle": handle})

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert second.status_code == 404
    assert store.active_handles() == []


def test_unknown_run_is_404(client):
    assert client.get("/equipment/import/runs/missing").status_code == 404
