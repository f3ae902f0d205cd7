import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from contract_hub.config import Settings
from contract_hub.main import WS_FORBIDDEN, WS_NOT_FOUND, WS_UNAUTHORIZED, create_app

from tests.conftest import ANALYSIS_BASE_URL


@pytest.fixture
def client(tmp_path, analysis_stub, document_store):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        storage_root=str(tmp_path / "storage"),
        analysis_base_url=ANALYSIS_BASE_URL,
    )
    app = create_app(
        settings=settings,
        analysis_transport=analysis_stub.transport(),
        document_store=document_store,
    )
    with TestClient(app) as client:
        yield client


def _headers(company_id: str, user_id: str) -> dict:
    return {"X-Organization-Id": company_id, "X-User-Id": user_id}


@pytest.fixture
def company(client):
    """A company with one member per role; returns (company_id, headers by role)."""
    response = client.post("/companies", json={"name": "PT Contoh Indonesia"})
    assert response.status_code == 201
    company_id = response.json()["id"]

    bootstrap = client.post(
        f"/companies/{company_id}/members",
        json={"user_id": "boss", "role": "management", "email": "boss@example.com"},
    )
    assert bootstrap.status_code == 201

    headers = {"management": _headers(company_id, "boss")}
    for role in ("procurement", "legal"):
        response = client.post(
            f"/companies/{company_id}/members",
            json={"user_id": role, "role": role, "email": f"{role}@example.com"},
            headers=headers["management"],
        )
        assert response.status_code == 201
        headers[role] = _headers(company_id, role)
    return company_id, headers


def _create_contract(client, headers, name="Pengadaan Server"):
    response = client.post("/contracts", json={"name": name}, headers=headers["procurement"])
    assert response.status_code == 201
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_missing_identity_is_unauthorized(client, company):
    assert client.get("/contracts").status_code == 401


def test_non_member_is_forbidden(client, company):
    company_id, _ = company
    response = client.get("/contracts", headers=_headers(company_id, "stranger"))
    assert response.status_code == 403


def test_member_management(client, company):
    company_id, headers = company

    anonymous = client.post(f"/companies/{company_id}/members", json={"user_id": "x", "role": "legal"})
    assert anonymous.status_code == 401

    by_legal = client.post(
        f"/companies/{company_id}/members", json={"user_id": "x", "role": "legal"}, headers=headers["legal"]
    )
    assert by_legal.status_code == 403

    duplicate = client.post(
        f"/companies/{company_id}/members", json={"user_id": "legal", "role": "legal"}, headers=headers["management"]
    )
    assert duplicate.status_code == 409

    missing = client.post("/companies/does-not-exist/members", json={"user_id": "x", "role": "legal"})
    assert missing.status_code == 404


def test_create_list_and_get_contract(client, company):
    _, headers = company
    created = _create_contract(client, headers)

    assert created["status"] == "Draft"
    assert created["risk"] is None

    listed = client.get("/contracts", headers=headers["legal"]).json()
    assert [c["id"] for c in listed["contracts"]] == [created["id"]]
    assert listed["total"] == 1

    detail = client.get(f"/contracts/{created['id']}", headers=headers["legal"]).json()
    assert detail["contract"]["name"] == "Pengadaan Server"
    assert detail["display"]["source"] == "contract"
    assert [s["stage"] for s in detail["lifecycle"]] == ["Draft"]


def test_foreign_contract_is_not_found(client, company):
    _, headers = company
    created = _create_contract(client, headers)

    other = client.post("/companies", json={"name": "PT Lain"}).json()
    client.post(f"/companies/{other['id']}/members", json={"user_id": "spy", "role": "legal"})

    response = client.get(f"/contracts/{created['id']}", headers=_headers(other["id"], "spy"))
    assert response.status_code == 404


def test_status_transitions(client, company):
    _, headers = company
    contract_id = _create_contract(client, headers)["id"]
    url = f"/contracts/{contract_id}/status"

    skipped = client.patch(url, json={"status": "Approved"}, headers=headers["management"])
    assert skipped.status_code == 409
    assert skipped.json()["current"] == "Draft"

    wrong_role = client.patch(url, json={"status": "Submitted"}, headers=headers["legal"])
    assert wrong_role.status_code == 403

    submitted = client.patch(url, json={"status": "Submitted"}, headers=headers["procurement"])
    assert submitted.status_code == 200
    assert submitted.json()["status"] == "Submitted"

    unknown = client.patch(url, json={"status": "Archived"}, headers=headers["legal"])
    assert unknown.status_code == 422


def test_document_upload_runs_pipeline(client, company, analysis_stub):
    _, headers = company
    contract_id = _create_contract(client, headers, name="Sementara")["id"]

    response = client.post(
        f"/contracts/{contract_id}/document",
        files={"file": ("kontrak.pdf", b"%PDF-1.4 isi kontrak", "application/pdf")},
        headers=headers["procurement"],
    )

    assert response.status_code == 200
    outcome = response.json()
    assert outcome["state"] == "done"
    assert outcome["entities"]["persisted"] is True
    assert outcome["risk"]["model_used"] == "risk-model-v2"
    assert sorted(analysis_stub.paths) == ["/api/risk/analyze/file", "/contract/details"]

    detail = client.get(f"/contracts/{contract_id}", headers=headers["legal"]).json()
    assert detail["contract"]["name"] == "Pengadaan Server Data Center"
    assert detail["contract"]["risk"] == "High"
    assert detail["contract"]["duration_months"] == 12
    assert detail["display"]["source"] == "entities"
    assert len(detail["risk_findings"]) == 2
    assert detail["risk_analysis"]["model_used"] == "risk-model-v2"


def test_rejected_upload_maps_to_error_status(client, company, analysis_stub):
    _, headers = company
    contract_id = _create_contract(client, headers)["id"]

    response = client.post(
        f"/contracts/{contract_id}/document",
        files={"file": ("foto.png", b"\x89PNG", "image/png")},
        headers=headers["procurement"],
    )

    assert response.status_code == 415
    assert response.json()["reason"] == "content_type"
    assert analysis_stub.requests == []


def test_notes_lifecycle_and_performance(client, company):
    _, headers = company
    contract_id = _create_contract(client, headers)["id"]

    note = client.post(f"/contracts/{contract_id}/notes", json={"note": "Cek pasal denda"}, headers=headers["legal"])
    assert note.status_code == 201
    assert note.json()["author"] == "legal@example.com"

    empty = client.post(f"/contracts/{contract_id}/notes", json={"note": ""}, headers=headers["legal"])
    assert empty.status_code == 422

    stage = client.post(
        f"/contracts/{contract_id}/lifecycle", json={"stage": "Negotiation"}, headers=headers["procurement"]
    )
    assert stage.status_code == 201

    metric = client.post(
        f"/contracts/{contract_id}/performance",
        json={"metric_type": "vendor_rating", "value": 88, "division_average": 80},
        headers=headers["management"],
    )
    assert metric.status_code == 201

    detail = client.get(f"/contracts/{contract_id}", headers=headers["management"]).json()
    assert [n["note"] for n in detail["legal_notes"]] == ["Cek pasal denda"]
    assert [s["stage"] for s in detail["lifecycle"]] == ["Draft", "Negotiation"]
    assert detail["performance"][0]["value"] == 88.0


def test_kpis(client, company):
    _, headers = company
    _create_contract(client, headers, name="Satu")
    _create_contract(client, headers, name="Dua")

    legal = client.get("/kpi/legal", headers=headers["legal"]).json()
    assert legal == {"contracts_this_week": 2, "high_risk": 0, "pending_analysis": 2}

    management = client.get("/kpi/management", headers=headers["management"]).json()
    assert management["total_contracts"] == 2
    assert management["by_status"]["Draft"] == 2
    assert [r["level"] for r in management["risk_distribution"]] == ["Low", "Medium", "High"]


def test_detail_socket_pushes_after_change(client, company):
    company_id, headers = company
    contract_id = _create_contract(client, headers)["id"]
    url = f"/ws/contracts/{contract_id}?organization_id={company_id}&user_id=legal"

    with client.websocket_connect(url) as websocket:
        initial = websocket.receive_json()
        assert initial["legal_notes"] == []

        client.post(f"/contracts/{contract_id}/notes", json={"note": "Catatan baru"}, headers=headers["legal"])

        updated = websocket.receive_json()
        assert [n["note"] for n in updated["legal_notes"]] == ["Catatan baru"]


def test_list_socket_pushes_new_contracts(client, company):
    _, headers = company

    with client.websocket_connect("/ws/contracts", headers=headers["management"]) as websocket:
        assert websocket.receive_json()["total"] == 0

        _create_contract(client, headers, name="Baru")

        assert websocket.receive_json()["total"] == 1


def test_socket_rejections(client, company):
    company_id, headers = company
    contract_id = _create_contract(client, headers)["id"]

    with pytest.raises(WebSocketDisconnect) as unauthorized:
        with client.websocket_connect(f"/ws/contracts/{contract_id}"):
            pass
    assert unauthorized.value.code == WS_UNAUTHORIZED

    with pytest.raises(WebSocketDisconnect) as forbidden:
        with client.websocket_connect(f"/ws/contracts?organization_id={company_id}&user_id=stranger"):
            pass
    assert forbidden.value.code == WS_FORBIDDEN

    with pytest.raises(WebSocketDisconnect) as not_found:
        with client.websocket_connect(f"/ws/contracts/missing?organization_id={company_id}&user_id=legal"):
            pass
    assert not_found.value.code == WS_NOT_FOUND


def test_legal_kpi_socket_pushes_after_upload(client, company):
    _, headers = company
    contract_id = _create_contract(client, headers)["id"]

    with client.websocket_connect("/ws/kpi/legal", headers=headers["legal"]) as websocket:
        assert websocket.receive_json()["pending_analysis"] == 1

        client.post(
            f"/contracts/{contract_id}/document",
            files={"file": ("kontrak.pdf", b"%PDF-1.4 isi kontrak", "application/pdf")},
            headers=headers["procurement"],
        )

        latest = websocket.receive_json()
        while latest["pending_analysis"] != 0 or latest["high_risk"] != 1:
            latest = websocket.receive_json()
        assert latest == {"contracts_this_week": 1, "high_risk": 1, "pending_analysis": 0}


def test_management_kpi_socket_pushes_new_contracts(client, company):
    _, headers = company

    with client.websocket_connect("/ws/kpi/management", headers=headers["management"]) as websocket:
        assert websocket.receive_json()["total_contracts"] == 0

        _create_contract(client, headers, name="Baru")

        assert websocket.receive_json()["total_contracts"] == 1
