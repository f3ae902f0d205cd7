import json
from dataclasses import dataclass
from typing import Callable, Dict, List, Union

import httpx
import pytest

from contract_hub.config import get_settings
from contract_hub.crud import LifecycleStore, RequestContext
from contract_hub.database import build_engine, build_session_factory, create_tables, drop_tables
from contract_hub.services.analysis_client import AnalysisClient
from contract_hub.services.document_store import DocumentUpload, LocalDocumentStore
from contract_hub.status import Role

ANALYSIS_BASE_URL = "http://analysis.test"
PUBLIC_BASE_URL = "http://files.test/storage"
DOCUMENT_TYPES = [
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
]

DETAILS_PAYLOAD = {
    "success": True,
    "contract_details": {
        "contract_name": "Pengadaan Server Data Center",
        "first_party": {"name": "PT Alpha Teknologi", "type": "company", "address": "Jakarta"},
        "second_party": {"name": "PT Beta Solusi", "type": "company", "address": "Bandung"},
        "contract_start_date": "20 Februari 2025",
        "contract_end_date": "20 Februari 2026",
        "contract_duration": "365 hari kalender",
        "contract_value": "Rp 4.338.283.000,00",
        "contract_type": "procurement",
        "key_terms": ["Denda keterlambatan 1 permil per hari", "Garansi 12 bulan"],
    },
    "extracted_text": "PERJANJIAN PENGADAAN ...",
    "confidence_score": 0.91,
    "analysis_method": "layoutlm-extractor-v1",
    "error_message": None,
    "processing_time": 3.2,
}

RISK_PAYLOAD = {
    "success": True,
    "risk_level": "High",
    "confidence": 0.87,
    "risk_factors": [
        {
            "type": "penalty",
            "description": "Uncapped late delivery penalty",
            "severity": "High",
            "found_keywords": ["denda"],
            "keyword_count": 3,
        },
        {
            "type": "force_majeure",
            "description": "Narrow force majeure definition",
            "severity": "Medium",
            "found_keywords": ["keadaan kahar"],
            "keyword_count": 1,
        },
    ],
    "risk_assessment": {
        "description": "Several one-sided clauses",
        "recommendations": ["Negotiate a penalty cap"],
        "risk_factor_count": 2,
        "high_severity_factors": 1,
        "medium_severity_factors": 1,
        "low_severity_factors": 0,
    },
    "processed_text_length": 18234,
    "model_used": "risk-model-v2",
    "error_message": None,
    "analysis_timestamp": "2025-02-21T10:00:00Z",
    "processing_time": 5.4,
}

Route = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def raise_connect_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def raise_timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("read timed out", request=request)


class AnalysisServiceStub:
    """Routes requests for the two analysis endpoints and records what was called."""

    def __init__(self, details: Route = None, risk: Route = None):
        self.routes: Dict[str, Route] = {
            "/contract/details": details if details is not None else json_response(DETAILS_PAYLOAD),
            "/api/risk/analyze/file": risk if risk is not None else json_response(RISK_PAYLOAD),
        }
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"detail": "not found"})
        if callable(route):
            return route(request)
        return route

    @property
    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@dataclass
class Organization:
    id: str
    procurement: RequestContext
    legal: RequestContext
    management: RequestContext


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'settings.db'}")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("ANALYSIS_BASE_URL", ANALYSIS_BASE_URL)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'contract_hub.db'}")
    await create_tables(engine)
    yield engine
    await drop_tables(engine)
    await engine.dispose()


@pytest.fixture
def store(engine):
    return LifecycleStore(build_session_factory(engine))


async def _make_organization(store: LifecycleStore, name: str, prefix: str) -> Organization:
    company = await store.create_company(name)
    contexts = {}
    for role in Role:
        user_id = f"{prefix}-{role.value}"
        await store.add_company_user(company.id, user_id, role, email=f"{user_id}@example.com")
        contexts[role.value] = await store.authorize(company.id, user_id)
    return Organization(id=company.id, **contexts)


@pytest.fixture
async def org(store):
    return await _make_organization(store, "PT Contoh Indonesia", "u")


@pytest.fixture
async def other_org(store):
    return await _make_organization(store, "PT Lain", "x")


@pytest.fixture
def document_store(tmp_path):
    return LocalDocumentStore(
        root=str(tmp_path / "storage"),
        bucket="pdf_storage",
        public_base_url=PUBLIC_BASE_URL,
        allowed_content_types=DOCUMENT_TYPES,
        max_upload_bytes=1024 * 1024,
        timeout_seconds=5,
    )


@pytest.fixture
def pdf_upload():
    return DocumentUpload(
        filename="Kontrak Pengadaan (final).pdf",
        content_type="application/pdf",
        data=b"%PDF-1.4 kontrak pengadaan server",
    )


@pytest.fixture
def analysis_stub():
    return AnalysisServiceStub()


@pytest.fixture
async def analysis_client(analysis_stub):
    client = AnalysisClient(ANALYSIS_BASE_URL, timeout=5, transport=analysis_stub.transport())
    yield client
    await client.close()


def dump(payload) -> bytes:
    return json.dumps(payload).encode()


async def classify(store: LifecycleStore, ctx: RequestContext, contract_id: str, level: str, findings=()):
    """Record a successful risk classification the way the pipeline does."""
    return await store.record_risk_classification(
        ctx,
        contract_id,
        analysis_result={"risk_level": level},
        risk_level=level,
        confidence=0.9,
        model_used="risk-model-v2",
        processing_time=4.0,
        findings=list(findings),
        contract_risk=level,
    )
