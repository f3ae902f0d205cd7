import httpx

from contract_hub.errors import AnalysisError
from contract_hub.services.analysis_client import AnalysisClient

from tests.conftest import (
    ANALYSIS_BASE_URL,
    DETAILS_PAYLOAD,
    RISK_PAYLOAD,
    AnalysisServiceStub,
    json_response,
    raise_connect_error,
    raise_timeout,
)


def _client(stub: AnalysisServiceStub) -> AnalysisClient:
    return AnalysisClient(ANALYSIS_BASE_URL, timeout=5, transport=stub.transport())


async def test_extract_entities_success(analysis_client, analysis_stub, pdf_upload):
    result, error = await analysis_client.extract_entities(pdf_upload)

    assert error is None
    assert result.response.contract_details.contract_value == "Rp 4.338.283.000,00"
    assert result.response.contract_details.first_party.name == "PT Alpha Teknologi"
    assert result.model_used == "layoutlm-extractor-v1"
    assert result.processing_time == 3.2
    assert result.raw == DETAILS_PAYLOAD
    assert analysis_stub.paths == ["/contract/details"]


async def test_document_is_sent_as_multipart_file_field(analysis_client, analysis_stub, pdf_upload):
    await analysis_client.classify_risk(pdf_upload)

    request = analysis_stub.requests[0]
    assert request.method == "POST"
    assert request.headers["content-type"].startswith("multipart/form-data")
    assert b'name="file"' in request.content
    assert pdf_upload.data in request.content


async def test_classify_risk_success(analysis_client, pdf_upload):
    result, error = await analysis_client.classify_risk(pdf_upload)

    assert error is None
    assert result.risk_level == "High"
    assert result.model_used == "risk-model-v2"
    assert result.processing_time == 5.4
    assert [f.type for f in result.response.risk_factors] == ["penalty", "force_majeure"]


async def test_http_error_status_is_rejected(pdf_upload):
    stub = AnalysisServiceStub(risk=json_response({"detail": "model offline"}, status_code=503))
    async with _client(stub) as client:
        result, error = await client.classify_risk(pdf_upload)

    assert result is None
    assert error.kind == AnalysisError.REJECTED
    assert error.status_code == 503


async def test_success_false_is_rejected(pdf_upload):
    payload = {**DETAILS_PAYLOAD, "success": False, "error_message": "Document is not a contract"}
    stub = AnalysisServiceStub(details=json_response(payload))
    async with _client(stub) as client:
        result, error = await client.extract_entities(pdf_upload)

    assert result is None
    assert error.kind == AnalysisError.REJECTED
    assert error.message == "Document is not a contract"


async def test_non_json_body_is_malformed(pdf_upload):
    stub = AnalysisServiceStub(risk=httpx.Response(200, text="<html>gateway</html>"))
    async with _client(stub) as client:
        result, error = await client.classify_risk(pdf_upload)

    assert result is None
    assert error.kind == AnalysisError.MALFORMED


async def test_schema_mismatch_is_malformed(pdf_upload):
    payload = {key: value for key, value in RISK_PAYLOAD.items() if key != "model_used"}
    stub = AnalysisServiceStub(risk=json_response(payload))
    async with _client(stub) as client:
        result, error = await client.classify_risk(pdf_upload)

    assert result is None
    assert error.kind == AnalysisError.MALFORMED


async def test_connection_failure_is_transport(pdf_upload):
    stub = AnalysisServiceStub(details=raise_connect_error)
    async with _client(stub) as client:
        result, error = await client.extract_entities(pdf_upload)

    assert result is None
    assert error.kind == AnalysisError.TRANSPORT
    assert error.status_code is None


async def test_timeout_is_transport(pdf_upload):
    stub = AnalysisServiceStub(risk=raise_timeout)
    async with _client(stub) as client:
        _, error = await client.classify_risk(pdf_upload)

    assert error.kind == AnalysisError.TRANSPORT
    assert "timed out" in error.message


async def test_no_retry_on_failure(pdf_upload):
    stub = AnalysisServiceStub(risk=json_response({}, status_code=500))
    async with _client(stub) as client:
        await client.classify_risk(pdf_upload)

    assert stub.paths == ["/api/risk/analyze/file"]
