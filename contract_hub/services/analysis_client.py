"""
Analysis Client

Async HTTP client for the external contract analysis service. Two operations,
each sending the document as the multipart field "file":

- extract_entities: POST {base}/contract/details
- classify_risk:    POST {base}/api/risk/analyze/file

Neither call retries. Both return a tuple of (result, error) instead of
raising, so the pipeline can run them side by side and look at each outcome
on its own. Errors carry a kind:

- transport: connection failure, timeout or other network error
- rejected:  non-2xx HTTP status, or a 2xx body with success=false
- malformed: body is not JSON or does not match the expected schema

Usage Example:
    async with AnalysisClient.from_settings() as client:
        result, error = await client.classify_risk(upload)
        if error:
            logger.warning(f"Risk classification failed ({error.kind}): {error.message}")
        else:
            print(result.risk_level, result.model_used)
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type, TypeVar
import logging

import httpx
from pydantic import BaseModel, ValidationError

from contract_hub.config import get_settings
from contract_hub.errors import AnalysisError
from contract_hub.schemas import ContractDetailsResponse, RiskAnalysisResponse
from contract_hub.services.document_store import DocumentUpload

logger = logging.getLogger(__name__)

CONTRACT_DETAILS_PATH = "/contract/details"
RISK_ANALYSIS_PATH = "/api/risk/analyze/file"

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


@dataclass(frozen=True)
class EntityExtractionResult:
    """Successful contract details extraction."""
    response: ContractDetailsResponse
    raw: Dict[str, Any]

    @property
    def model_used(self) -> str:
        # The details service reports its model as analysis_method
        return self.response.analysis_method

    @property
    def processing_time(self) -> float:
        return self.response.processing_time


@dataclass(frozen=True)
class RiskClassificationResult:
    """Successful risk classification."""
    response: RiskAnalysisResponse
    raw: Dict[str, Any]

    @property
    def risk_level(self) -> str:
        return self.response.risk_level

    @property
    def model_used(self) -> str:
        return self.response.model_used

    @property
    def processing_time(self) -> float:
        return self.response.processing_time


class AnalysisClient:
    """
    Client for the contract analysis service.

    Args:
        base_url: Service base URL, e.g. http://127.0.0.1:8000
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "AnalysisClient":
        settings = get_settings()
        return cls(settings.analysis_base_url, settings.analysis_timeout_seconds, transport=transport)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AnalysisClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def extract_entities(
        self, document: DocumentUpload
    ) -> Tuple[Optional[EntityExtractionResult], Optional[AnalysisError]]:
        """
        Extract contract name, parties, dates, duration and value from a document.

        Returns:
            Tuple of (EntityExtractionResult, None) on success or (None, AnalysisError)
        """
        response, raw, error = await self._post(CONTRACT_DETAILS_PATH, document, ContractDetailsResponse)
        if error:
            return None, error
        logger.info(
            f"Extracted contract details with {response.analysis_method} "
            f"in {response.processing_time:.2f}s"
        )
        return EntityExtractionResult(response=response, raw=raw), None

    async def classify_risk(
        self, document: DocumentUpload
    ) -> Tuple[Optional[RiskClassificationResult], Optional[AnalysisError]]:
        """
        Classify the overall risk of a document and list its risk factors.

        Returns:
            Tuple of (RiskClassificationResult, None) on success or (None, AnalysisError)
        """
        response, raw, error = await self._post(RISK_ANALYSIS_PATH, document, RiskAnalysisResponse)
        if error:
            return None, error
        logger.info(
            f"Classified risk as {response.risk_level} (confidence {response.confidence}) "
            f"with {response.model_used}"
        )
        return RiskClassificationResult(response=response, raw=raw), None

    async def _post(
        self,
        path: str,
        document: DocumentUpload,
        model: Type[ResponseModel],
    ) -> Tuple[Optional[ResponseModel], Optional[Dict[str, Any]], Optional[AnalysisError]]:
        files = {"file": (document.filename, document.data, document.content_type)}

        try:
            http_response = await self._get_client().post(path, files=files)
        except httpx.TimeoutException as e:
            logger.error(f"Analysis request to {path} timed out after {self.timeout}s")
            return None, None, AnalysisError(AnalysisError.TRANSPORT, f"Request timed out: {e}")
        except httpx.HTTPError as e:
            logger.error(f"Analysis request to {path} failed: {type(e).__name__}: {e}")
            return None, None, AnalysisError(AnalysisError.TRANSPORT, f"Request failed: {e}")

        if not http_response.is_success:
            logger.error(f"Analysis service rejected {path}: HTTP {http_response.status_code}")
            return None, None, AnalysisError(
                AnalysisError.REJECTED,
                f"Analysis service returned HTTP {http_response.status_code}",
                status_code=http_response.status_code,
            )

        try:
            raw = http_response.json()
        except ValueError as e:
            logger.error(f"Analysis service returned non-JSON body for {path}")
            return None, None, AnalysisError(
                AnalysisError.MALFORMED,
                f"Response is not valid JSON: {e}",
                status_code=http_response.status_code,
            )

        if not isinstance(raw, dict):
            return None, None, AnalysisError(
                AnalysisError.MALFORMED,
                "Response body is not a JSON object",
                status_code=http_response.status_code,
            )

        if raw.get("success") is False:
            message = raw.get("error_message") or "Analysis service reported failure"
            logger.warning(f"Analysis service reported failure for {path}: {message}")
            return None, raw, AnalysisError(
                AnalysisError.REJECTED,
                message,
                status_code=http_response.status_code,
            )

        try:
            parsed = model.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Analysis response for {path} failed validation: {e.error_count()} errors")
            return None, raw, AnalysisError(
                AnalysisError.MALFORMED,
                f"Response failed schema validation: {e}",
                status_code=http_response.status_code,
            )

        return parsed, raw, None
