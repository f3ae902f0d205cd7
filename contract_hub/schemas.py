"""
Pydantic schemas for the analysis service payloads and the HTTP API.

This module defines two contracts and keeps both separate from the SQLAlchemy
ORM models in contract_hub/models.py:
- What the external analysis service returns (validated by AnalysisClient;
  a validation failure is reported as a "malformed" AnalysisError)
- What the Contract Hub API accepts and returns, including the derived
  views pushed over WebSocket
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contract_hub.status import ContractStatus, Role


# ============================================================================
# Analysis service payloads
# ============================================================================


class ContractParty(BaseModel):
    """A party as described by the contract details service."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    type: Optional[str] = None
    address: Optional[str] = None


class ContractDetails(BaseModel):
    """
    Fields extracted from the document.

    Dates, duration and value are kept as the locale-formatted strings the
    service produced; contract_hub.parsing turns them into typed values.
    """
    model_config = ConfigDict(extra="ignore")

    contract_name: Optional[str] = None
    first_party: Optional[ContractParty] = None
    second_party: Optional[ContractParty] = None
    contract_start_date: Optional[str] = None
    contract_end_date: Optional[str] = None
    contract_duration: Optional[str] = None
    contract_value: Optional[str] = None
    contract_type: Optional[str] = None
    key_terms: List[str] = Field(default_factory=list)


class ContractDetailsResponse(BaseModel):
    """Response of POST /contract/details."""
    model_config = ConfigDict(extra="ignore")

    success: bool
    contract_details: ContractDetails
    extracted_text: Optional[str] = None
    confidence_score: Optional[float] = None
    analysis_method: str
    error_message: Optional[str] = None
    processing_time: float


class RiskFactor(BaseModel):
    """One risk factor detected by the classifier."""
    model_config = ConfigDict(extra="ignore")

    type: str
    description: Optional[str] = None
    severity: Optional[str] = None
    found_keywords: List[str] = Field(default_factory=list)
    keyword_count: int = 0


class RiskAssessment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: Optional[str] = None
    confidence_interpretation: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)
    risk_factor_count: Optional[int] = None
    high_severity_factors: Optional[int] = None
    medium_severity_factors: Optional[int] = None
    low_severity_factors: Optional[int] = None


class RiskAnalysisResponse(BaseModel):
    """Response of POST /api/risk/analyze/file."""
    model_config = ConfigDict(extra="ignore")

    success: bool
    risk_level: str
    confidence: float
    risk_factors: List[RiskFactor] = Field(default_factory=list)
    risk_assessment: Optional[RiskAssessment] = None
    processed_text_length: Optional[int] = None
    model_used: str
    error_message: Optional[str] = None
    analysis_timestamp: Optional[str] = None
    processing_time: float


# ============================================================================
# Request Schemas
# ============================================================================


class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Organization display name")


class MemberCreate(BaseModel):
    """Request schema for adding a user to a company."""
    user_id: str = Field(..., min_length=1, description="User id from the auth provider")
    role: Role = Field(..., description="procurement, legal or management")
    email: Optional[str] = Field(None, description="Contact email, used as default note author")


class ContractCreate(BaseModel):
    """
    Request schema for registering a contract.

    The document is uploaded separately through POST /contracts/{id}/document,
    which runs the analysis pipeline.
    """
    name: str = Field(..., min_length=1, description="Contract name")
    first_party: Optional[str] = None
    second_party: Optional[str] = None
    value_rp: Optional[Decimal] = Field(None, ge=0)
    duration_months: Optional[int] = Field(None, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        """Validate that name is not whitespace only."""
        if not v.strip():
            raise ValueError("Contract name must not be empty")
        return v.strip()


class StatusUpdateRequest(BaseModel):
    status: ContractStatus
    notes: Optional[str] = Field(None, description="Stored on the lifecycle stage that opens")


class LegalNoteCreate(BaseModel):
    note: str = Field(..., min_length=1)
    author: Optional[str] = Field(None, description="Defaults to the caller's email")

    @field_validator("note")
    @classmethod
    def note_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Note must not be empty")
        return v


class LifecycleStageCreate(BaseModel):
    stage: str = Field(..., min_length=1)
    notes: Optional[str] = None


class PerformanceCreate(BaseModel):
    metric_type: str = Field(..., min_length=1)
    value: float
    division_average: Optional[float] = None


# ============================================================================
# Response Schemas
# ============================================================================


class CompanyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    created_at: datetime


class MemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    company_id: str
    user_id: str
    role: str
    email: Optional[str] = None


class ContractResponse(BaseModel):
    """A contract row as stored."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    first_party: Optional[str] = None
    second_party: Optional[str] = None
    value_rp: Optional[Decimal] = None
    duration_months: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: str
    risk: Optional[str] = None
    file_path: Optional[str] = None
    file_url: Optional[str] = None
    organization_id: str
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ContractEntityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contract_id: str
    contract_name: Optional[str] = None
    first_party: Optional[str] = None
    second_party: Optional[str] = None
    value_rp: Optional[Decimal] = None
    duration_months: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    penalty: Optional[str] = None
    initial_risk: Optional[str] = None
    analyzed_at: datetime


class RiskFindingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    section: Optional[str] = None
    level: str
    title: str
    created_at: datetime


class LegalNoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contract_id: str
    author: Optional[str] = None
    note: str
    created_at: datetime


class LifecycleStageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stage: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_days: Optional[int] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None


class PerformanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    metric_type: str
    value: float
    division_average: Optional[float] = None
    measured_at: datetime


class AnalysisResultResponse(BaseModel):
    """One row of the analysis audit trail."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    branch: str
    analysis_result: Dict[str, Any]
    risk_level: str
    confidence: float
    model_used: str
    processing_time: Optional[float] = None
    analyzed_at: datetime


class DisplayFields(BaseModel):
    """
    Contract fields as shown to users.

    Each field comes from the most recent extraction pass when it carries a
    value, otherwise from the contract row.
    """
    name: Optional[str] = None
    first_party: Optional[str] = None
    second_party: Optional[str] = None
    value_rp: Optional[Decimal] = None
    duration_months: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    source: str = Field(..., description="'entities' when an extraction pass exists, else 'contract'")


class ContractDetailResponse(BaseModel):
    """Everything the contract detail view renders."""
    contract: ContractResponse
    display: DisplayFields
    entities: Optional[ContractEntityResponse] = None
    risk_findings: List[RiskFindingResponse] = Field(default_factory=list)
    legal_notes: List[LegalNoteResponse] = Field(default_factory=list)
    lifecycle: List[LifecycleStageResponse] = Field(default_factory=list)
    performance: List[PerformanceResponse] = Field(default_factory=list)
    risk_analysis: Optional[AnalysisResultResponse] = None


class ContractListResponse(BaseModel):
    contracts: List[ContractResponse]
    total: int
    expired_now: List[str] = Field(
        default_factory=list,
        description="Contracts moved to Expired while building this list",
    )


class LegalKPIResponse(BaseModel):
    contracts_this_week: int
    high_risk: int
    pending_analysis: int


class RiskDistributionItem(BaseModel):
    level: str
    count: int
    percentage: float


class ManagementKPIResponse(BaseModel):
    """Portfolio aggregates for the management dashboard."""
    total_contracts: int
    by_status: Dict[str, int]
    high_risk: int
    expiring_30_days: int
    expiring_60_days: int
    expiring_90_days: int
    total_value: Decimal
    average_active_value: Decimal
    risk_distribution: List[RiskDistributionItem]


class StoredDocumentResponse(BaseModel):
    path: str
    url: str
    content_type: str
    size: int


class BranchOutcomeResponse(BaseModel):
    branch: str
    persisted: bool
    model_used: Optional[str] = None
    processing_time: Optional[float] = None
    error: Optional[Dict[str, Any]] = None


class PipelineOutcomeResponse(BaseModel):
    """Result of one document submission."""
    contract_id: str
    state: str
    document: Optional[StoredDocumentResponse] = None
    entities: BranchOutcomeResponse
    risk: BranchOutcomeResponse
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
