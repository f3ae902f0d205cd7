"""
SQLAlchemy ORM models for the Contract Hub database schema.

Tables:
- Company: An organization; every contract belongs to exactly one
- CompanyUser: Membership of a user in a company, with a role
- Contract: The aggregate root tracked through its lifecycle
- ContractEntity: One row per completed entity-extraction pass
- RiskFinding: Individual risk items detected for a contract
- LegalNote: Free-text annotations written by legal reviewers
- ContractLifecycle: Stage history, at most one open stage per contract
- ContractPerformance: Performance metrics measured for a contract
- AIRiskAnalysis: Audit trail of every analysis service invocation

Relationships are declared with lazy="raise": under the async session every
child collection is read through an explicit query in contract_hub.crud.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from contract_hub.database import Base
from contract_hub.status import ContractStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo (SQLite)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Company(Base):
    """
    An organization using the dashboard.

    Attributes:
        id: Opaque organization id
        name: Display name
        created_at: Timestamp when the company was registered
    """

    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    members: Mapped[List["CompanyUser"]] = relationship(back_populates="company", lazy="raise")


class CompanyUser(Base):
    """
    Membership of a user in a company.

    Attributes:
        id: Primary key
        company_id: Organization the user belongs to
        user_id: Identity of the user in the auth provider
        email: Contact email, used as default note author
        role: procurement / legal / management
    """

    __tablename__ = "company_users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(64))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    company: Mapped["Company"] = relationship(back_populates="members", lazy="raise")

    __table_args__ = (
        UniqueConstraint("company_id", "user_id", name="uq_company_users_company_user"),
    )


class Contract(Base):
    """
    A tracked contract, the aggregate root for all analysis data.

    Attributes:
        id: Opaque contract id
        name: Contract name
        first_party / second_party: Counter-parties
        value_rp: Monetary value
        duration_months: Contract duration in months
        start_date / end_date: Validity period
        status: Lifecycle status (see contract_hub.status)
        risk: Low/Medium/High, NULL until a risk classification completed
        file_path / file_url: Reference to the stored document
        organization_id: Owning organization
        created_by: User id of the creator
    """

    __tablename__ = "contracts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(500))
    first_party: Mapped[Optional[str]] = mapped_column(String(500))
    second_party: Mapped[Optional[str]] = mapped_column(String(500))
    value_rp: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2))
    duration_months: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(50), default=ContractStatus.DRAFT.value)
    risk: Mapped[Optional[str]] = mapped_column(String(20))
    file_path: Mapped[Optional[str]] = mapped_column(String(1000))
    file_url: Mapped[Optional[str]] = mapped_column(String(2000))
    organization_id: Mapped[str] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"))
    created_by: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    entities: Mapped[List["ContractEntity"]] = relationship(
        back_populates="contract", lazy="raise", passive_deletes=True
    )
    risk_findings: Mapped[List["RiskFinding"]] = relationship(
        back_populates="contract", lazy="raise", passive_deletes=True
    )
    legal_notes: Mapped[List["LegalNote"]] = relationship(
        back_populates="contract", lazy="raise", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_contracts_org_status", "organization_id", "status"),
        Index("ix_contracts_org_created", "organization_id", "created_at"),
    )


class ContractEntity(Base):
    """
    Structured fields from one entity-extraction pass.

    History is kept: the row with the latest analyzed_at is authoritative
    for display, the contract's own columns are the fallback.
    """

    __tablename__ = "contract_entities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"))
    contract_name: Mapped[Optional[str]] = mapped_column(String(500))
    first_party: Mapped[Optional[str]] = mapped_column(String(500))
    second_party: Mapped[Optional[str]] = mapped_column(String(500))
    value_rp: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2))
    duration_months: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    penalty: Mapped[Optional[str]] = mapped_column(Text)
    initial_risk: Mapped[Optional[str]] = mapped_column(String(20))
    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    contract: Mapped["Contract"] = relationship(back_populates="entities", lazy="raise")

    __table_args__ = (
        Index("ix_contract_entities_contract_analyzed", "contract_id", "analyzed_at"),
    )


class RiskFinding(Base):
    """A single risk item detected in a contract (append-only)."""

    __tablename__ = "risk_findings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"))
    section: Mapped[Optional[str]] = mapped_column(String(255))
    level: Mapped[str] = mapped_column(String(20))
    title: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    contract: Mapped["Contract"] = relationship(back_populates="risk_findings", lazy="raise")

    __table_args__ = (
        Index("ix_risk_findings_contract_level", "contract_id", "level"),
    )


class LegalNote(Base):
    """A free-text annotation on a contract (append-only, user-authored)."""

    __tablename__ = "legal_notes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"))
    author: Mapped[Optional[str]] = mapped_column(String(255))
    note: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    contract: Mapped["Contract"] = relationship(back_populates="legal_notes", lazy="raise")

    __table_args__ = (
        Index("ix_legal_notes_contract_id", "contract_id"),
    )


class ContractLifecycle(Base):
    """
    One stage in a contract's lifecycle.

    completed_at is NULL for the current stage; starting a new stage closes
    the previous one and fills in duration_days.
    """

    __tablename__ = "contract_lifecycle"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"))
    stage: Mapped[str] = mapped_column(String(100))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_days: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index("ix_contract_lifecycle_contract_started", "contract_id", "started_at"),
    )


class ContractPerformance(Base):
    """A performance metric measured for a contract, with the division average."""

    __tablename__ = "contract_performance"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"))
    metric_type: Mapped[str] = mapped_column(String(100))
    value: Mapped[float] = mapped_column(Float)
    division_average: Mapped[Optional[float]] = mapped_column(Float)
    measured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AIRiskAnalysis(Base):
    """
    Audit row for one analysis service invocation.

    Failed invocations are recorded too, with risk_level "Unknown",
    confidence 0 and model_used "error".

    Attributes:
        branch: risk_classification or entity_extraction
        analysis_result: Full raw response payload (or the error description)
        risk_level: Classified level, "Unknown" for failures and for extraction rows
        confidence: Confidence reported by the service
        model_used: Model identifier reported by the service
        processing_time: Seconds the service spent, as reported
    """

    __tablename__ = "ai_risk_analysis"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id", ondelete="CASCADE"))
    branch: Mapped[str] = mapped_column(String(50))
    analysis_result: Mapped[Dict[str, Any]] = mapped_column(JSON)
    risk_level: Mapped[str] = mapped_column(String(20))
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    model_used: Mapped[str] = mapped_column(String(255))
    processing_time: Mapped[Optional[float]] = mapped_column(Float)
    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_ai_risk_analysis_contract_analyzed", "contract_id", "analyzed_at"),
    )
