import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

ANALYSIS_MODES = ("default", "with_parameters")

CASE_PENDING = "pending"
CASE_PROCESSING = "processing"
CASE_ANALYZED = "analyzed"
CASE_ERROR = "error"


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # sqlmodel binds datetime columns as UTC and rejects naive values
    return datetime.now(timezone.utc)


def load_json(value: Optional[str], default: Any = None) -> Any:
    """Decode a JSON text column, tolerating empty values"""
    if not value:
        return default
    return json.loads(value)


# Database Models
class Case(SQLModel, table=True):
    __tablename__ = "cases"

    id: Optional[str] = Field(default_factory=_uuid, primary_key=True)
    org_id: str = Field(index=True)
    user_id: str
    case_title: str
    file_name: str
    file_size: int
    file_path: str
    sha256: str
    page_count: int = 0

    status: str = CASE_PENDING  # pending, processing, analyzed, error
    analysis_mode: str = "default"
    analysis_progress: int = 0
    current_step: Optional[str] = None

    default_recommendations: Optional[str] = None  # JSON string
    parameterized_recommendations: Optional[str] = None  # JSON string
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    analyzed_at: Optional[datetime] = None
    parameterized_analyzed_at: Optional[datetime] = None


class InstitutionRule(SQLModel, table=True):
    __tablename__ = "institution_rules"
    __table_args__ = (
        UniqueConstraint("org_id", "institution", "version", "ref", name="uq_rule_org_institution_version_ref"),
    )

    id: Optional[str] = Field(default_factory=_uuid, primary_key=True)
    org_id: str = Field(index=True)
    institution: str
    version: str
    document_type: str
    ref: str
    title: Optional[str] = None
    summary: Optional[str] = None
    mandatory: bool
    parameter_tag: Optional[str] = None
    extra_data: Optional[str] = None  # JSON string
    non_derogable: bool = False
    annulment_linked: bool = False
    hierarchy_level: int
    ai_usage: Optional[str] = None


class ProceduralOrder(SQLModel, table=True):
    __tablename__ = "procedural_orders"

    id: Optional[str] = Field(default_factory=_uuid, primary_key=True)
    org_id: str = Field(index=True)
    institution: str
    administering_institution: Optional[str] = None
    case_type: Optional[str] = None
    procedural_order_number: str
    rules_context: str = "[]"  # JSON list of strings
    order_date: Optional[datetime] = None
    source_pdf_path: Optional[str] = None
    sha256: Optional[str] = Field(default=None, index=True)
    extracted_json: str  # JSON string of the model extraction
    procedural_order_index: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class ProceduralEvent(SQLModel, table=True):
    __tablename__ = "procedural_events"

    id: Optional[str] = Field(default_factory=_uuid, primary_key=True)
    procedural_order_id: str = Field(foreign_key="procedural_orders.id", index=True)
    event_type: str
    decision_value: Optional[str] = None
    discretionary: bool = False
    source_rule_ref: Optional[str] = None
    extra_data: Optional[str] = None  # JSON string
    created_at: datetime = Field(default_factory=utcnow)


class ProceduralTimeline(SQLModel, table=True):
    __tablename__ = "procedural_timelines"

    id: Optional[str] = Field(default_factory=_uuid, primary_key=True)
    procedural_order_id: str = Field(foreign_key="procedural_orders.id", index=True)
    phase: str
    party: Optional[str] = None
    days: int
    relative_to: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# Request / Response Models
class CaseSummaryResponse(BaseModel):
    id: str
    case_title: str
    file_name: str
    status: str
    analysis_progress: int
    created_at: datetime
    has_default: bool
    has_parameterized: bool


class CaseStatusResponse(BaseModel):
    id: str
    status: str
    analysis_progress: int
    current_step: Optional[str] = None
    default_recommendations: Optional[Dict[str, Any]] = None
    parameterized_recommendations: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    analyzed_at: Optional[datetime] = None
    parameterized_analyzed_at: Optional[datetime] = None


class CaseDetailResponse(CaseStatusResponse):
    case_title: str
    file_name: str
    file_size: int
    page_count: int
    analysis_mode: str
    created_at: datetime


class RuleIn(BaseModel):
    institution: str
    version: str
    document_type: str
    ref: str
    title: Optional[str] = None
    summary: Optional[str] = None
    mandatory: bool
    parameter_tag: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None
    non_derogable: bool = False
    annulment_linked: bool = False
    hierarchy_level: int
    ai_usage: Optional[str] = None


class RuleResponse(RuleIn):
    id: str


class ProceduralOrderResponse(BaseModel):
    id: str
    institution: str
    procedural_order_number: str
    rules_context: List[str]
    order_date: Optional[datetime] = None
    created_at: datetime
    event_count: int
    timeline_count: int


def case_status(case: Case) -> CaseStatusResponse:
    return CaseStatusResponse(
        id=case.id,
        status=case.status,
        analysis_progress=case.analysis_progress,
        current_step=case.current_step,
        default_recommendations=load_json(case.default_recommendations),
        parameterized_recommendations=load_json(case.parameterized_recommendations),
        error_message=case.error_message,
        analyzed_at=case.analyzed_at,
        parameterized_analyzed_at=case.parameterized_analyzed_at,
    )


def rule_payload(rule: InstitutionRule) -> Dict[str, Any]:
    """Rule fields as shown to the model; identifiers are left out"""
    return {
        "institution": rule.institution,
        "version": rule.version,
        "document_type": rule.document_type,
        "ref": rule.ref,
        "title": rule.title,
        "summary": rule.summary,
        "mandatory": rule.mandatory,
        "parameter_tag": rule.parameter_tag,
        "extra_data": load_json(rule.extra_data),
        "non_derogable": rule.non_derogable,
        "annulment_linked": rule.annulment_linked,
        "hierarchy_level": rule.hierarchy_level,
        "ai_usage": rule.ai_usage,
    }
