from __future__ import annotations
import time
from typing import List, Optional, Dict, Any, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AgentRole = Literal["delivery", "product", "architecture", "engineering", "procurement", "security"]
EvaluationStatus = Literal["recommended", "under-review", "risk-flagged"]
DiagnosticStatus = Literal["success", "failed", "timeout"]
AgentStatus = Literal["pending", "in_progress", "completed", "failed"]

ROLES: Tuple[str, ...] = ("delivery", "product", "architecture", "engineering", "procurement", "security")

ROLE_LABELS: Dict[str, str] = {
    "delivery": "Delivery Manager",
    "product": "Product Manager",
    "architecture": "Solution Architect",
    "engineering": "Engineering Lead",
    "procurement": "Procurement",
    "security": "Cybersecurity",
}

SCORE_KEYS: Tuple[str, ...] = (
    "overall",
    "functional_fit",
    "technical_fit",
    "delivery_risk",
    "compliance",
    "integration",
    "support",
    "scalability",
    "documentation",
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- evaluation inputs ----

class EvaluationCriterion(CamelModel):
    name: str
    weight: float = 0.0
    description: str = ""


class RequirementAnalysis(CamelModel):
    scope: str = ""
    technical_requirements: List[str] = Field(default_factory=list)
    evaluation_criteria: List[EvaluationCriterion] = Field(default_factory=list)
    success_metrics: List[str] = Field(default_factory=list)


class ProposalAnalysis(CamelModel):
    vendor_name: str
    capabilities: List[str] = Field(default_factory=list)
    technical_approach: str = ""
    integrations: List[str] = Field(default_factory=list)
    security: str = ""
    support: str = ""
    cost_structure: str = ""
    timeline: str = ""


class StandardSection(CamelModel):
    id: str
    name: str
    description: Optional[str] = None


class StandardData(CamelModel):
    name: str
    sections: List[StandardSection] = Field(default_factory=list)
    tagged_section_ids: List[str] = Field(default_factory=list)

    def tagged_sections(self) -> List[StandardSection]:
        return [s for s in self.sections if s.id in self.tagged_section_ids]


class VendorContext(CamelModel):
    project_id: str
    vendor_name: str
    vendor_index: int = 0
    total_vendors: int = 1
    evaluation_id: Optional[str] = None


class EvaluationContext(CamelModel):
    """Immutable per-call context shared by every specialist and connector."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    project_name: str
    vendor_name: str
    requirements: Tuple[str, ...] = ()
    proposal_summary: str = ""

    @classmethod
    def from_analyses(cls, requirements: RequirementAnalysis, proposal: ProposalAnalysis) -> "EvaluationContext":
        return cls(
            project_name=requirements.scope,
            vendor_name=proposal.vendor_name,
            requirements=tuple(requirements.technical_requirements[:5]),
            proposal_summary=proposal.technical_approach[:200],
        )


# ---- knowledge ----

class KnowledgeFragment(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    content: str
    file_name: str
    source_type: str
    source_id: Optional[str] = None
    chunk_index: int = 0
    section_title: Optional[str] = None
    score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def identity(self) -> Tuple[str, int]:
        return (self.file_name, self.chunk_index)


class KnowledgeContext(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    fragments: Tuple[KnowledgeFragment, ...] = ()
    summary: str = ""


# ---- connectors ----

class ConnectorConfig(CamelModel):
    id: str
    name: str
    connector_type: str = "rest"
    server_url: str
    auth_type: Literal["none", "bearer", "apikey", "basic"] = "none"
    api_key: Optional[str] = None
    role_mapping: List[str] = Field(default_factory=list)
    is_active: bool = True


class ConnectorMetadata(CamelModel):
    connector_name: str
    timestamp: float = Field(default_factory=time.time)
    ttl: int = 300


class ConnectorPayload(CamelModel):
    role_context: Dict[str, str] = Field(default_factory=dict)
    raw_data: Any = None
    metadata: ConnectorMetadata


class ConnectorError(CamelModel):
    connector_id: str
    connector_name: str
    error: str
    category: str
    timestamp: float = Field(default_factory=time.time)


# ---- specialists ----

class SpecialistScores(CamelModel):
    """Overall score plus whichever sub-scores the specialist chose to report."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    overall: Optional[float] = None
    functional_fit: Optional[float] = None
    technical_fit: Optional[float] = None
    delivery_risk: Optional[float] = None
    compliance: Optional[float] = None
    integration: Optional[float] = None
    support: Optional[float] = None
    scalability: Optional[float] = None
    documentation: Optional[float] = None

    def reported(self) -> Dict[str, float]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class SpecialistResultBase(CamelModel):
    role: AgentRole
    insights: List[str] = Field(default_factory=list)
    scores: SpecialistScores = Field(default_factory=SpecialistScores)
    rationale: str = ""
    status: EvaluationStatus = "under-review"
    execution_time_ms: int = 0
    token_usage: int = 0


class SpecialistSuccess(SpecialistResultBase):
    outcome: Literal["success"] = "success"

    @property
    def succeeded(self) -> bool:
        return True


class SpecialistFailure(SpecialistResultBase):
    outcome: Literal["failed"] = "failed"
    category: str = "unknown"
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return False


SpecialistResult = Union[SpecialistSuccess, SpecialistFailure]


class AgentDiagnostics(CamelModel):
    role: AgentRole
    execution_time_ms: int = 0
    token_usage: int = 0
    status: DiagnosticStatus
    error: Optional[str] = None
    error_category: Optional[str] = None


# ---- consensus ----

class DetailedScores(CamelModel):
    integration: Optional[int] = None
    support: Optional[int] = None
    scalability: Optional[int] = None
    documentation: Optional[int] = None


class SectionCompliance(CamelModel):
    section_id: str
    section_name: str
    score: Optional[int] = None
    findings: str = ""


class VendorEvaluation(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    overall_score: int = 0
    functional_fit: Optional[int] = None
    technical_fit: Optional[int] = None
    delivery_risk: Optional[int] = None
    compliance: Optional[int] = None
    cost: str = "Not specified"
    status: EvaluationStatus = "under-review"
    rationale: str = ""
    role_insights: Dict[str, List[str]] = Field(default_factory=dict)
    detailed_scores: DetailedScores = Field(default_factory=DetailedScores)
    section_compliance: List[SectionCompliance] = Field(default_factory=list)


class EvaluationOutcome(CamelModel):
    evaluation: VendorEvaluation
    diagnostics: List[AgentDiagnostics] = Field(default_factory=list)


# ---- observability ----

class ProgressUpdate(CamelModel):
    project_id: str
    vendor_name: str
    vendor_index: int = 0
    total_vendors: int = 1
    agent_role: str
    agent_status: AgentStatus
    timestamp: float = Field(default_factory=time.time)


class AgentExecutionMetric(CamelModel):
    evaluation_id: str
    project_id: str
    vendor_name: str
    agent_role: str
    execution_time_ms: int
    token_usage: int = 0
    estimated_cost_usd: float = 0.0
    success: bool
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)
