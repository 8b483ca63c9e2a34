# vendor_eval/agents/specialist.py
"""
Specialist executor.

execute(role, requirements, proposal, ...) -> SpecialistResult

- Builds the role prompt: system message + user template filled with the
  requirements and proposal, followed by any organization compliance
  sections, knowledge context and connector context.
- Races one JSON-constrained generation against the timeout.
- Success: parses insights / scores / rationale / status; derives the status
  from the scores when the model omits it.
- Any failure (timeout, malformed JSON, transport error, ...) returns a
  SpecialistFailure with overall=0 and the role's four fallback insights.
- Every execution emits progress (in_progress, then completed|failed) and one
  metrics record.
"""
from __future__ import annotations
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from vendor_eval.agents.prompts import AGENT_PROMPTS, fallback_insights
from vendor_eval.config import cfg
from vendor_eval.errors import FailureCategory, ResponseParseError, categorize_exception
from vendor_eval.models import (
    ROLE_LABELS,
    AgentExecutionMetric,
    ProgressUpdate,
    ProposalAnalysis,
    RequirementAnalysis,
    SpecialistFailure,
    SpecialistResult,
    SpecialistScores,
    SpecialistSuccess,
    StandardData,
    VendorContext,
)
from vendor_eval.services.llm_client import call_llm
from vendor_eval.services.metrics import MetricsRecorder, estimate_cost
from vendor_eval.services.progress import ProgressReporter

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

VALID_STATUSES = ("recommended", "under-review", "risk-flagged")

LLMCall = Callable[..., Awaitable[Dict[str, Any]]]


def derive_status(scores: SpecialistScores) -> str:
    overall = scores.overall or 0
    delivery_risk = scores.delivery_risk or 0
    # a compliance score that was never reported does not flag risk
    compliance = scores.compliance if scores.compliance is not None else 100

    if overall < 45 or delivery_risk > 75 or compliance < 35:
        return "risk-flagged"
    if overall >= 65 and delivery_risk <= 50:
        return "recommended"
    return "under-review"


def standards_section(standard_data: Optional[StandardData]) -> str:
    if not standard_data or not standard_data.tagged_section_ids:
        return ""
    lines = []
    for s in standard_data.tagged_sections():
        lines.append(f"- {s.name}: {s.description}" if s.description else f"- {s.name}")
    return (
        "\n\n**ORGANIZATION-SPECIFIC COMPLIANCE REQUIREMENTS:**\n"
        f"Standard: {standard_data.name}\n\n"
        "You MUST evaluate vendor compliance against these organization-specific sections:\n"
        + "\n".join(lines)
        + "\n\n**IMPORTANT:** Your evaluation must explicitly address how the vendor meets (or fails to meet) "
        "EACH of these organization-specific requirements. These are mandatory, not optional."
    )


def build_messages(role: str,
                   requirements: RequirementAnalysis,
                   proposal: ProposalAnalysis,
                   standard_data: Optional[StandardData] = None,
                   knowledge_context: Optional[str] = None,
                   connector_context: Optional[str] = None) -> Dict[str, str]:
    prompt = AGENT_PROMPTS[role]
    user = (
        prompt["user"]
        .replace("{requirements}", json.dumps(requirements.model_dump(by_alias=True), indent=2))
        .replace("{proposal}", json.dumps(proposal.model_dump(by_alias=True), indent=2))
        .replace("{vendor_name}", proposal.vendor_name)
    )
    user += standards_section(standard_data)
    if knowledge_context:
        user += f"\n\n{knowledge_context}"
    if connector_context:
        user += f"\n\n{connector_context}"
    return {"system": prompt["system"], "user": user}


def parse_agent_response(response: Dict[str, Any]) -> Dict[str, Any]:
    structured = response.get("structured")
    if structured is None:
        text = response.get("text") or ""
        if not text.strip():
            raise ResponseParseError("No response from agent")
        structured = json.loads(text)
    if not isinstance(structured, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(structured).__name__}")

    scores = SpecialistScores.model_validate(structured.get("scores") or {})
    insights = structured.get("insights") or []
    if not isinstance(insights, list):
        raise ResponseParseError("insights must be a list")
    status = structured.get("status")
    if status not in VALID_STATUSES:
        status = derive_status(scores)
    return {
        "insights": [str(i) for i in insights],
        "scores": scores,
        "rationale": str(structured.get("rationale") or ""),
        "status": status,
    }


def failure_result(role: str, category: str = FailureCategory.UNKNOWN.value, error: Optional[str] = None,
                   execution_time_ms: int = 0) -> SpecialistFailure:
    return SpecialistFailure(
        role=role,
        insights=fallback_insights(role),
        scores=SpecialistScores(overall=0),
        rationale=f"Evaluation incomplete for {role} perspective",
        status="under-review",
        execution_time_ms=execution_time_ms,
        token_usage=0,
        category=category,
        error=error,
    )


class SpecialistExecutor:
    """
    Args:
        llm: coroutine with call_llm's signature (system, user, model=..., temperature=...).
        progress / metrics: output ports; either may be None.
    """

    def __init__(self,
                 llm: Optional[LLMCall] = None,
                 progress: Optional[ProgressReporter] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 model: Optional[str] = None,
                 temperature: Optional[float] = None,
                 timeout: Optional[float] = None):
        self._llm = llm or call_llm
        self.progress = progress
        self.metrics = metrics
        self.model = model
        self.temperature = cfg.EVAL_TEMPERATURE if temperature is None else temperature
        self.timeout = cfg.AGENT_TIMEOUT_SECONDS if timeout is None else timeout

    def _emit(self, vendor_context: Optional[VendorContext], role: str, status: str) -> None:
        if self.progress is None or vendor_context is None:
            return
        self.progress.emit(ProgressUpdate(
            project_id=vendor_context.project_id,
            vendor_name=vendor_context.vendor_name,
            vendor_index=vendor_context.vendor_index,
            total_vendors=vendor_context.total_vendors,
            agent_role=ROLE_LABELS[role],
            agent_status=status,
        ))

    def _track(self, vendor_context: Optional[VendorContext], role: str, result: SpecialistResult) -> None:
        if self.metrics is None or vendor_context is None:
            return
        failed = isinstance(result, SpecialistFailure)
        self.metrics.track_execution(AgentExecutionMetric(
            evaluation_id=vendor_context.evaluation_id or f"{vendor_context.project_id}-{vendor_context.vendor_name}",
            project_id=vendor_context.project_id,
            vendor_name=vendor_context.vendor_name,
            agent_role=role,
            execution_time_ms=result.execution_time_ms,
            token_usage=result.token_usage,
            estimated_cost_usd=estimate_cost(result.token_usage),
            success=not failed,
            error_type=result.category if failed else None,
            error_message=result.error if failed else None,
        ))

    async def execute(self,
                      role: str,
                      requirements: RequirementAnalysis,
                      proposal: ProposalAnalysis,
                      standard_data: Optional[StandardData] = None,
                      knowledge_context: Optional[str] = None,
                      connector_context: Optional[str] = None,
                      vendor_context: Optional[VendorContext] = None,
                      timeout: Optional[float] = None) -> SpecialistResult:
        timeout = self.timeout if timeout is None else timeout
        start = time.monotonic()
        self._emit(vendor_context, role, "in_progress")

        try:
            messages = build_messages(role, requirements, proposal, standard_data, knowledge_context, connector_context)
            response = await asyncio.wait_for(
                self._llm(messages["system"], messages["user"], model=self.model, temperature=self.temperature),
                timeout,
            )
            parsed = parse_agent_response(response)
            elapsed = int((time.monotonic() - start) * 1000)
            logger.info("%s agent scores: %s", role, json.dumps(parsed["scores"].reported()))
            result: SpecialistResult = SpecialistSuccess(
                role=role,
                execution_time_ms=elapsed,
                token_usage=int(response.get("total_tokens") or 0),
                **parsed,
            )
            terminal = "completed"
        except Exception as e:
            elapsed = int((time.monotonic() - start) * 1000)
            category = categorize_exception(e)
            message = "Agent timeout" if category == FailureCategory.TIMEOUT else (str(e) or type(e).__name__)
            logger.error("Agent %s failed (%s): %s", role, category.value, message)
            result = failure_result(role, category.value, message, elapsed)
            terminal = "failed"

        self._track(vendor_context, role, result)
        self._emit(vendor_context, role, terminal)
        return result
