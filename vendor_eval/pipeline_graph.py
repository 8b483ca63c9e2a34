"""
LangGraph pipeline for the multi-agent vendor evaluation.

Stages:
- enrich       knowledge retrieval + connector fan-out, concurrently
- specialists  one task per role, all concurrent, each with its own timeout
- aggregate    consensus VendorEvaluation

Run via:
    orchestrator = EvaluationOrchestrator()
    outcome = await orchestrator.evaluate(requirements, proposal)
    outcome.evaluation, outcome.diagnostics
"""

from __future__ import annotations
import asyncio
import time
import uuid
import logging
from typing import TypedDict, List, Dict, Optional, Sequence, Callable

from langgraph.graph import StateGraph, END

from vendor_eval.agents.aggregate import aggregate
from vendor_eval.agents.connectors import ConnectorFanout
from vendor_eval.agents.retriever import KnowledgeRetriever, format_for_prompt
from vendor_eval.agents.specialist import SpecialistExecutor, failure_result
from vendor_eval.config import cfg
from vendor_eval.errors import EvaluationError, FailureCategory, categorize_exception
from vendor_eval.models import (
    ROLES,
    ROLE_LABELS,
    AgentDiagnostics,
    ConnectorError,
    EvaluationContext,
    EvaluationOutcome,
    ProgressUpdate,
    ProposalAnalysis,
    RequirementAnalysis,
    SpecialistResult,
    SpecialistSuccess,
    StandardData,
    VendorContext,
    VendorEvaluation,
)
from vendor_eval.services.cache import build_cache
from vendor_eval.services.metrics import MetricsRecorder
from vendor_eval.services.progress import ProgressReporter

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

KNOWLEDGE_QUERY_LIMIT = 5
KNOWLEDGE_TOP_K_PER_QUERY = 2


class EvaluationState(TypedDict, total=False):
    requirements: RequirementAnalysis
    proposal: ProposalAnalysis
    standard_data: Optional[StandardData]
    vendor_context: Optional[VendorContext]
    context: EvaluationContext
    knowledge_context: Optional[str]
    connector_context: Dict[str, str]
    connector_errors: List[ConnectorError]
    results: List[SpecialistResult]
    diagnostics: List[AgentDiagnostics]
    evaluation: VendorEvaluation
    start_time: float


def diagnostics_for(result: SpecialistResult) -> AgentDiagnostics:
    if isinstance(result, SpecialistSuccess):
        return AgentDiagnostics(role=result.role, execution_time_ms=result.execution_time_ms,
                                token_usage=result.token_usage, status="success")
    return AgentDiagnostics(
        role=result.role,
        execution_time_ms=result.execution_time_ms,
        token_usage=result.token_usage,
        status="timeout" if result.category == FailureCategory.TIMEOUT.value else "failed",
        error=result.error or "Agent completed but with errors",
        error_category=result.category,
    )


class EvaluationOrchestrator:
    """
    Drives one vendor evaluation end to end.

    Every collaborator is injectable; missing ones are built from `cfg`.
    """

    def __init__(self,
                 executor: Optional[SpecialistExecutor] = None,
                 retriever: Optional[KnowledgeRetriever] = None,
                 connectors: Optional[ConnectorFanout] = None,
                 progress: Optional[ProgressReporter] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 roles: Sequence[str] = ROLES):
        self.progress = progress if progress is not None else ProgressReporter()
        self.metrics = metrics if metrics is not None else MetricsRecorder()
        self.executor = executor or SpecialistExecutor(progress=self.progress, metrics=self.metrics)
        self.retriever = retriever or KnowledgeRetriever()
        self.connectors = connectors or ConnectorFanout(
            cache=build_cache(cfg.REDIS_URL, cfg.CONNECTOR_CACHE_TTL),
        )
        self.roles = tuple(roles)
        self.pipeline = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(EvaluationState)

        graph.add_node("enrich", self.node_enrich)
        graph.add_node("specialists", self.node_specialists)
        graph.add_node("aggregate", self.node_aggregate)

        graph.set_entry_point("enrich")

        graph.add_edge("enrich", "specialists")
        graph.add_edge("specialists", "aggregate")
        graph.add_edge("aggregate", END)

        return graph.compile()

    # ---- progress ----

    def subscribe_to_progress(self, project_id: str, listener: Callable[[ProgressUpdate], None]) -> Callable[[], None]:
        return self.progress.subscribe(project_id, listener)

    def _emit_pending(self, vendor_context: Optional[VendorContext]) -> None:
        if vendor_context is None:
            return
        for role in self.roles:
            self.progress.emit(ProgressUpdate(
                project_id=vendor_context.project_id,
                vendor_name=vendor_context.vendor_name,
                vendor_index=vendor_context.vendor_index,
                total_vendors=vendor_context.total_vendors,
                agent_role=ROLE_LABELS[role],
                agent_status="pending",
            ))

    # ---- enrichment ----

    async def _knowledge_context(self, requirements: RequirementAnalysis) -> Optional[str]:
        queries = [q for q in requirements.technical_requirements if q and q.strip()][:KNOWLEDGE_QUERY_LIMIT]
        if not queries:
            logger.info("No technical requirements found, skipping knowledge retrieval")
            return None
        if not self.retriever.is_configured():
            logger.info("Knowledge backend not configured, proceeding without document retrieval")
            return None
        try:
            knowledge = await self.retriever.retrieve_many(queries, top_k_per_query=KNOWLEDGE_TOP_K_PER_QUERY)
        except Exception as e:
            logger.exception("Knowledge retrieval failed, proceeding without it: %s", e)
            return None
        logger.info("Retrieved %d relevant document sections", len(knowledge.fragments))
        return format_for_prompt(knowledge) or None

    async def _connector_context(self, context: EvaluationContext):
        results = await asyncio.gather(
            *[self.connectors.fetch_for_role(role, context) for role in self.roles],
            return_exceptions=True,
        )
        by_role: Dict[str, str] = {}
        errors: List[ConnectorError] = []
        for role, result in zip(self.roles, results):
            if isinstance(result, BaseException):
                logger.error("Connector fan-out for %s failed, proceeding without it: %s", role, result)
                continue
            payload, diagnostics = result
            if payload:
                by_role[role] = payload
            errors.extend(diagnostics)

        if by_role:
            logger.info("Retrieved external data for %d agent roles", len(by_role))
        if errors:
            logger.warning("%d connector errors occurred (non-blocking)", len(errors))
        return by_role, errors

    async def node_enrich(self, state: EvaluationState) -> EvaluationState:
        self._emit_pending(state.get("vendor_context"))
        standard = state.get("standard_data")
        if standard:
            logger.info("Organization standards: %s (%d tagged sections)", standard.name,
                        len(standard.tagged_section_ids))

        knowledge, (by_role, errors) = await asyncio.gather(
            self._knowledge_context(state["requirements"]),
            self._connector_context(state["context"]),
        )
        state["knowledge_context"] = knowledge
        state["connector_context"] = by_role
        state["connector_errors"] = errors
        return state

    # ---- specialists ----

    async def node_specialists(self, state: EvaluationState) -> EvaluationState:
        tasks = [
            self.executor.execute(
                role,
                state["requirements"],
                state["proposal"],
                standard_data=state.get("standard_data"),
                knowledge_context=state.get("knowledge_context"),
                connector_context=state.get("connector_context", {}).get(role),
                vendor_context=state.get("vendor_context"),
            )
            for role in self.roles
        ]
        settled = await asyncio.gather(*tasks, return_exceptions=True)

        results: List[SpecialistResult] = []
        for role, outcome in zip(self.roles, settled):
            if isinstance(outcome, BaseException):
                logger.error("Agent %s failed with error: %s", role, outcome)
                outcome = failure_result(role, categorize_exception(outcome).value,
                                         str(outcome) or "Unknown error")
            results.append(outcome)

        diagnostics = [diagnostics_for(r) for r in results]
        failed = sum(1 for d in diagnostics if d.status != "success")
        logger.info("Multi-agent evaluation: %d/%d agents succeeded, %d tokens, slowest %dms",
                    len(results) - failed, len(results),
                    sum(r.token_usage for r in results),
                    max((r.execution_time_ms for r in results), default=0))

        state["results"] = results
        state["diagnostics"] = diagnostics
        return state

    # ---- aggregation ----

    async def node_aggregate(self, state: EvaluationState) -> EvaluationState:
        state["evaluation"] = aggregate(
            state["results"],
            cost=state["proposal"].cost_structure,
            standard_data=state.get("standard_data"),
            roles=self.roles,
        )
        return state

    # ---- entry points ----

    async def evaluate(self,
                       requirements: RequirementAnalysis,
                       proposal: ProposalAnalysis,
                       standard_data: Optional[StandardData] = None,
                       vendor_context: Optional[VendorContext] = None) -> EvaluationOutcome:
        logger.info("Starting multi-agent evaluation for %s", proposal.vendor_name)
        init_state: EvaluationState = {
            "requirements": requirements,
            "proposal": proposal,
            "standard_data": standard_data,
            "vendor_context": vendor_context,
            "context": EvaluationContext.from_analyses(requirements, proposal),
            "start_time": time.time(),
        }
        try:
            final_state = await self.pipeline.ainvoke(init_state)
        except Exception as e:
            logger.exception("Multi-agent evaluation failed catastrophically: %s", e)
            raise EvaluationError(f"Evaluation of {proposal.vendor_name} could not be run: {e}") from e

        logger.info("Evaluation of %s finished in %.2fs", proposal.vendor_name, time.time() - init_state["start_time"])
        return EvaluationOutcome(evaluation=final_state["evaluation"], diagnostics=final_state["diagnostics"])

    async def evaluate_vendors(self,
                               requirements: RequirementAnalysis,
                               proposals: Sequence[ProposalAnalysis],
                               project_id: str,
                               standard_data: Optional[StandardData] = None) -> List[EvaluationOutcome]:
        """Evaluate several vendors one after another under a single progress scope."""
        outcomes = []
        try:
            for index, proposal in enumerate(proposals):
                vendor_context = VendorContext(
                    project_id=project_id,
                    vendor_name=proposal.vendor_name,
                    vendor_index=index,
                    total_vendors=len(proposals),
                    evaluation_id=uuid.uuid4().hex,
                )
                outcomes.append(await self.evaluate(requirements, proposal, standard_data, vendor_context))
        finally:
            self.progress.clear(project_id)
        return outcomes
