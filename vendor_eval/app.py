import asyncio
import json
import logging
import uuid
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from vendor_eval.errors import EvaluationError
from vendor_eval.models import ProgressUpdate, ProposalAnalysis, RequirementAnalysis, StandardData
from vendor_eval.pipeline_graph import EvaluationOrchestrator

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

TERMINAL_STATUSES = ("completed", "failed")
KEEPALIVE_SECONDS = 15.0

api = FastAPI()

_ORCHESTRATOR: Optional[EvaluationOrchestrator] = None


def get_orchestrator() -> EvaluationOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = EvaluationOrchestrator()
    return _ORCHESTRATOR


class EvaluateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    requirements: RequirementAnalysis
    proposals: List[ProposalAnalysis]
    project_id: Optional[str] = None
    standard_data: Optional[StandardData] = None


def _all_finished(updates: List[ProgressUpdate], roles_per_vendor: int) -> bool:
    if not updates:
        return False
    expected = updates[-1].total_vendors * roles_per_vendor
    finished = sum(1 for u in updates if u.agent_status in TERMINAL_STATUSES)
    return finished >= expected


@api.post("/evaluate")
async def evaluate(req: EvaluateRequest, orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    """
    Evaluate every proposal against the requirements with all specialists.
    Returns one evaluation (plus per-agent diagnostics) per vendor.
    """
    project_id = req.project_id or f"project-{uuid.uuid4().hex[:12]}"
    if not req.proposals:
        raise HTTPException(status_code=422, detail="At least one proposal is required")

    try:
        outcomes = await orchestrator.evaluate_vendors(
            req.requirements, req.proposals, project_id, standard_data=req.standard_data,
        )
    except EvaluationError as e:
        return {
            "projectId": project_id,
            "status": "FAILED",
            "error": str(e),
        }

    return {
        "projectId": project_id,
        "status": "DONE",
        "evaluations": [o.model_dump(mode="json", by_alias=True) for o in outcomes],
    }


@api.get("/progress/{project_id}")
async def progress(project_id: str, request: Request,
                   orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    """Server-sent events of specialist progress; the current snapshot is sent first."""
    queue: asyncio.Queue = asyncio.Queue()
    roles_per_vendor = len(orchestrator.roles)

    async def events():
        unsubscribe = orchestrator.subscribe_to_progress(project_id, queue.put_nowait)
        # latest update per (vendor, role)
        seen = {}
        try:
            while True:
                try:
                    update = await asyncio.wait_for(queue.get(), KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                seen[(update.vendor_index, update.agent_role)] = update
                yield f"data: {json.dumps(update.model_dump(mode='json', by_alias=True))}\n\n"
                if _all_finished(list(seen.values()), roles_per_vendor):
                    yield "event: done\ndata: {}\n\n"
                    break
        finally:
            unsubscribe()

    return StreamingResponse(events(), media_type="text/event-stream")


@api.get("/metrics/summary")
def metrics_summary(orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    metrics = orchestrator.metrics
    return {
        "summary": metrics.get_summary_stats(),
        "projects": metrics.get_project_metrics(),
    }


@api.get("/metrics/agents")
def metrics_agents(role: Optional[str] = None, orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    if role is None:
        return orchestrator.metrics.get_all_agent_stats()
    stats = orchestrator.metrics.get_agent_stats(role)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No executions recorded for {role}")
    return stats


@api.get("/metrics/failures")
def metrics_failures(limit: int = 10, orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    return [m.model_dump(mode="json", by_alias=True) for m in orchestrator.metrics.get_recent_failures(limit)]


@api.get("/metrics/evaluations/{evaluation_id}")
def metrics_evaluation(evaluation_id: str, orchestrator: EvaluationOrchestrator = Depends(get_orchestrator)):
    return orchestrator.metrics.get_evaluation_metrics(evaluation_id)
