# vendor_eval/services/metrics.py
"""
Per-specialist execution metrics.

The evaluation core only writes (track_execution). The query helpers below
are the read-only surface used by dashboards and the /metrics endpoints.
Records are kept in memory; writes prune those older than the retention
window at most once per prune interval.
"""
from __future__ import annotations
import json
import time
import logging
from typing import Any, Callable, Dict, List, Optional

from vendor_eval.config import cfg
from vendor_eval.models import AgentExecutionMetric

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# GPT-4o list prices, USD per 1M tokens
INPUT_COST_PER_MILLION = 2.50
OUTPUT_COST_PER_MILLION = 10.00
# typical split for evaluation prompts
INPUT_TOKEN_SHARE = 0.7

SECONDS_PER_DAY = 24 * 60 * 60
PRUNE_INTERVAL_SECONDS = 60 * 60


def estimate_cost(total_tokens: int) -> float:
    """Estimated USD cost of a call that consumed `total_tokens` tokens."""
    input_tokens = total_tokens * INPUT_TOKEN_SHARE
    output_tokens = total_tokens * (1 - INPUT_TOKEN_SHARE)
    cost = (input_tokens / 1_000_000) * INPUT_COST_PER_MILLION + (output_tokens / 1_000_000) * OUTPUT_COST_PER_MILLION
    return round(cost, 6)


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class MetricsRecorder:

    def __init__(self, retention_days: Optional[int] = None, clock: Callable[[], float] = time.time,
                 prune_interval: float = PRUNE_INTERVAL_SECONDS):
        self.retention_days = cfg.METRICS_RETENTION_DAYS if retention_days is None else retention_days
        self._clock = clock
        self.prune_interval = prune_interval
        self._records: List[AgentExecutionMetric] = []
        self._last_prune = clock()

    # ---- write side ----

    def track_execution(self, metric: AgentExecutionMetric) -> None:
        self._records.append(metric)
        if self._clock() - self._last_prune >= self.prune_interval:
            self.clear_old_metrics()
        logger.info(json.dumps({
            "level": "info" if metric.success else "error",
            "type": "agent_execution",
            "agentRole": metric.agent_role,
            "vendorName": metric.vendor_name,
            "executionTimeMs": metric.execution_time_ms,
            "tokenUsage": metric.token_usage,
            "estimatedCostUsd": metric.estimated_cost_usd,
            "success": metric.success,
            "errorType": metric.error_type,
        }))

    def __len__(self) -> int:
        return len(self._records)

    estimate_cost = staticmethod(estimate_cost)

    # ---- read side ----

    def _recent(self) -> List[AgentExecutionMetric]:
        cutoff = self._clock() - self.retention_days * SECONDS_PER_DAY
        return [m for m in self._records if m.timestamp >= cutoff]

    def get_agent_stats(self, agent_role: str) -> Optional[Dict[str, Any]]:
        metrics = [m for m in self._recent() if m.agent_role == agent_role]
        if not metrics:
            return None

        n = len(metrics)
        success_count = sum(1 for m in metrics if m.success)
        total_tokens = sum(m.token_usage for m in metrics)
        total_cost = sum(m.estimated_cost_usd for m in metrics)
        total_time = sum(m.execution_time_ms for m in metrics)
        return {
            "agent_role": agent_role,
            "total_executions": n,
            "success_count": success_count,
            "failure_count": n - success_count,
            "success_rate": _pct(success_count, n),
            "avg_execution_time_ms": round(total_time / n),
            "total_tokens_used": total_tokens,
            "total_cost_usd": round(total_cost, 6),
            "avg_tokens_per_execution": round(total_tokens / n),
            "avg_cost_per_execution": round(total_cost / n, 6),
            "last_executed": max(m.timestamp for m in metrics),
        }

    def get_all_agent_stats(self) -> List[Dict[str, Any]]:
        roles = sorted({m.agent_role for m in self._recent()})
        return [s for s in (self.get_agent_stats(r) for r in roles) if s]

    def get_evaluation_metrics(self, evaluation_id: str) -> Dict[str, Any]:
        metrics = [m for m in self._records if m.evaluation_id == evaluation_id]
        return {
            "total_execution_time_ms": sum(m.execution_time_ms for m in metrics),
            "total_tokens_used": sum(m.token_usage for m in metrics),
            "total_cost_usd": round(sum(m.estimated_cost_usd for m in metrics), 6),
            "agents_succeeded": sum(1 for m in metrics if m.success),
            "agents_failed": sum(1 for m in metrics if not m.success),
            "agent_breakdown": {
                m.agent_role: {
                    "success": m.success,
                    "time_ms": m.execution_time_ms,
                    "tokens": m.token_usage,
                    "cost_usd": m.estimated_cost_usd,
                }
                for m in metrics
            },
        }

    def get_recent_failures(self, limit: int = 10) -> List[AgentExecutionMetric]:
        failures = [m for m in self._records if not m.success]
        failures.sort(key=lambda m: m.timestamp, reverse=True)
        return failures[:limit]

    def get_summary_stats(self) -> Dict[str, Any]:
        metrics = self._recent()
        n = len(metrics)
        success_count = sum(1 for m in metrics if m.success)
        return {
            "total_evaluations": len({m.evaluation_id for m in metrics}),
            "total_agent_executions": n,
            "total_tokens_used": sum(m.token_usage for m in metrics),
            "total_cost_usd": round(sum(m.estimated_cost_usd for m in metrics), 6),
            "overall_success_rate": _pct(success_count, n),
            "avg_execution_time_ms": round(sum(m.execution_time_ms for m in metrics) / n) if n else 0,
        }

    def get_project_metrics(self) -> List[Dict[str, Any]]:
        groups: Dict[str, List[AgentExecutionMetric]] = {}
        for m in self._recent():
            groups.setdefault(m.project_id, []).append(m)

        out = []
        for project_id, metrics in groups.items():
            n = len(metrics)
            success_count = sum(1 for m in metrics if m.success)
            out.append({
                "project_id": project_id,
                "total_evaluations": len({m.evaluation_id for m in metrics}),
                "total_agent_executions": n,
                "total_tokens_used": sum(m.token_usage for m in metrics),
                "total_cost_usd": round(sum(m.estimated_cost_usd for m in metrics), 6),
                "success_rate": _pct(success_count, n),
                "avg_execution_time_ms": round(sum(m.execution_time_ms for m in metrics) / n),
            })
        # most active projects first
        out.sort(key=lambda p: p["total_agent_executions"], reverse=True)
        return out

    def clear_old_metrics(self, days_to_keep: Optional[int] = None) -> int:
        days = self.retention_days if days_to_keep is None else days_to_keep
        self._last_prune = self._clock()
        cutoff = self._clock() - days * SECONDS_PER_DAY
        before = len(self._records)
        self._records = [m for m in self._records if m.timestamp >= cutoff]
        removed = before - len(self._records)
        if removed:
            logger.info("Pruned %d metric records older than %d days", removed, days)
        return removed
