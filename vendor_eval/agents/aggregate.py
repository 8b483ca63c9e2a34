# vendor_eval/agents/aggregate.py
"""
Consensus aggregation of specialist results.

Purpose:
Combine one SpecialistResult per role into a single VendorEvaluation.

- Numeric scores: each score is averaged over the specialists that succeeded
  AND reported it. Nobody reporting a sub-score leaves it unset (None);
  overall falls back to 0.
- Role insights: every configured role gets an entry; failed specialists
  contribute their fallback insights, missing roles get the canned ones.
- Status vote: risk-flagged when more than a third of the specialists flag
  risk, recommended when more than half recommend, else under-review.
  With six specialists that is ">2" and ">3".
- Rationale: role-labelled rationales of successful specialists, plus a note
  when some evaluations were incomplete.
"""
from __future__ import annotations
import logging
import math
from fractions import Fraction
from typing import Dict, List, Optional, Sequence

from vendor_eval.agents.prompts import fallback_insights
from vendor_eval.models import (
    ROLES,
    DetailedScores,
    SectionCompliance,
    SpecialistFailure,
    SpecialistResult,
    SpecialistSuccess,
    StandardData,
    VendorEvaluation,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Vote thresholds as fractions of the specialist count
RISK_FLAG_SHARE = Fraction(1, 3)
RECOMMEND_SHARE = Fraction(1, 2)

DEFAULT_RATIONALE = "Multi-agent evaluation completed"
DEFAULT_COST = "Not specified"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def average_score(results: Sequence[SpecialistResult], key: str) -> Optional[int]:
    """Mean of `key` over successful results that reported it; None when nobody did."""
    values = []
    for r in results:
        if not isinstance(r, SpecialistSuccess):
            continue
        value = getattr(r.scores, key)
        if value is not None:
            values.append(value)
    if not values:
        return None
    return _round_half_up(sum(values) / len(values))


def consensus_status(results: Sequence[SpecialistResult]) -> str:
    total = len(results)
    risk_flagged = sum(1 for r in results if r.status == "risk-flagged")
    recommended = sum(1 for r in results if r.status == "recommended")
    if risk_flagged > total * RISK_FLAG_SHARE:
        return "risk-flagged"
    if recommended > total * RECOMMEND_SHARE:
        return "recommended"
    return "under-review"


def combined_rationale(results: Sequence[SpecialistResult]) -> str:
    parts = [
        f"{r.role.capitalize()}: {r.rationale}"
        for r in results
        if isinstance(r, SpecialistSuccess) and r.rationale
    ]
    rationale = " ".join(parts) or DEFAULT_RATIONALE

    failed = sum(1 for r in results if isinstance(r, SpecialistFailure))
    if failed:
        rationale += (f" (Note: {failed} of {len(results)} agent evaluations incomplete - "
                      "review role-specific insights for details)")
    return rationale


def role_insights(results: Sequence[SpecialistResult], roles: Sequence[str] = ROLES) -> Dict[str, List[str]]:
    by_role = {r.role: r for r in results}
    out: Dict[str, List[str]] = {}
    for role in roles:
        result = by_role.get(role)
        if result is None or (not result.insights and isinstance(result, SpecialistFailure)):
            out[role] = fallback_insights(role)
        else:
            out[role] = list(result.insights)
    return out


def section_compliance(standard_data: Optional[StandardData], compliance: Optional[int]) -> List[SectionCompliance]:
    if not standard_data or not standard_data.tagged_section_ids:
        return []
    shown = f"{compliance}/100" if compliance is not None else "no compliance score reported"
    return [
        SectionCompliance(
            section_id=s.id,
            section_name=s.name,
            score=compliance,
            findings=(f"Multi-agent evaluation ({shown}). All specialist agents evaluated vendor compliance "
                      f"against \"{s.name}\". See role-specific insights for detailed findings."),
        )
        for s in standard_data.tagged_sections()
    ]


def aggregate(results: Sequence[SpecialistResult],
              cost: Optional[str] = None,
              standard_data: Optional[StandardData] = None,
              roles: Sequence[str] = ROLES) -> VendorEvaluation:
    overall = average_score(results, "overall")
    compliance = average_score(results, "compliance")

    evaluation = VendorEvaluation(
        overall_score=overall if overall is not None else 0,
        functional_fit=average_score(results, "functional_fit"),
        technical_fit=average_score(results, "technical_fit"),
        delivery_risk=average_score(results, "delivery_risk"),
        compliance=compliance,
        cost=cost or DEFAULT_COST,
        status=consensus_status(results),
        rationale=combined_rationale(results),
        role_insights=role_insights(results, roles),
        detailed_scores=DetailedScores(
            integration=average_score(results, "integration"),
            support=average_score(results, "support"),
            scalability=average_score(results, "scalability"),
            documentation=average_score(results, "documentation"),
        ),
        section_compliance=section_compliance(standard_data, compliance),
    )

    logger.info("Evaluation result: overall=%s functional=%s technical=%s risk=%s compliance=%s status=%s",
                evaluation.overall_score, evaluation.functional_fit, evaluation.technical_fit,
                evaluation.delivery_risk, evaluation.compliance, evaluation.status)
    return evaluation
