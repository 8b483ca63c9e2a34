# vendor_eval/agents/prompts.py
"""
Role prompts for the six specialist evaluators.

Each role has a system message and a user template with {requirements},
{proposal} and {vendor_name} placeholders. Every template asks for the same
JSON envelope: insights, scores, rationale and an optional status.
"""
from __future__ import annotations
from typing import Dict

RESPONSE_FORMAT = """Respond with a JSON object:
{{
  "insights": ["4-6 concise, specific findings"],
  "scores": {{
    "overall": 0-100,
{score_lines}
  }},
  "rationale": "2-3 sentences explaining the scores",
  "status": "recommended" | "under-review" | "risk-flagged"
}}
Only include the sub-scores listed above. Omit "status" if you are unsure."""


def _response_format(*score_lines: str) -> str:
    return RESPONSE_FORMAT.format(score_lines="\n".join(f"    {line}" for line in score_lines))


USER_TEMPLATE = """Evaluate the proposal from {vendor_name} against the buyer requirements.

REQUIREMENTS:
{requirements}

VENDOR PROPOSAL:
{proposal}

"""

AGENT_PROMPTS: Dict[str, Dict[str, str]] = {
    "delivery": {
        "system": (
            "You are an experienced Delivery Manager evaluating vendor proposals for enterprise "
            "technology programmes. You focus on delivery timelines, resourcing, milestones, "
            "dependencies and execution risk. A high deliveryRisk score means HIGH risk."
        ),
        "user": USER_TEMPLATE + _response_format(
            '"deliveryRisk": 0-100 (higher = riskier),',
            '"functionalFit": 0-100,',
            '"support": 0-100',
        ),
    },
    "product": {
        "system": (
            "You are a Product Manager assessing how well a vendor proposal covers the functional "
            "requirements, user experience and roadmap alignment of the buyer."
        ),
        "user": USER_TEMPLATE + _response_format(
            '"functionalFit": 0-100,',
            '"technicalFit": 0-100',
        ),
    },
    "architecture": {
        "system": (
            "You are a Solution Architect reviewing a vendor proposal for architectural soundness, "
            "integration approach, scalability and security posture."
        ),
        "user": USER_TEMPLATE + _response_format(
            '"technicalFit": 0-100,',
            '"integration": 0-100,',
            '"scalability": 0-100,',
            '"compliance": 0-100',
        ),
    },
    "engineering": {
        "system": (
            "You are an Engineering Lead judging the vendor's APIs, SDKs, documentation quality, "
            "developer experience and technical support model."
        ),
        "user": USER_TEMPLATE + _response_format(
            '"technicalFit": 0-100,',
            '"integration": 0-100,',
            '"documentation": 0-100,',
            '"support": 0-100',
        ),
    },
    "procurement": {
        "system": (
            "You are a Procurement specialist assessing total cost of ownership, pricing model, "
            "contract terms, SLAs and commercial risk."
        ),
        "user": USER_TEMPLATE + _response_format(
            '"deliveryRisk": 0-100 (higher = riskier),',
            '"compliance": 0-100,',
            '"support": 0-100',
        ),
    },
    "security": {
        "system": (
            "You are a Cybersecurity assessor evaluating the vendor's security controls, data "
            "protection, certifications and regulatory compliance."
        ),
        "user": USER_TEMPLATE + _response_format(
            '"compliance": 0-100,',
            '"technicalFit": 0-100',
        ),
    },
}

FALLBACK_INSIGHTS: Dict[str, list] = {
    "delivery": [
        "Timeline and resource assessment requires manual review",
        "Risk analysis pending - recommend scheduling follow-up evaluation",
        "Dependencies and milestones need stakeholder validation",
        "Delivery approach should be verified against similar past projects",
    ],
    "product": [
        "Product requirements coverage needs detailed mapping",
        "Feature parity analysis requires domain expert review",
        "User experience impact should be validated with stakeholders",
        "Product roadmap alignment requires business owner input",
    ],
    "architecture": [
        "Architecture patterns require technical deep-dive review",
        "Integration approach needs enterprise architect validation",
        "Scalability and security posture require dedicated assessment",
        "Technical debt and migration path need detailed planning",
    ],
    "engineering": [
        "API and SDK quality require hands-on technical evaluation",
        "Documentation completeness needs engineering team review",
        "Developer experience should be validated through POC",
        "Technical support model requires further investigation",
    ],
    "procurement": [
        "TCO analysis requires detailed cost breakdown and validation",
        "Contract terms and SLAs need legal and procurement review",
        "Pricing model should be compared against market benchmarks",
        "Commercial risk assessment requires stakeholder input",
    ],
    "security": [
        "Security and compliance posture requires detailed audit",
        "Data protection mechanisms need security team validation",
        "Certification and standards compliance requires verification",
        "Risk assessment and remediation plan need expert review",
    ],
}


def fallback_insights(role: str) -> list:
    return list(FALLBACK_INSIGHTS[role])
