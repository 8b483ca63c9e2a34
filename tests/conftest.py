import asyncio
import json

import pytest

from vendor_eval.models import ProposalAnalysis, RequirementAnalysis, StandardData, StandardSection


@pytest.fixture
def requirements():
    return RequirementAnalysis(
        scope="CRM Replacement",
        technical_requirements=[
            "SSO via SAML 2.0",
            "EU data residency",
            "REST API with webhooks",
            "99.9% availability SLA",
            "Encryption at rest",
            "Audit logging",
        ],
        success_metrics=["Migration complete within 6 months"],
    )


@pytest.fixture
def proposal():
    return ProposalAnalysis(
        vendor_name="Acme",
        capabilities=["Sales pipeline", "Case management"],
        technical_approach="Multi-tenant SaaS on AWS eu-central-1 with managed migration.",
        integrations=["Okta", "SAP"],
        security="ISO 27001, SOC 2 Type II",
        support="24/7 premium support",
        cost_structure="$120k/year subscription",
        timeline="5 months",
    )


@pytest.fixture
def standard_data():
    return StandardData(
        name="Acme Corp Vendor Security Standard",
        sections=[
            StandardSection(id="s1", name="Identity and Access", description="SSO and MFA are mandatory"),
            StandardSection(id="s2", name="Data Residency"),
            StandardSection(id="s3", name="Physical Security"),
        ],
        tagged_section_ids=["s1", "s2"],
    )


class FakeLLM:
    """Stands in for call_llm; answers per role from a dict keyed by the system prompt's role label."""

    def __init__(self, responses=None, default=None, delay=0.0, tokens=500):
        self.responses = responses or {}
        self.default = default
        self.delay = delay
        self.tokens = tokens
        self.calls = []

    def _role_for(self, system):
        from vendor_eval.agents.prompts import AGENT_PROMPTS
        for role, prompt in AGENT_PROMPTS.items():
            if prompt["system"] == system:
                return role
        return None

    async def __call__(self, system, user, model=None, temperature=None, **kwargs):
        role = self._role_for(system)
        self.calls.append({"role": role, "system": system, "user": user, "model": model, "temperature": temperature})
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = self.responses.get(role, self.default)
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, str):
            return {"text": answer, "structured": None, "total_tokens": self.tokens}
        return {"text": json.dumps(answer), "structured": answer, "total_tokens": self.tokens}


@pytest.fixture
def fake_llm():
    return FakeLLM
