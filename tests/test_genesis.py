"""能力演化测试"""

import json
from datetime import timedelta

import pytest

from agents.llm import MockLLMClient
from engine.errors import OracleError
from engine.genesis import (
    AutoTrial,
    CapabilityGenesis,
    GapReport,
    PendingReview,
    RequiresApproval,
    decide_governance,
)
from engine.lifecycle import CapabilityLifecycle
from engine.models import (
    ApprovalRecord,
    ApprovalStatus,
    Capability,
    CapabilityStatus,
    GuardrailResult,
    RiskLevel,
)

PROPOSALS = [
    {
        "code": "stalled_deal_radar",
        "name": "Stalled Deal Radar",
        "description": "Detects deals without activity",
        "decision_types": ["alert_stalled", "not_a_sales_type"],
        "risk_level": "low",
        "auto_activate": True,
    },
    {
        "code": "lead_scoring",
        "name": "Lead Scoring",
        "decision_types": ["qualify_lead"],
        "risk_level": "medium",
    },
    {
        "code": "auto_proposals",
        "name": "Automatic Proposals",
        "decision_types": ["create_proposal"],
        "risk_level": "high",
        "auto_activate": True,
    },
    {"code": "Bad Code!", "name": "Rejected"},
]


def genesis_for(store, audit, settings, llm) -> CapabilityGenesis:
    return CapabilityGenesis(store, llm, CapabilityLifecycle(store, audit, settings), settings)


def two_gaps() -> GapReport:
    return GapReport(
        unmapped_executors=[{"decision_type": "qualify_lead", "count": 3}],
        recurring_blocks=[{"decision_type": "create_proposal", "block_reason": "Rate limit", "count": 4}],
    )


@pytest.mark.parametrize("risk, auto, expected", [
    (RiskLevel.LOW, True, AutoTrial),
    (RiskLevel.LOW, False, PendingReview),
    (RiskLevel.MEDIUM, True, PendingReview),
    (RiskLevel.HIGH, True, RequiresApproval),
    (RiskLevel.CRITICAL, False, RequiresApproval),
])
def test_decide_governance(risk, auto, expected):
    assert isinstance(decide_governance(risk, auto), expected)


class TestDetectGaps:

    async def test_gap_categories(self, store, audit, settings, make_decision, now):
        decisions = [
            make_decision("qualify_lead", department="sales", guardrail_result=GuardrailResult.AUTO_APPROVED,
                          execution_result="no_executor_mapped"),
            make_decision("qualify_lead", department="sales", guardrail_result=GuardrailResult.POST_REVIEW,
                          execution_result="no_executor_mapped"),
            make_decision("alert_stalled", department="sales", guardrail_result=GuardrailResult.AUTO_APPROVED,
                          action_taken=True),
        ] + [
            make_decision("create_proposal", department="sales", guardrail_result=GuardrailResult.BLOCKED,
                          guardrail_details="Rate limit reached")
            for _ in range(3)
        ]
        await store.insert_decisions(decisions)
        await store.insert_intelligence({
            "company_id": "company-1",
            "source": "regulatory",
            "data": {"signals": [
                {"title": "New tax", "impact": "high", "category": "threat"},
                {"title": "Grant", "impact": "high", "category": "opportunity"},
            ]},
            "fetched_at": now - timedelta(days=1),
            "expires_at": now + timedelta(hours=1),
        })

        report = await genesis_for(store, audit, settings, MockLLMClient()).detect_gaps("company-1", "sales", now)

        assert report.unmapped_executors == [{"decision_type": "qualify_lead", "count": 2}]
        assert report.recurring_blocks == [
            {"decision_type": "create_proposal", "block_reason": "Rate limit reached", "count": 3},
        ]
        assert report.unhandled_signals == [{"source": "regulatory", "signal_count": 1}]
        assert report.total == 3

    async def test_execution_failures_are_not_unmapped(self, store, audit, settings, make_decision, now):
        await store.insert_decisions([
            make_decision("qualify_lead", department="sales", guardrail_result=GuardrailResult.AUTO_APPROVED,
                          agent_to_execute="SAL-LEAD-QUALIFIER", execution_result=result)
            for result in ("failed", "recursion_blocked", "dependency_failed", "error")
        ])

        report = await genesis_for(store, audit, settings, MockLLMClient()).detect_gaps("company-1", "sales", now)

        assert report.unmapped_executors == []

    async def test_old_signals_are_ignored(self, store, audit, settings, now):
        await store.insert_intelligence({
            "company_id": "company-1",
            "source": "regulatory",
            "data": {"signals": [{"title": "Old", "impact": "high", "category": "threat"}]},
            "fetched_at": now - timedelta(days=10),
            "expires_at": now - timedelta(days=9),
        })

        report = await genesis_for(store, audit, settings, MockLLMClient()).detect_gaps("company-1", "sales", now)

        assert report.unhandled_signals == []


class TestPropose:

    async def test_below_threshold_does_not_call_oracle(self, store, audit, settings, now):
        llm = MockLLMClient()
        report = GapReport(unmapped_executors=[{"decision_type": "qualify_lead", "count": 2}])

        assert await genesis_for(store, audit, settings, llm).propose("company-1", "sales", report, now=now) == ([], [])
        assert llm.calls == []

    async def test_governance_by_risk(self, store, audit, settings, now):
        llm = MockLLMClient(responses=[json.dumps(PROPOSALS)])

        inserted, transitions = await genesis_for(store, audit, settings, llm).propose(
            "company-1", "sales", two_gaps(), "cycle-1", now,
        )

        assert inserted == ["stalled_deal_radar", "lead_scoring", "auto_proposals"]
        caps = {c.capability_code: c for c in store.capabilities}

        assert caps["stalled_deal_radar"].status == CapabilityStatus.TRIAL
        assert caps["stalled_deal_radar"].decision_types == ["alert_stalled"]
        assert caps["stalled_deal_radar"].trial_expires_at == now + timedelta(days=7)
        assert transitions == [{
            "capability_code": "stalled_deal_radar", "from": "proposed", "to": "trial",
            "reason": "Low-risk capability auto-activated for trial",
        }]

        assert caps["lead_scoring"].status == CapabilityStatus.PROPOSED
        assert caps["auto_proposals"].status == CapabilityStatus.PROPOSED

        approvals = {a.reference_id: a for a in store.approvals}
        pending = approvals[caps["lead_scoring"].id]
        assert pending.status == ApprovalStatus.PENDING_REVIEW
        assert not pending.requires_sign_off
        draft = approvals[caps["auto_proposals"].id]
        assert draft.status == ApprovalStatus.DRAFT
        assert draft.requires_sign_off
        assert draft.required_approvers == ["department_lead", "executive"]
        assert caps["stalled_deal_radar"].id not in approvals

    async def test_existing_codes_are_skipped(self, store, audit, settings, now):
        await store.insert_capability(Capability(
            company_id="company-1", department="sales", capability_code="lead_scoring",
        ))
        llm = MockLLMClient(responses=[json.dumps(PROPOSALS[1:2])])

        inserted, _ = await genesis_for(store, audit, settings, llm).propose("company-1", "sales", two_gaps(), now=now)

        assert inserted == []
        assert len(store.capabilities) == 1

    async def test_oracle_failure_proposes_nothing(self, store, audit, settings, now):
        llm = MockLLMClient(responses=[OracleError("down")])

        result = await genesis_for(store, audit, settings, llm).propose("company-1", "sales", two_gaps(), now=now)

        assert result == ([], [])
        assert store.capabilities == []


class TestBridge:

    async def test_approved_capability_enters_trial(self, store, audit, settings, now):
        cap = Capability(company_id="company-1", department="sales", capability_code="lead_scoring")
        await store.insert_capability(cap)
        approval = ApprovalRecord(
            company_id="company-1", record_type="capability", reference_id=cap.id,
            status=ApprovalStatus.APPROVED,
        )
        await store.insert_approval(approval)

        [transition] = await genesis_for(store, audit, settings, MockLLMClient()).bridge_approvals(
            "company-1", now, "cycle-1",
        )

        assert transition["from"] == "proposed"
        assert transition["to"] == "trial"
        assert (await store.get_capability(cap.id)).status == CapabilityStatus.TRIAL
        assert store.approvals[0].status == ApprovalStatus.APPLIED

    async def test_approval_for_non_proposed_is_consumed(self, store, audit, settings, now):
        cap = Capability(
            company_id="company-1", department="sales", capability_code="lead_scoring",
            status=CapabilityStatus.DEPRECATED,
        )
        await store.insert_capability(cap)
        await store.insert_approval(ApprovalRecord(
            company_id="company-1", record_type="capability", reference_id=cap.id,
            status=ApprovalStatus.APPROVED,
        ))
        genesis = genesis_for(store, audit, settings, MockLLMClient())

        assert await genesis.bridge_approvals("company-1", now) == []
        assert store.approvals[0].status == ApprovalStatus.APPLIED
        assert await genesis.bridge_approvals("company-1", now) == []

    async def test_decision_approvals_are_ignored(self, store, audit, settings, now):
        await store.insert_approval(ApprovalRecord(
            company_id="company-1", record_type="decision", reference_id="d-1",
            status=ApprovalStatus.APPROVED,
        ))

        assert await genesis_for(store, audit, settings, MockLLMClient()).bridge_approvals("company-1", now) == []
        assert store.approvals[0].status == ApprovalStatus.APPROVED
