"""自动驾驶周期端到端测试（内存存储 + Mock 客户端）"""

import json
from datetime import timedelta

import pytest

from agents.llm import MockLLMClient
from engine.cycle import AutopilotEngine
from engine.errors import OracleError
from engine.models import ApprovalStatus, Capability, CapabilityStatus, GuardrailResult, PhaseStatus

ALL_PHASES = ["preflight", "sense", "think", "guard", "act", "learn", "genesis", "lifecycle"]


@pytest.fixture
def make_engine(seeded_store, executor_client, settings):
    def _make(*responses) -> AutopilotEngine:
        return AutopilotEngine(seeded_store, MockLLMClient(list(responses)), executor_client, settings)
    return _make


@pytest.fixture
def sales_store(seeded_store, company_id, now):
    seeded_store.add_records("crm_deals", [
        {"company_id": company_id, "stage": "negotiation", "value": 5000, "updated_at": now - timedelta(days=10)},
        {"company_id": company_id, "stage": "proposal", "value": 2000, "updated_at": now - timedelta(days=1)},
    ])
    return seeded_store


@pytest.fixture
def marketing_store(seeded_store, company_id, now):
    seeded_store.add_records("social_connections", [
        {"company_id": company_id, "platform": "instagram", "is_active": True},
    ])
    seeded_store.add_records("instagram_posts", [
        {"company_id": company_id, "like_count": 20 + i, "comment_count": 2, "created_at": now - timedelta(days=i * 4)}
        for i in range(6)
    ])
    return seeded_store


def oracle(*decisions) -> str:
    return "Here is my analysis:\n" + json.dumps(list(decisions))


class TestDepartmentCycle:

    async def test_marketing_without_data_aborts_cleanly(self, make_engine, seeded_store, make_config, now):
        config = make_config("marketing")
        seeded_store.add_department_config(config)
        engine = make_engine()

        result = await engine.run_department_cycle(config, now=now)

        assert result.success
        assert result.aborted
        assert result.abort_reason.startswith("needs_action")
        assert set(result.missing) == {"connected_channels", "imported_posts"}
        assert seeded_store.decisions == []
        assert engine.llm.calls == []
        [log] = seeded_store.execution_log
        assert log.phase == "preflight"
        assert log.status == PhaseStatus.ABORTED
        assert seeded_store.configs[0].last_execution_at is None
        assert result.to_dict()["aborted"] is True

    async def test_sales_cycle_end_to_end(self, make_engine, sales_store, executor_client, make_config, now):
        config = make_config("sales")
        sales_store.add_department_config(config)
        engine = make_engine(oracle(
            {
                "decision_type": "qualify_lead",
                "priority": "high",
                "risk_level": "low",
                "description": "Qualify the inbound leads from the webinar",
                "agent_to_execute": "SAL-LEAD-QUALIFIER",
                "expected_impact": {"metric": "conversion", "estimated_change": "+8%"},
            },
            {
                "decision_type": "alert_stalled",
                "priority": "medium",
                "description": "Alert owners about the negotiation deal idle for 10 days",
            },
            {
                "decision_type": "create_proposal",
                "risk_level": "high",
                "description": "Send a proposal to the proposal-stage deal",
            },
            {"decision_type": "publish", "description": "Not a sales decision"},
        ))

        result = await engine.run_department_cycle(config, now=now)

        assert result.success and not result.aborted
        assert result.total_decisions == 3
        assert result.passed == 2
        assert result.pending_review == 1
        assert result.blocked == 0
        assert result.credits_consumed == 2

        assert [code for code, _ in executor_client.calls] == ["SAL-LEAD-QUALIFIER"]
        assert len(sales_store.decisions) == 3
        assert all(d.guardrail_result is not None for d in sales_store.decisions)
        assert [m.decision_type for m in sales_store.memory] == ["qualify_lead"]
        [approval] = sales_store.approvals
        assert approval.status == ApprovalStatus.PENDING_REVIEW

        assert [log.phase for log in sales_store.execution_log] == ALL_PHASES
        assert sales_store.configs[0].last_execution_at == now
        assert sales_store.configs[0].total_cycles_run == 1

    async def test_human_approval_holds_publish(self, make_engine, marketing_store, executor_client, make_config, now):
        config = make_config("marketing", require_human_approval=True)
        marketing_store.add_department_config(config)
        engine = make_engine(oracle({
            "decision_type": "publish",
            "risk_level": "medium",
            "description": "Publish the customer story carousel",
            "agent_to_execute": "MKT-PUBLISHER",
        }))

        result = await engine.run_department_cycle(config, now=now)

        assert result.pending_review == 1
        [decision] = marketing_store.decisions
        assert decision.guardrail_result == GuardrailResult.REQUIRES_APPROVAL
        assert decision.risk_level.value == "high"
        assert not decision.action_taken
        [approval] = marketing_store.approvals
        assert approval.status == ApprovalStatus.PENDING_REVIEW
        assert approval.reference_id == decision.id
        assert executor_client.calls == []

    async def test_daily_credit_limit_blocks_everything(
        self, make_engine, sales_store, executor_client, make_config, company_id, now,
    ):
        await sales_store.insert_usage_log({
            "company_id": company_id, "department": "marketing", "credits_consumed": 10,
            "created_at": now - timedelta(hours=1),
        })
        config = make_config("sales", max_credits_per_cycle=10)
        sales_store.add_department_config(config)
        engine = make_engine(oracle(
            {"decision_type": "qualify_lead", "risk_level": "low", "description": "Qualify leads",
             "agent_to_execute": "SAL-LEAD-QUALIFIER"},
            {"decision_type": "forecast_pipeline", "description": "Forecast next quarter"},
        ))

        result = await engine.run_department_cycle(config, now=now)

        assert result.blocked == 2
        assert result.passed == 0
        assert result.credits_consumed == 0
        assert all("credit limit" in d.guardrail_details for d in sales_store.decisions)
        assert executor_client.calls == []

    async def test_oracle_outage_fails_cycle(self, make_engine, sales_store, make_config, now):
        config = make_config("sales")
        sales_store.add_department_config(config)
        engine = make_engine(OracleError("LLM gateway error: overloaded"))

        result = await engine.run_department_cycle(config, now=now)

        assert not result.success
        assert "overloaded" in result.error
        assert sales_store.decisions == []
        assert sales_store.execution_log[-1].phase == "error"
        assert sales_store.execution_log[-1].status == PhaseStatus.FAILED
        assert [e.event_type for e in sales_store.audit_events] == ["cycle_failed"]
        assert sales_store.configs[0].last_execution_at is None

    async def test_unparseable_oracle_output_yields_no_decisions(self, make_engine, sales_store, make_config, now):
        config = make_config("sales")
        sales_store.add_department_config(config)
        engine = make_engine("I am not sure what to do this time.")

        result = await engine.run_department_cycle(config, now=now)

        assert result.success
        assert result.total_decisions == 0
        assert sales_store.decisions == []
        assert sales_store.configs[0].total_cycles_run == 1

    async def test_storage_failure_never_raises(self, make_engine, sales_store, make_config, now, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(sales_store, "count_records", broken)
        config = make_config("sales")

        result = await make_engine().run_department_cycle(config, now=now)

        assert not result.success
        assert result.error == "connection reset"


class TestRun:

    async def test_no_active_departments(self, make_engine):
        result = await make_engine().run()

        assert result == {"success": True, "message": "No active departments", "results": []}

    async def test_frequency_gating(self, make_engine, sales_store, make_config, company_id, now):
        sales_store.add_department_config(make_config("sales", last_execution_at=now - timedelta(hours=1)))
        engine = make_engine()

        gated = await engine.run(now=now)
        manual = await engine.run(company_id=company_id, now=now)

        assert gated["message"] == "No active departments"
        assert manual["departments_processed"] == 1
        assert manual["results"][0]["department"] == "sales"

    async def test_disabled_departments_are_skipped(self, make_engine, sales_store, make_config, company_id, now):
        sales_store.add_department_config(make_config("sales", enabled=False))

        result = await make_engine().run(company_id=company_id, now=now)

        assert result["results"] == []

    async def test_department_filter(self, make_engine, sales_store, make_config, company_id, now):
        sales_store.add_department_config(make_config("sales"))
        sales_store.add_department_config(make_config("marketing"))

        result = await make_engine().run(company_id=company_id, department="marketing", now=now)

        [department] = result["results"]
        assert department["department"] == "marketing"
        assert department["aborted"] is True

    async def test_seeded_capabilities_are_triggered_before_cycles(
        self, make_engine, sales_store, make_config, company_id, now,
    ):
        cap = Capability(
            company_id=company_id,
            department="sales",
            capability_code="pipeline_hygiene",
            status=CapabilityStatus.SEEDED,
            source="seeded",
            trigger_condition={"min_deals": 2},
        )
        await sales_store.insert_capability(cap)
        sales_store.add_department_config(make_config("sales"))

        result = await make_engine().run(now=now)

        assert result["departments_processed"] == 1
        saved = await sales_store.get_capability(cap.id)
        assert saved.status == CapabilityStatus.TRIAL
        assert saved.trial_expires_at == now + timedelta(days=7)
