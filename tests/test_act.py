"""执行阶段测试"""

import pytest

from agents.executor import ExecutorClient, MockExecutorClient
from engine.act import ESCALATION_APPROVERS, ActExecutor
from engine.errors import ExecutorError
from engine.models import ApprovalStatus, Capability, CapabilityStatus, GuardrailResult

APPROVED = GuardrailResult.AUTO_APPROVED


class UnreachableExecutor(ExecutorClient):
    async def invoke(self, executor, payload):
        raise ExecutorError(f"Executor '{executor.code}' unreachable")


class ExplodingExecutor(MockExecutorClient):
    """指定执行器抛出任意异常"""

    def __init__(self, explode: str):
        super().__init__()
        self.explode = explode

    async def invoke(self, executor, payload):
        if executor.code == self.explode:
            raise RuntimeError("boom")
        return await super().invoke(executor, payload)


@pytest.fixture
def act(seeded_store, executor_client, settings) -> ActExecutor:
    return ActExecutor(seeded_store, executor_client, settings)


async def run(act, decisions, call_stack=None):
    return await act.execute("company-1", decisions[0].department, "cycle-1", decisions, call_stack)


class TestExecution:

    async def test_executor_success(self, act, seeded_store, executor_client, make_decision):
        decision = make_decision("create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT")

        summary = await run(act, [decision])

        assert decision.action_taken
        assert decision.execution_result == "success"
        assert decision.credits_consumed == 3
        assert summary.credits_consumed == 3
        assert summary.executed == 1

        code, payload = executor_client.calls[0]
        assert code == "MKT-CONTENT"
        assert payload["autopilot"] is True
        assert payload["call_stack"] == ["enterprise-autopilot-engine", "MKT-CONTENT"]
        assert payload["call_depth"] == 2

        [usage] = seeded_store.usage_log
        assert usage["agent_code"] == "MKT-CONTENT"
        assert usage["status"] == "completed"
        assert usage["credits_consumed"] == 3

    async def test_executor_reported_failure_still_costs(self, seeded_store, settings, make_decision):
        act = ActExecutor(seeded_store, MockExecutorClient(failures={"MKT-CONTENT"}), settings)
        decision = make_decision("create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT")

        summary = await run(act, [decision])

        assert not decision.action_taken
        assert decision.execution_result == "failed"
        assert decision.execution_error == "MKT-CONTENT failed"
        assert decision.credits_consumed == 3
        assert summary.failed == 1

    async def test_transport_failure_costs_nothing(self, seeded_store, settings, make_decision):
        act = ActExecutor(seeded_store, UnreachableExecutor(), settings)
        decision = make_decision("create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT")

        await run(act, [decision])

        assert decision.execution_result == "failed"
        assert decision.credits_consumed == 0
        assert seeded_store.usage_log[0]["status"] == "failed"
        assert seeded_store.usage_log[0]["credits_consumed"] == 0

    @pytest.mark.parametrize("agent", [None, "UNKNOWN-AGENT", "LEG-CONTRACT-REVIEW"])
    async def test_no_executor_mapped(self, act, executor_client, make_decision, agent):
        decision = make_decision("analyze", guardrail_result=APPROVED, agent_to_execute=agent)

        summary = await run(act, [decision])

        assert decision.execution_result == "no_executor_mapped"
        assert not decision.action_taken
        assert summary.failed == 0
        assert executor_client.calls == []

    async def test_capability_target_counts_usage(self, act, seeded_store, executor_client, make_decision):
        capability = Capability(
            company_id="company-1",
            department="marketing",
            capability_code="engagement_booster",
            status=CapabilityStatus.TRIAL,
        )
        await seeded_store.insert_capability(capability)
        decision = make_decision("analyze", guardrail_result=APPROVED, agent_to_execute="engagement_booster")

        summary = await run(act, [decision])

        assert decision.action_taken
        assert decision.execution_result == "capability_applied"
        assert summary.credits_consumed == 0
        assert executor_client.calls == []
        assert (await seeded_store.get_capability(capability.id)).execution_count == 1

    async def test_proposed_capability_is_not_a_target(self, act, seeded_store, make_decision):
        await seeded_store.insert_capability(Capability(
            company_id="company-1",
            department="marketing",
            capability_code="not_yet",
            status=CapabilityStatus.PROPOSED,
        ))
        decision = make_decision("analyze", guardrail_result=APPROVED, agent_to_execute="not_yet")

        await run(act, [decision])

        assert decision.execution_result == "no_executor_mapped"

    async def test_failures_are_isolated(self, seeded_store, settings, make_decision):
        client = ExplodingExecutor("MKT-CONTENT")
        act = ActExecutor(seeded_store, client, settings)
        broken = make_decision("create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT")
        fine = make_decision("publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER")

        summary = await run(act, [broken, fine])

        assert broken.execution_result == "error"
        assert broken.execution_error == "boom"
        assert fine.execution_result == "success"
        assert summary.executed == 1
        assert summary.failed == 1

    async def test_required_context_is_attached(self, act, seeded_store, executor_client, make_decision):
        seeded_store.add_records("crm_deals", [{"company_id": "company-1", "stage": "proposal"}])
        decision = make_decision(
            "qualify_lead", department="sales", guardrail_result=APPROVED, agent_to_execute="SAL-LEAD-QUALIFIER",
        )

        await run(act, [decision])

        _, payload = executor_client.calls[0]
        assert payload["company_context"]["crm_deals"] == [{"company_id": "company-1", "stage": "proposal"}]
        assert "company" in payload["company_context"]


class TestDependencies:

    async def test_dependent_runs_after_dependency(self, act, executor_client, make_decision):
        publish = make_decision(
            "publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER",
            action_parameters={"depends_on": "create_content"},
        )
        create = make_decision("create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT")

        await run(act, [publish, create])

        assert [code for code, _ in executor_client.calls] == ["MKT-CONTENT", "MKT-PUBLISHER"]
        assert publish.execution_result == "success"

    async def test_dependency_chain_runs_upstream_first(self, act, executor_client, make_decision):
        publish = make_decision(
            "publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER",
            action_parameters={"depends_on": "create_content"},
        )
        create = make_decision(
            "create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT",
            action_parameters={"depends_on": "analyze"},
        )
        analyze = make_decision("analyze", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT")

        await run(act, [publish, create, analyze])

        assert [code for code, _ in executor_client.calls] == ["MKT-CONTENT", "MKT-CONTENT", "MKT-PUBLISHER"]
        assert [d.execution_result for d in (analyze, create, publish)] == ["success"] * 3

    async def test_dependency_cycle_is_skipped(self, act, executor_client, make_decision):
        first = make_decision(
            "publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER",
            action_parameters={"depends_on": "create_content"},
        )
        second = make_decision(
            "create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT",
            action_parameters={"depends_on": "publish"},
        )

        await run(act, [first, second])

        assert first.execution_result == "dependency_failed"
        assert second.execution_result == "dependency_failed"
        assert executor_client.calls == []

    async def test_failed_dependency_skips_dependent(self, seeded_store, settings, make_decision):
        client = MockExecutorClient(failures={"MKT-CONTENT"})
        act = ActExecutor(seeded_store, client, settings)
        create = make_decision("create_content", guardrail_result=APPROVED, agent_to_execute="MKT-CONTENT")
        publish = make_decision(
            "publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER",
            action_parameters={"depends_on": create.id},
        )

        summary = await run(act, [create, publish])

        assert publish.execution_result == "dependency_failed"
        assert not publish.action_taken
        assert [code for code, _ in client.calls] == ["MKT-CONTENT"]
        assert summary.failed == 1

    async def test_blocked_dependency_skips_dependent(self, act, executor_client, make_decision):
        create = make_decision("create_content", guardrail_result=GuardrailResult.BLOCKED)
        publish = make_decision(
            "publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER",
            action_parameters={"depends_on": "0"},
        )

        await run(act, [create, publish])

        assert publish.execution_result == "dependency_failed"
        assert executor_client.calls == []


class TestCallChain:

    async def test_cycle_in_call_stack_is_blocked(self, act, executor_client, make_decision):
        decision = make_decision("publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER")

        await run(act, [decision], call_stack=["MKT-PUBLISHER"])

        assert decision.execution_result == "recursion_blocked"
        assert executor_client.calls == []

    async def test_depth_limit(self, act, executor_client, make_decision):
        decision = make_decision("publish", guardrail_result=APPROVED, agent_to_execute="MKT-PUBLISHER")

        await run(act, [decision], call_stack=["ORCHESTRATOR", "PLANNER"])

        assert decision.execution_result == "recursion_blocked"
        assert executor_client.calls == []


class TestApprovals:

    async def test_requires_approval_creates_pending_record(self, act, seeded_store, executor_client, make_decision):
        decision = make_decision(
            "publish", guardrail_result=GuardrailResult.REQUIRES_APPROVAL, agent_to_execute="MKT-PUBLISHER",
        )

        summary = await run(act, [decision])

        [record] = seeded_store.approvals
        assert record.status == ApprovalStatus.PENDING_REVIEW
        assert record.reference_id == decision.id
        assert record.required_approvers == ["department_lead"]
        assert not decision.action_taken
        assert executor_client.calls == []
        assert summary.approvals_created == 1

    async def test_escalated_requires_all_approvers(self, act, seeded_store, make_decision):
        decision = make_decision("adjust_campaigns", guardrail_result=GuardrailResult.ESCALATED)

        await run(act, [decision])

        [record] = seeded_store.approvals
        assert record.required_approvers == ESCALATION_APPROVERS

    async def test_post_review_flags_executed_decision(self, act, seeded_store, make_decision):
        decision = make_decision(
            "publish", guardrail_result=GuardrailResult.POST_REVIEW, agent_to_execute="MKT-PUBLISHER",
        )

        await run(act, [decision])

        [record] = seeded_store.approvals
        assert record.status == ApprovalStatus.APPROVED
        assert record.flagged_for_review

    async def test_blocked_is_never_executed(self, act, seeded_store, executor_client, make_decision):
        decision = make_decision("publish", guardrail_result=GuardrailResult.BLOCKED, agent_to_execute="MKT-PUBLISHER")

        summary = await run(act, [decision])

        assert executor_client.calls == []
        assert seeded_store.approvals == []
        assert summary.actions() == []
