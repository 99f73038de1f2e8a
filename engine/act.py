# Enterprise Autopilot - 执行阶段
"""
Act 阶段

- blocked / requires_approval / escalated 不执行，后两者生成审批记录
- auto_approved / post_review 执行:
  无 depends_on 的决策并发执行（单条失败不影响其它），
  声明 depends_on 的决策按原顺序串行执行，依赖未成功则跳过
- 执行目标解析: 演化能力（只计数，不发 HTTP）→ 真实执行器（HTTP 调用）
- 调用链令牌 call_stack 贯穿执行器调用，检测环与深度上限
- post_review 成功执行后生成已批准但标记复核的审批记录
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from agents.executor import ExecutorClient
from engine.errors import ExecutorError, RecursionGuardError
from engine.models import (
    ApprovalRecord,
    ApprovalStatus,
    Capability,
    CapabilityStatus,
    Decision,
    ExecutorDefinition,
    GuardrailResult,
)
from engine.settings import AutopilotSettings
from storage.base import RAW_SOURCES, DataStore

logger = structlog.get_logger()


ESCALATION_APPROVERS = ["department_lead", "legal", "finance", "executive"]

REQUIRED_CONTEXT_ROWS = 20


@dataclass
class ActSummary:
    """执行阶段汇总"""
    decisions: list[Decision] = field(default_factory=list)
    executed: int = 0
    failed: int = 0
    credits_consumed: int = 0
    approvals_created: int = 0

    def actions(self) -> list[dict]:
        return [
            {
                "decision_id": d.id,
                "decision_type": d.decision_type,
                "agent_to_execute": d.agent_to_execute,
                "action_taken": d.action_taken,
                "execution_result": d.execution_result,
                "execution_error": d.execution_error,
                "credits_consumed": d.credits_consumed,
            }
            for d in self.decisions
            if d.is_executable
        ]


@dataclass
class _Targets:
    executors: dict[str, ExecutorDefinition]
    capabilities: dict[str, Capability]
    company_context: dict


class ActExecutor:
    """执行器调度"""

    def __init__(self, store: DataStore, executor_client: ExecutorClient, settings: AutopilotSettings):
        self.store = store
        self.executor_client = executor_client
        self.settings = settings

    async def execute(
        self,
        company_id: str,
        department: str,
        cycle_id: str,
        decisions: list[Decision],
        call_stack: Optional[list[str]] = None,
    ) -> ActSummary:
        """执行通过护栏的决策

        Args:
            decisions: 已排序、已确定处置的决策
            call_stack: 上游调用链（引擎被其它执行器调用时传入）
        """
        summary = ActSummary(decisions=decisions)
        stack = list(call_stack or [])
        if self.settings.engine_executor_name not in stack:
            stack.append(self.settings.engine_executor_name)

        for decision in decisions:
            if decision.guardrail_result in (GuardrailResult.REQUIRES_APPROVAL, GuardrailResult.ESCALATED):
                await self._submit_for_approval(decision)
                summary.approvals_created += 1

        executable = [d for d in decisions if d.is_executable]
        if not executable:
            return summary

        targets = await self._load_targets(company_id, department)

        independent = [d for d in executable if d.depends_on is None]
        dependent = [d for d in executable if d.depends_on is not None]

        await asyncio.gather(*[
            self._run_isolated(d, targets, stack) for d in independent
        ])

        for decision in self._order_dependents(dependent, decisions):
            upstream = self._resolve_dependency(decision, decisions)
            if upstream is not None and upstream.execution_result not in ("success", "capability_applied"):
                decision.action_taken = False
                decision.execution_result = "dependency_failed"
                decision.execution_error = f"Dependency {decision.depends_on} did not succeed"
                logger.info("依赖未成功，跳过", decision_id=decision.id, depends_on=decision.depends_on)
                continue
            await self._run_isolated(decision, targets, stack)

        for decision in executable:
            summary.credits_consumed += decision.credits_consumed
            if decision.action_taken:
                summary.executed += 1
                if decision.guardrail_result == GuardrailResult.POST_REVIEW:
                    await self._flag_post_review(decision)
                    summary.approvals_created += 1
            elif decision.execution_result not in ("no_executor_mapped", "dependency_failed"):
                summary.failed += 1

        logger.info(
            "执行完成",
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            executed=summary.executed,
            failed=summary.failed,
            credits=summary.credits_consumed,
        )
        return summary

    # ============================================
    # 解析
    # ============================================

    async def _load_targets(self, company_id: str, department: str) -> _Targets:
        executors = await self.store.list_executors(department)
        capabilities = await self.store.list_capabilities(
            company_id, department, statuses=[CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE],
        )
        profile = await self.store.get_company_profile(company_id)
        return _Targets(
            executors={e.code: e for e in executors},
            capabilities={c.capability_code: c for c in capabilities},
            company_context={"company": profile},
        )

    @staticmethod
    def _resolve_dependency(decision: Decision, decisions: list[Decision]) -> Optional[Decision]:
        """depends_on 可以是决策 id、决策类型或列表下标"""
        ref = decision.depends_on
        for other in decisions:
            if other is not decision and other.id == ref:
                return other
        for other in decisions:
            if other is not decision and other.decision_type == ref:
                return other
        if ref.isdigit() and int(ref) < len(decisions) and decisions[int(ref)] is not decision:
            return decisions[int(ref)]
        return None

    @classmethod
    def _order_dependents(cls, dependent: list[Decision], decisions: list[Decision]) -> list[Decision]:
        """依赖链拓扑排序，同层保持排序后的先后

        上游本身也是依赖决策时先排上游；环上的决策按原顺序，
        其上游届时未执行，会被判为 dependency_failed。
        """
        pending = {d.id for d in dependent}
        ordered: list[Decision] = []
        placed: set[str] = set()
        visiting: set[str] = set()

        def visit(decision: Decision) -> None:
            if decision.id in placed or decision.id in visiting:
                return
            visiting.add(decision.id)
            upstream = cls._resolve_dependency(decision, decisions)
            if upstream is not None and upstream.id in pending:
                visit(upstream)
            visiting.discard(decision.id)
            placed.add(decision.id)
            ordered.append(decision)

        for decision in dependent:
            visit(decision)
        return ordered

    # ============================================
    # 单条执行
    # ============================================

    async def _run_isolated(self, decision: Decision, targets: _Targets, stack: list[str]) -> None:
        """单条失败只影响自身"""
        try:
            await self._execute_one(decision, targets, stack)
        except RecursionGuardError as e:
            decision.action_taken = False
            decision.execution_result = "recursion_blocked"
            decision.execution_error = e.message
            logger.warning("执行链递归已阻止", decision_id=decision.id, **e.details)
        except Exception as e:
            decision.action_taken = False
            decision.execution_result = "error"
            decision.execution_error = str(e)
            logger.error("决策执行异常", decision_id=decision.id, error=str(e))

    async def _execute_one(self, decision: Decision, targets: _Targets, stack: list[str]) -> None:
        agent = decision.agent_to_execute
        if not agent:
            decision.action_taken = False
            decision.execution_result = "no_executor_mapped"
            return

        if agent in stack or len(stack) >= self.settings.max_call_depth:
            raise RecursionGuardError(agent, stack)

        capability = targets.capabilities.get(agent)
        if capability is not None:
            await self.store.increment_capability_usage(capability.id)
            decision.action_taken = True
            decision.execution_result = "capability_applied"
            decision.executed_at = datetime.utcnow()
            return

        executor = targets.executors.get(agent)
        if executor is None or not executor.is_active or not executor.is_implemented:
            decision.action_taken = False
            decision.execution_result = "no_executor_mapped"
            return

        await self._invoke(decision, executor, targets, stack + [executor.code])

    async def _required_context(self, decision: Decision, executor: ExecutorDefinition, targets: _Targets) -> dict:
        context = dict(targets.company_context)
        for key in executor.required_context:
            if key in RAW_SOURCES:
                context[key] = await self.store.fetch_records(
                    key, decision.company_id, limit=REQUIRED_CONTEXT_ROWS,
                )
            else:
                logger.debug("未知上下文键", executor=executor.code, key=key)
        return context

    async def _invoke(
        self,
        decision: Decision,
        executor: ExecutorDefinition,
        targets: _Targets,
        call_stack: list[str],
    ) -> None:
        payload = {
            "company_id": decision.company_id,
            "department": decision.department,
            "decision_type": decision.decision_type,
            "parameters": decision.action_parameters,
            "cycle_id": decision.cycle_id,
            "autopilot": True,
            "company_context": await self._required_context(decision, executor, targets),
            "call_stack": call_stack,
            "call_depth": len(call_stack),
        }

        start = time.monotonic()
        try:
            result = await self.executor_client.invoke(executor, payload)
            error = result.get("error")
            success = bool(result.get("success"))
            credits = executor.credits_per_use
        except ExecutorError as e:
            result, error, success, credits = {}, e.message, False, 0
        elapsed_ms = int((time.monotonic() - start) * 1000)

        await self.store.insert_usage_log({
            "company_id": decision.company_id,
            "department": decision.department,
            "agent_code": executor.code,
            "status": "completed" if success else "failed",
            "credits_consumed": credits,
            "execution_time_ms": elapsed_ms,
            "input_summary": decision.description[:500],
            "output_summary": (result.get("summary") or decision.description)[:500],
            "error_message": error,
        })

        decision.credits_consumed = credits
        decision.executed_at = datetime.utcnow()
        decision.action_taken = success
        decision.execution_result = "success" if success else "failed"
        decision.execution_error = None if success else (error or "executor reported failure")

        logger.info(
            "执行器调用",
            executor=executor.code,
            decision_id=decision.id,
            success=success,
            credits=credits,
            elapsed_ms=elapsed_ms,
        )

    # ============================================
    # 审批记录
    # ============================================

    async def _submit_for_approval(self, decision: Decision) -> None:
        escalated = decision.guardrail_result == GuardrailResult.ESCALATED
        record = ApprovalRecord(
            company_id=decision.company_id,
            record_type="decision",
            reference_id=decision.id,
            content_type=f"autopilot_{decision.department}_decision",
            content_data=decision.to_dict(),
            status=ApprovalStatus.PENDING_REVIEW,
            required_approvers=list(ESCALATION_APPROVERS) if escalated else ["department_lead"],
            notes=f"[Enterprise Autopilot {decision.department}] [Cycle {decision.cycle_id}] {decision.description}",
        )
        await self.store.insert_approval(record)
        decision.action_taken = False

    async def _flag_post_review(self, decision: Decision) -> None:
        record = ApprovalRecord(
            company_id=decision.company_id,
            record_type="decision",
            reference_id=decision.id,
            content_type=f"autopilot_{decision.department}_decision",
            content_data=decision.to_dict(),
            status=ApprovalStatus.APPROVED,
            flagged_for_review=True,
            required_approvers=["department_lead"],
            notes=f"[Post-review] {decision.description}",
        )
        await self.store.insert_approval(record)
