# Enterprise Autopilot - 周期调度
"""
自动驾驶周期

单个 (公司, 部门) 周期严格按顺序执行:
Preflight → Sense → (External Intelligence ∥ Memory) → Think → Guard → Act
→ Learn → Genesis → Bridge → Lifecycle

- CycleAborted: 写入 aborted 日志，返回 aborted 结果，不记录决策
- 其它异常: 写入 failed 日志与 cycle_failed 审计事件，返回 success=false
- 触发入口永远返回结构化结果，不向调用方抛出异常
"""

import asyncio
import time
from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog

from agents.executor import ExecutorClient
from agents.llm import LLMClient
from engine.act import ActExecutor
from engine.audit import AuditLogger
from engine.config_store import ConfigStore
from engine.errors import CycleAborted
from engine.genesis import CapabilityGenesis
from engine.guard import GuardEngine
from engine.intelligence import ExternalIntelligence
from engine.learn import Learner
from engine.lifecycle import CapabilityLifecycle
from engine.memory import MemoryStore, context_hash
from engine.models import CycleResult, DepartmentConfig, GuardrailResult, PhaseStatus
from engine.preflight import PreflightChecker
from engine.sense import SenseAggregator
from engine.settings import AutopilotSettings
from engine.think import DecisionGenerator
from storage.base import DataStore

logger = structlog.get_logger()


PASSED = (GuardrailResult.AUTO_APPROVED, GuardrailResult.POST_REVIEW)
PENDING = (GuardrailResult.REQUIRES_APPROVAL, GuardrailResult.ESCALATED)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class AutopilotEngine:
    """企业自动驾驶引擎

    所有依赖通过构造函数注入，测试中替换为内存实现。
    """

    def __init__(
        self,
        store: DataStore,
        llm: LLMClient,
        executor_client: ExecutorClient,
        settings: Optional[AutopilotSettings] = None,
    ):
        self.store = store
        self.llm = llm
        self.executor_client = executor_client
        self.settings = settings or AutopilotSettings()

        self.audit = AuditLogger(store)
        self.configs = ConfigStore(store, self.settings)
        self.preflight = PreflightChecker(store)
        self.sense = SenseAggregator(store, self.settings, executor_client)
        self.intelligence = ExternalIntelligence(store, llm, self.settings)
        self.memory = MemoryStore(store, self.settings)
        self.think = DecisionGenerator(store, llm, self.settings)
        self.guard = GuardEngine(store, self.audit)
        self.act = ActExecutor(store, executor_client, self.settings)
        self.learner = Learner(store, llm, self.settings)
        self.lifecycle = CapabilityLifecycle(store, self.audit, self.settings)
        self.genesis = CapabilityGenesis(store, llm, self.lifecycle, self.settings)

    async def close(self) -> None:
        await self.llm.close()
        await self.executor_client.close()
        await self.store.close()

    # ============================================
    # 触发入口
    # ============================================

    async def run(
        self,
        company_id: Optional[str] = None,
        department: Optional[str] = None,
        call_stack: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """处理所有到期（或指定）的部门周期

        Args:
            company_id: 指定公司，绕过频率门控
            department: 只运行该部门
            call_stack: 上游调用链
            now: 当前时间（测试注入）

        Returns:
            {"success", "departments_processed", "results"}
        """
        configs = await self.configs.eligible_configs(company_id, department, now)
        if not configs:
            return {"success": True, "message": "No active departments", "results": []}

        by_company: dict[str, list[DepartmentConfig]] = {}
        for config in configs:
            by_company.setdefault(config.company_id, []).append(config)

        results = []
        for cid, company_configs in by_company.items():
            await self._prepare_company(cid, now)
            for config in company_configs:
                result = await self.run_department_cycle(config, call_stack=call_stack, now=now)
                results.append(result.to_dict())

        logger.info("自动驾驶触发完成", companies=len(by_company), departments=len(results))
        return {"success": True, "departments_processed": len(results), "results": results}

    async def _prepare_company(self, company_id: str, now: Optional[datetime]) -> None:
        """种子能力触发与生命周期管理（先于公司的各部门周期）"""
        try:
            seeded = await self.lifecycle.evaluate_seeded(company_id, now)
            managed = await self.lifecycle.manage(company_id, now=now)
        except Exception as e:
            logger.error("公司级能力管理失败", company_id=company_id, error=str(e))
            return
        if seeded or managed:
            logger.info("公司级能力管理", company_id=company_id, seeded=len(seeded), managed=len(managed))

    # ============================================
    # 部门周期
    # ============================================

    async def run_department_cycle(
        self,
        config: DepartmentConfig,
        call_stack: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> CycleResult:
        """运行单个部门周期，永不抛出异常"""
        company_id = config.company_id
        department = config.department
        cycle_id = str(uuid4())
        start = time.monotonic()
        result = CycleResult(company_id=company_id, department=department, cycle_id=cycle_id)

        logger.info("周期开始", company_id=company_id, department=department, cycle_id=cycle_id)
        try:
            await self._run_phases(config, cycle_id, result, call_stack, now)
        except CycleAborted as e:
            result.aborted = True
            result.abort_reason = e.reason
            result.missing = e.missing
            await self.audit.log_phase(
                company_id, department, cycle_id, e.phase,
                status=PhaseStatus.ABORTED,
                error_message=e.reason,
                execution_time_ms=_elapsed_ms(start),
            )
        except Exception as e:
            result.success = False
            result.error = str(e)
            logger.error("周期失败", company_id=company_id, department=department, cycle_id=cycle_id, error=str(e))
            try:
                await self.audit.log_phase(
                    company_id, department, cycle_id, "error",
                    status=PhaseStatus.FAILED,
                    error_message=str(e),
                    execution_time_ms=_elapsed_ms(start),
                )
                await self.audit.record(
                    company_id=company_id,
                    department=department,
                    cycle_id=cycle_id,
                    event_type="cycle_failed",
                    details={"error": str(e), "error_type": type(e).__name__},
                )
            except Exception as log_error:
                logger.error("周期失败日志写入失败", cycle_id=cycle_id, error=str(log_error))

        result.execution_time_ms = _elapsed_ms(start)
        logger.info(
            "周期结束",
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            success=result.success,
            aborted=result.aborted,
            elapsed_ms=result.execution_time_ms,
        )
        return result

    async def _run_phases(
        self,
        config: DepartmentConfig,
        cycle_id: str,
        result: CycleResult,
        call_stack: Optional[list[str]],
        now: Optional[datetime],
    ) -> None:
        company_id = config.company_id
        department = config.department

        # Preflight
        phase_start = time.monotonic()
        readiness = await self.preflight.check(company_id, department)
        if not readiness.ready:
            raise CycleAborted("preflight", readiness.reason, readiness.missing)
        await self.audit.log_phase(
            company_id, department, cycle_id, "preflight",
            context_snapshot=readiness.counts,
            execution_time_ms=_elapsed_ms(phase_start),
        )

        # Sense
        phase_start = time.monotonic()
        snapshot = await self.sense.collect(company_id, department, now)
        snapshot = await self.sense.ensure_sufficient(company_id, department, snapshot, cycle_id, now)
        await self.audit.log_phase(
            company_id, department, cycle_id, "sense",
            context_snapshot=snapshot.to_dict(),
            execution_time_ms=_elapsed_ms(phase_start),
        )

        # External Intelligence ∥ Memory
        intelligence, memory = await asyncio.gather(
            self.intelligence.gather(company_id, config.maturity_level, now),
            self.memory.retrieve(company_id, department, context_hash(department, snapshot)),
        )

        # Think
        phase_start = time.monotonic()
        decisions = await self.think.generate(
            company_id, department, cycle_id, config, snapshot, memory, intelligence,
        )
        await self.audit.log_phase(
            company_id, department, cycle_id, "think",
            decisions_made=[d.to_dict() for d in decisions],
            execution_time_ms=_elapsed_ms(phase_start),
        )

        # Guard
        phase_start = time.monotonic()
        decisions = await self.guard.evaluate(company_id, department, cycle_id, decisions, config, now)
        result.total_decisions = len(decisions)
        result.passed = sum(1 for d in decisions if d.guardrail_result in PASSED)
        result.blocked = sum(1 for d in decisions if d.guardrail_result == GuardrailResult.BLOCKED)
        result.pending_review = sum(1 for d in decisions if d.guardrail_result in PENDING)
        await self.audit.log_phase(
            company_id, department, cycle_id, "guard",
            decisions_made=[d.to_dict() for d in decisions],
            content_approved=result.passed,
            content_rejected=result.blocked,
            content_pending_review=result.pending_review,
            execution_time_ms=_elapsed_ms(phase_start),
        )

        # Act
        phase_start = time.monotonic()
        summary = await self.act.execute(company_id, department, cycle_id, decisions, call_stack)
        result.credits_consumed = summary.credits_consumed
        await self.audit.log_phase(
            company_id, department, cycle_id, "act",
            actions_taken=summary.actions(),
            credits_consumed=summary.credits_consumed,
            execution_time_ms=_elapsed_ms(phase_start),
        )

        # Learn
        phase_start = time.monotonic()
        learned = await self.learner.learn(company_id, department, cycle_id, decisions, snapshot, now)
        await self.configs.mark_executed(config, now)
        await self.audit.log_phase(
            company_id, department, cycle_id, "learn",
            context_snapshot=learned.__dict__,
            execution_time_ms=_elapsed_ms(phase_start),
        )

        # Genesis + Bridge
        phase_start = time.monotonic()
        gaps = await self.genesis.detect_gaps(company_id, department, now)
        proposed, transitions = await self.genesis.propose(company_id, department, gaps, cycle_id, now)
        transitions += await self.genesis.bridge_approvals(company_id, now, cycle_id)
        result.capabilities_proposed = proposed
        await self.audit.log_phase(
            company_id, department, cycle_id, "genesis",
            context_snapshot={"gaps": gaps.to_dict(), "proposed": proposed},
            execution_time_ms=_elapsed_ms(phase_start),
        )

        # Lifecycle
        phase_start = time.monotonic()
        transitions += await self.lifecycle.manage(company_id, department, now, cycle_id)
        result.capability_transitions = transitions
        await self.audit.log_phase(
            company_id, department, cycle_id, "lifecycle",
            context_snapshot={"transitions": transitions},
            execution_time_ms=_elapsed_ms(phase_start),
        )


def create_engine(settings: Optional[AutopilotSettings] = None) -> AutopilotEngine:
    """按配置装配生产环境引擎（PostgreSQL + HTTP 客户端）"""
    from agents.executor import HttpExecutorClient
    from agents.llm import HttpLLMClient
    from storage.postgres import PostgresDataStore

    settings = settings or AutopilotSettings()
    return AutopilotEngine(
        store=PostgresDataStore(settings.database_url),
        llm=HttpLLMClient(settings.llm_api_url, settings.llm_api_key),
        executor_client=HttpExecutorClient(settings.executor_base_url, settings.executor_api_key),
        settings=settings,
    )
