# Enterprise Autopilot - PostgreSQL 数据存储
"""
基于 asyncpg 的 DataStore 实现

约定:
- 连接池懒加载，所有方法通过 pool.acquire() 获取连接
- JSON 列显式编码 (json.dumps + ::jsonb)，读取时解码
- 时间统一使用 UTC naive datetime
- 数据库异常直接向上抛出，由周期运行器记录为 failed
"""

import json
import os
import re
from datetime import datetime
from typing import Any, Optional

import asyncpg
import structlog

from engine.models import (
    ApprovalRecord,
    ApprovalStatus,
    AuditEvent,
    Capability,
    CapabilityStatus,
    Decision,
    DepartmentConfig,
    ExecutionLogEntry,
    ExecutorDefinition,
    GuardrailResult,
    MemoryEntry,
    OutcomeEvaluation,
    Priority,
    RiskLevel,
)
from storage.base import RAW_SOURCES, DataStore

logger = structlog.get_logger()

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _load(value: Any, default: Any = None) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _column(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid column name: {name}")
    return name


class PostgresDataStore(DataStore):
    """PostgreSQL 数据存储"""

    def __init__(self, db_url: Optional[str] = None, min_size: int = 1, max_size: int = 5):
        """初始化

        Args:
            db_url: 数据库连接 URL，默认读取 DATABASE_URL
            min_size: 连接池最小连接数
            max_size: 连接池最大连接数
        """
        self.db_url = db_url or os.getenv("DATABASE_URL", "")
        self.min_size = min_size
        self.max_size = max_size
        self._pool = None

    async def _get_pool(self):
        """获取数据库连接池"""
        if self._pool is None:
            db_url = self.db_url.replace("postgresql+asyncpg://", "postgresql://")
            self._pool = await asyncpg.create_pool(
                db_url, min_size=self.min_size, max_size=self.max_size,
            )
            logger.info("数据库连接池已创建", max_size=self.max_size)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ============================================
    # 原始数据
    # ============================================

    def _where(
        self,
        source: str,
        company_id: str,
        since: Optional[datetime],
        time_field: str,
        filters: Optional[dict],
        key_prefix: Optional[str],
    ) -> tuple[str, list]:
        if source not in RAW_SOURCES:
            raise ValueError(f"Unknown data source: {source}")

        clauses = ["company_id = $1"]
        args: list = [company_id]

        if since is not None:
            args.append(since)
            clauses.append(f"{_column(time_field)} >= ${len(args)}")

        for key, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                args.append(list(value))
                clauses.append(f"{_column(key)} = ANY(${len(args)})")
            else:
                args.append(value)
                clauses.append(f"{_column(key)} = ${len(args)}")

        if key_prefix:
            args.append(f"{key_prefix}%")
            clauses.append(f"parameter_key LIKE ${len(args)}")

        return " AND ".join(clauses), args

    async def fetch_records(
        self,
        source: str,
        company_id: str,
        since: Optional[datetime] = None,
        time_field: str = "created_at",
        filters: Optional[dict] = None,
        key_prefix: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        where, args = self._where(source, company_id, since, time_field, filters, key_prefix)
        sql = f"SELECT * FROM {source} WHERE {where} ORDER BY {_column(time_field)} DESC"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [dict(r) for r in rows]

    async def count_records(
        self,
        source: str,
        company_id: str,
        since: Optional[datetime] = None,
        time_field: str = "created_at",
        filters: Optional[dict] = None,
        key_prefix: Optional[str] = None,
    ) -> int:
        where, args = self._where(source, company_id, since, time_field, filters, key_prefix)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM {source} WHERE {where}", *args)

    # ============================================
    # 配置与公司
    # ============================================

    async def list_department_configs(
        self,
        company_id: Optional[str] = None,
        department: Optional[str] = None,
    ) -> list[DepartmentConfig]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT c.*, co.maturity_level
                FROM department_execution_configs c
                LEFT JOIN companies co ON co.id = c.company_id
                WHERE c.autopilot_enabled = TRUE
                  AND ($1::text IS NULL OR c.company_id::text = $1)
                  AND ($2::text IS NULL OR c.department = $2)
            """, company_id, department)

        configs = []
        for row in rows:
            data = dict(row)
            for key in ("guardrails", "active_hours", "rate_limits", "allowed_actions"):
                data[key] = _load(data.get(key))
            configs.append(DepartmentConfig.from_dict(data))
        return configs

    async def get_company_profile(self, company_id: str) -> dict:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT name, industry_sector, country, maturity_level, brand_voice
                FROM companies WHERE id::text = $1
            """, company_id)
        if row is None:
            return {}
        profile = dict(row)
        profile["brand_voice"] = _load(profile.get("brand_voice"))
        return profile

    async def mark_department_executed(
        self,
        company_id: str,
        department: str,
        executed_at: datetime,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                UPDATE department_execution_configs
                SET last_execution_at = $3,
                    total_cycles_run = COALESCE(total_cycles_run, 0) + 1
                WHERE company_id::text = $1 AND department = $2
            """, company_id, department, executed_at)

    async def list_executors(self, department: Optional[str] = None) -> list[ExecutorDefinition]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM platform_agents
                WHERE is_active = TRUE
                  AND ($1::text IS NULL OR department = $1)
            """, department)
        executors = []
        for row in rows:
            data = dict(row)
            data["required_context"] = _load(data.get("required_context"), [])
            executors.append(ExecutorDefinition.from_dict(data))
        return executors

    # ============================================
    # 决策与用量
    # ============================================

    async def insert_decisions(self, decisions: list[Decision]) -> None:
        if not decisions:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany("""
                INSERT INTO autopilot_decisions (
                    id, company_id, department, cycle_id, decision_type, priority, risk_level,
                    description, reasoning, agent_to_execute, action_parameters, expected_impact,
                    external_signal_influence, priority_score, score_breakdown,
                    guardrail_result, guardrail_details, warnings, action_taken,
                    execution_result, execution_error, credits_consumed, executed_at, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12::jsonb,
                          $13, $14, $15::jsonb, $16, $17, $18::jsonb, $19, $20, $21, $22, $23, $24)
            """, [
                (
                    d.id, d.company_id, d.department, d.cycle_id, d.decision_type,
                    d.priority.value, d.risk_level.value, d.description, d.reasoning,
                    d.agent_to_execute, _json(d.action_parameters), _json(d.expected_impact),
                    d.external_signal_influence, d.priority_score, _json(d.score_breakdown),
                    d.guardrail_result.value if d.guardrail_result else None,
                    d.guardrail_details, _json(d.warnings), d.action_taken,
                    d.execution_result, d.execution_error, d.credits_consumed,
                    d.executed_at, d.created_at,
                )
                for d in decisions
            ])

    @staticmethod
    def _row_to_decision(row) -> Decision:
        return Decision(
            id=str(row["id"]),
            company_id=str(row["company_id"]),
            department=row["department"],
            cycle_id=str(row["cycle_id"]),
            decision_type=row["decision_type"],
            priority=Priority(row["priority"]),
            risk_level=RiskLevel(row["risk_level"]),
            description=row["description"] or "",
            reasoning=row["reasoning"] or "",
            agent_to_execute=row["agent_to_execute"],
            action_parameters=_load(row["action_parameters"], {}),
            expected_impact=_load(row["expected_impact"], {}),
            external_signal_influence=row["external_signal_influence"],
            priority_score=float(row["priority_score"] or 0),
            score_breakdown=_load(row["score_breakdown"], {}),
            guardrail_result=GuardrailResult(row["guardrail_result"]) if row["guardrail_result"] else None,
            guardrail_details=row["guardrail_details"] or "",
            warnings=_load(row["warnings"], []),
            action_taken=row["action_taken"],
            execution_result=row["execution_result"],
            execution_error=row["execution_error"],
            credits_consumed=row["credits_consumed"] or 0,
            executed_at=row["executed_at"],
            created_at=row["created_at"],
        )

    async def list_recent_decisions(
        self,
        company_id: str,
        department: Optional[str] = None,
        limit: int = 50,
    ) -> list[Decision]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM autopilot_decisions
                WHERE company_id::text = $1
                  AND ($2::text IS NULL OR department = $2)
                ORDER BY created_at DESC
                LIMIT $3
            """, company_id, department, limit)
        return [self._row_to_decision(r) for r in rows]

    async def count_actioned_decisions(
        self,
        company_id: str,
        department: str,
        decision_type: str,
        since: datetime,
    ) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT COUNT(*) FROM autopilot_decisions
                WHERE company_id::text = $1 AND department = $2
                  AND decision_type = $3 AND action_taken = TRUE
                  AND created_at >= $4
            """, company_id, department, decision_type, since)

    async def insert_usage_log(self, row: dict) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO agent_usage_log (
                    company_id, department, agent_code, status, credits_consumed,
                    execution_time_ms, input_summary, output_summary, error_message, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
                row.get("company_id"), row.get("department"), row.get("agent_code"),
                row.get("status"), row.get("credits_consumed", 0), row.get("execution_time_ms", 0),
                row.get("input_summary"), row.get("output_summary"), row.get("error_message"),
                row.get("created_at") or datetime.utcnow(),
            )

    async def sum_credits(
        self,
        company_id: str,
        since: datetime,
        department: Optional[str] = None,
    ) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval("""
                SELECT COALESCE(SUM(credits_consumed), 0) FROM agent_usage_log
                WHERE company_id::text = $1 AND created_at >= $2
                  AND ($3::text IS NULL OR department = $3)
            """, company_id, since, department)
        return int(total or 0)

    # ============================================
    # 记忆
    # ============================================

    async def insert_memory_entries(self, entries: list[MemoryEntry]) -> None:
        if not entries:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany("""
                INSERT INTO autopilot_memory (
                    id, company_id, department, cycle_id, decision_id, decision_type,
                    capability_code, context_summary, context_hash, external_signal_used,
                    outcome_evaluation, outcome_score, lesson_learned, applies_to_future,
                    created_at, evaluated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb, $15, $16)
            """, [
                (
                    e.id, e.company_id, e.department, e.cycle_id, e.decision_id, e.decision_type,
                    e.capability_code, e.context_summary, e.context_hash, e.external_signal_used,
                    e.outcome_evaluation.value, e.outcome_score, e.lesson_learned,
                    _json(e.applies_to_future), e.created_at, e.evaluated_at,
                )
                for e in entries
            ])

    async def list_memory_entries(
        self,
        company_id: str,
        department: str,
        outcomes: Optional[list[OutcomeEvaluation]] = None,
        created_before: Optional[datetime] = None,
        decision_type: Optional[str] = None,
        limit: Optional[int] = None,
        order_by: str = "created_at",
    ) -> list[MemoryEntry]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT * FROM autopilot_memory
                WHERE company_id::text = $1 AND department = $2
                  AND ($3::text[] IS NULL OR outcome_evaluation = ANY($3))
                  AND ($4::timestamp IS NULL OR created_at <= $4)
                  AND ($5::text IS NULL OR decision_type = $5)
                ORDER BY {_column(order_by)} DESC NULLS LAST
                LIMIT $6
            """,
                company_id, department,
                [o.value for o in outcomes] if outcomes is not None else None,
                created_before, decision_type, limit,
            )
        return [
            MemoryEntry(
                id=str(r["id"]),
                company_id=str(r["company_id"]),
                department=r["department"],
                cycle_id=str(r["cycle_id"]),
                decision_id=str(r["decision_id"]) if r["decision_id"] else None,
                decision_type=r["decision_type"],
                capability_code=r["capability_code"],
                context_summary=r["context_summary"] or "",
                context_hash=r["context_hash"] or "",
                external_signal_used=r["external_signal_used"],
                outcome_evaluation=OutcomeEvaluation(r["outcome_evaluation"]),
                outcome_score=r["outcome_score"],
                lesson_learned=r["lesson_learned"],
                applies_to_future=_load(r["applies_to_future"], []),
                created_at=r["created_at"],
                evaluated_at=r["evaluated_at"],
            )
            for r in rows
        ]

    async def complete_memory_evaluation(
        self,
        entry_id: str,
        outcome: OutcomeEvaluation,
        score: float,
        lesson: str,
        evaluated_at: datetime,
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE autopilot_memory
                SET outcome_evaluation = $2, outcome_score = $3,
                    lesson_learned = $4, evaluated_at = $5
                WHERE id::text = $1 AND outcome_evaluation = 'pending'
            """, entry_id, outcome.value, score, lesson, evaluated_at)
        # asyncpg 返回 "UPDATE <n>"
        return result.split()[-1] != "0"

    async def attach_memory_rules(self, entry_id: str, rules: list[str]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                UPDATE autopilot_memory SET applies_to_future = $2::jsonb
                WHERE id::text = $1
            """, entry_id, _json(rules))

    # ============================================
    # 外部情报缓存
    # ============================================

    async def has_fresh_intelligence(self, company_id: str, fetched_since: datetime) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            count = await conn.fetchval("""
                SELECT COUNT(*) FROM external_intelligence_cache
                WHERE company_id::text = $1 AND fetched_at >= $2
            """, company_id, fetched_since)
        return count > 0

    async def list_intelligence(
        self,
        company_id: str,
        fetched_since: Optional[datetime] = None,
        unexpired_at: Optional[datetime] = None,
        limit: int = 10,
    ) -> list[dict]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM external_intelligence_cache
                WHERE company_id::text = $1
                  AND ($2::timestamp IS NULL OR fetched_at >= $2)
                  AND ($3::timestamp IS NULL OR expires_at >= $3)
                ORDER BY relevance_score DESC NULLS LAST
                LIMIT $4
            """, company_id, fetched_since, unexpired_at, limit)
        items = []
        for row in rows:
            data = dict(row)
            data["data"] = _load(data.get("data"), {})
            items.append(data)
        return items

    async def insert_intelligence(self, row: dict) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO external_intelligence_cache (
                    company_id, intelligence_type, source, query_used, data,
                    relevance_score, sentiment, impact_level, fetched_at, expires_at
                ) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10)
            """,
                row["company_id"], row.get("intelligence_type"), row.get("source"),
                row.get("query_used"), _json(row.get("data")), row.get("relevance_score"),
                row.get("sentiment"), row.get("impact_level"),
                row.get("fetched_at") or datetime.utcnow(), row.get("expires_at"),
            )

    # ============================================
    # 能力
    # ============================================

    @staticmethod
    def _row_to_capability(r) -> Capability:
        return Capability(
            id=str(r["id"]),
            company_id=str(r["company_id"]),
            department=r["department"],
            capability_code=r["capability_code"],
            capability_name=r["capability_name"] or "",
            description=r["description"] or "",
            trigger_condition=_load(r["trigger_condition"], {}),
            decision_types=_load(r["decision_types"], []),
            status=CapabilityStatus(r["status"]),
            source=r["source"],
            auto_activate=r["auto_activate"],
            risk_level=RiskLevel(r["risk_level"]),
            required_data=_load(r["required_data"], []),
            success_metrics=_load(r["success_metrics"], []),
            proposed_reason=r["proposed_reason"] or "",
            gap_evidence=_load(r["gap_evidence"], {}),
            trial_started_at=r["trial_started_at"],
            trial_expires_at=r["trial_expires_at"],
            activated_at=r["activated_at"],
            activation_reason=r["activation_reason"],
            deactivated_at=r["deactivated_at"],
            deactivation_reason=r["deactivation_reason"],
            last_evaluated_at=r["last_evaluated_at"],
            execution_count=r["execution_count"] or 0,
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        )

    async def list_capabilities(
        self,
        company_id: str,
        department: Optional[str] = None,
        statuses: Optional[list[CapabilityStatus]] = None,
    ) -> list[Capability]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM department_capabilities
                WHERE company_id::text = $1
                  AND ($2::text IS NULL OR department = $2)
                  AND ($3::text[] IS NULL OR status = ANY($3))
            """,
                company_id, department,
                [s.value for s in statuses] if statuses is not None else None,
            )
        return [self._row_to_capability(r) for r in rows]

    async def get_capability(self, capability_id: str) -> Optional[Capability]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM department_capabilities WHERE id::text = $1", capability_id,
            )
        return self._row_to_capability(row) if row else None

    async def insert_capability(self, capability: Capability) -> bool:
        c = capability
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("""
                INSERT INTO department_capabilities (
                    id, company_id, department, capability_code, capability_name, description,
                    trigger_condition, decision_types, status, source, auto_activate, risk_level,
                    required_data, success_metrics, proposed_reason, gap_evidence,
                    trial_started_at, trial_expires_at, execution_count, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10, $11, $12,
                          $13::jsonb, $14::jsonb, $15, $16::jsonb, $17, $18, $19, $20, $21)
                ON CONFLICT (company_id, capability_code) DO NOTHING
            """,
                c.id, c.company_id, c.department, c.capability_code, c.capability_name,
                c.description, _json(c.trigger_condition), _json(c.decision_types),
                c.status.value, c.source, c.auto_activate, c.risk_level.value,
                _json(c.required_data), _json(c.success_metrics), c.proposed_reason,
                _json(c.gap_evidence), c.trial_started_at, c.trial_expires_at,
                c.execution_count, c.created_at, c.updated_at,
            )
        return result.split()[-1] != "0"

    async def save_capability(self, capability: Capability) -> None:
        c = capability
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                UPDATE department_capabilities SET
                    status = $2, trial_started_at = $3, trial_expires_at = $4,
                    activated_at = $5, activation_reason = $6,
                    deactivated_at = $7, deactivation_reason = $8,
                    last_evaluated_at = $9, updated_at = $10
                WHERE id::text = $1
            """,
                c.id, c.status.value, c.trial_started_at, c.trial_expires_at,
                c.activated_at, c.activation_reason, c.deactivated_at,
                c.deactivation_reason, c.last_evaluated_at, c.updated_at,
            )

    async def increment_capability_usage(self, capability_id: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                UPDATE department_capabilities
                SET execution_count = COALESCE(execution_count, 0) + 1, updated_at = NOW()
                WHERE id::text = $1
            """, capability_id)

    # ============================================
    # 审批与日志
    # ============================================

    async def insert_approval(self, record: ApprovalRecord) -> None:
        r = record
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO autopilot_approvals (
                    id, company_id, record_type, reference_id, content_type, content_data,
                    status, required_approvers, requires_sign_off, flagged_for_review,
                    submitted_by, notes, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8::jsonb, $9, $10, $11, $12, $13)
            """,
                r.id, r.company_id, r.record_type, r.reference_id, r.content_type,
                _json(r.content_data), r.status.value, _json(r.required_approvers),
                r.requires_sign_off, r.flagged_for_review, r.submitted_by, r.notes, r.created_at,
            )

    async def list_approvals(
        self,
        company_id: str,
        record_type: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM autopilot_approvals
                WHERE company_id::text = $1
                  AND ($2::text IS NULL OR record_type = $2)
                  AND ($3::text IS NULL OR status = $3)
                ORDER BY created_at
            """, company_id, record_type, status.value if status else None)
        return [
            ApprovalRecord(
                id=str(r["id"]),
                company_id=str(r["company_id"]),
                record_type=r["record_type"],
                reference_id=str(r["reference_id"]),
                content_type=r["content_type"] or "",
                content_data=_load(r["content_data"], {}),
                status=ApprovalStatus(r["status"]),
                required_approvers=_load(r["required_approvers"], []),
                requires_sign_off=r["requires_sign_off"],
                flagged_for_review=r["flagged_for_review"],
                submitted_by=r["submitted_by"],
                notes=r["notes"] or "",
                created_at=r["created_at"],
                decided_at=r["decided_at"],
            )
            for r in rows
        ]

    async def update_approval_status(self, approval_id: str, status: ApprovalStatus) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                UPDATE autopilot_approvals SET status = $2, decided_at = $3
                WHERE id::text = $1
            """, approval_id, status.value, datetime.utcnow())

    async def insert_execution_log(self, entry: ExecutionLogEntry) -> None:
        e = entry
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO department_execution_log (
                    id, company_id, department, cycle_id, phase, status, context_snapshot,
                    decisions_made, actions_taken, content_approved, content_rejected,
                    content_pending_review, credits_consumed, execution_time_ms,
                    error_message, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9::jsonb,
                          $10, $11, $12, $13, $14, $15, $16)
            """,
                e.id, e.company_id, e.department, e.cycle_id, e.phase, e.status.value,
                _json(e.context_snapshot), _json(e.decisions_made), _json(e.actions_taken),
                e.content_approved, e.content_rejected, e.content_pending_review,
                e.credits_consumed, e.execution_time_ms, e.error_message, e.created_at,
            )

    async def insert_audit_event(self, event: AuditEvent) -> None:
        e = event
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO autopilot_audit_log (
                    id, company_id, department, cycle_id, event_type,
                    target_type, target_id, details, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
            """,
                e.id, e.company_id, e.department, e.cycle_id, e.event_type,
                e.target_type, e.target_id, _json(e.details), e.created_at,
            )
