# Enterprise Autopilot - 内存数据存储
"""
进程内 DataStore 实现

用于测试与本地演示，语义与 PostgresDataStore 保持一致:
- 读写均做深拷贝，调用方修改返回对象不会影响已存数据
- 原始数据源按白名单校验
"""

import copy
from collections import defaultdict
from datetime import datetime
from typing import Optional

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
    MemoryEntry,
    OutcomeEvaluation,
)
from storage.base import RAW_SOURCES, DataStore

logger = structlog.get_logger()


class InMemoryDataStore(DataStore):
    """内存数据存储"""

    def __init__(self):
        self.records: dict[str, list[dict]] = defaultdict(list)
        self.configs: list[DepartmentConfig] = []
        self.companies: dict[str, dict] = {}
        self.executors: list[ExecutorDefinition] = []

        self.decisions: list[Decision] = []
        self.usage_log: list[dict] = []
        self.memory: list[MemoryEntry] = []
        self.intelligence: list[dict] = []
        self.capabilities: list[Capability] = []
        self.approvals: list[ApprovalRecord] = []
        self.execution_log: list[ExecutionLogEntry] = []
        self.audit_events: list[AuditEvent] = []

    # ============================================
    # 测试数据装载
    # ============================================

    def add_records(self, source: str, rows: list[dict]) -> None:
        """装载原始数据"""
        self._check_source(source)
        for row in rows:
            self.records[source].append(dict(row))

    def add_department_config(self, config: DepartmentConfig) -> None:
        self.configs.append(config)

    def set_company_profile(self, company_id: str, profile: dict) -> None:
        self.companies[company_id] = dict(profile)

    def add_executor(self, executor: ExecutorDefinition) -> None:
        self.executors.append(executor)

    # ============================================
    # 原始数据
    # ============================================

    def _check_source(self, source: str) -> None:
        if source not in RAW_SOURCES:
            raise ValueError(f"Unknown data source: {source}")

    def _select(
        self,
        source: str,
        company_id: str,
        since: Optional[datetime],
        time_field: str,
        filters: Optional[dict],
        key_prefix: Optional[str],
    ) -> list[dict]:
        self._check_source(source)
        rows = []
        for row in self.records[source]:
            if str(row.get("company_id")) != str(company_id):
                continue
            if since is not None:
                value = row.get(time_field)
                if value is None or value < since:
                    continue
            if filters and not all(self._matches(row.get(k), v) for k, v in filters.items()):
                continue
            if key_prefix and not str(row.get("parameter_key", "")).startswith(key_prefix):
                continue
            rows.append(row)
        return rows

    @staticmethod
    def _matches(value, expected) -> bool:
        if isinstance(expected, (list, tuple, set)):
            return value in expected
        return value == expected

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
        rows = self._select(source, company_id, since, time_field, filters, key_prefix)
        rows.sort(key=lambda r: r.get(time_field) or datetime.min, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def count_records(
        self,
        source: str,
        company_id: str,
        since: Optional[datetime] = None,
        time_field: str = "created_at",
        filters: Optional[dict] = None,
        key_prefix: Optional[str] = None,
    ) -> int:
        return len(self._select(source, company_id, since, time_field, filters, key_prefix))

    # ============================================
    # 配置与公司
    # ============================================

    async def list_department_configs(
        self,
        company_id: Optional[str] = None,
        department: Optional[str] = None,
    ) -> list[DepartmentConfig]:
        return [
            copy.deepcopy(c)
            for c in self.configs
            if c.enabled
            and (company_id is None or c.company_id == company_id)
            and (department is None or c.department == department)
        ]

    async def get_company_profile(self, company_id: str) -> dict:
        return dict(self.companies.get(company_id, {}))

    async def mark_department_executed(
        self,
        company_id: str,
        department: str,
        executed_at: datetime,
    ) -> None:
        for config in self.configs:
            if config.company_id == company_id and config.department == department:
                config.last_execution_at = executed_at
                config.total_cycles_run += 1

    async def list_executors(self, department: Optional[str] = None) -> list[ExecutorDefinition]:
        return [
            copy.deepcopy(e)
            for e in self.executors
            if e.is_active and (department is None or e.department == department)
        ]

    # ============================================
    # 决策与用量
    # ============================================

    async def insert_decisions(self, decisions: list[Decision]) -> None:
        self.decisions.extend(copy.deepcopy(d) for d in decisions)

    async def list_recent_decisions(
        self,
        company_id: str,
        department: Optional[str] = None,
        limit: int = 50,
    ) -> list[Decision]:
        rows = [
            d for d in self.decisions
            if d.company_id == company_id and (department is None or d.department == department)
        ]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        return copy.deepcopy(rows[:limit])

    async def count_actioned_decisions(
        self,
        company_id: str,
        department: str,
        decision_type: str,
        since: datetime,
    ) -> int:
        return sum(
            1 for d in self.decisions
            if d.company_id == company_id
            and d.department == department
            and d.decision_type == decision_type
            and d.action_taken
            and d.created_at >= since
        )

    async def insert_usage_log(self, row: dict) -> None:
        row = dict(row)
        row.setdefault("created_at", datetime.utcnow())
        self.usage_log.append(row)
        # 用量日志同时是只读数据源
        self.records["agent_usage_log"].append(row)

    async def sum_credits(
        self,
        company_id: str,
        since: datetime,
        department: Optional[str] = None,
    ) -> int:
        return sum(
            int(r.get("credits_consumed") or 0)
            for r in self.records["agent_usage_log"]
            if str(r.get("company_id")) == str(company_id)
            and (r.get("created_at") or datetime.min) >= since
            and (department is None or r.get("department") == department)
        )

    # ============================================
    # 记忆
    # ============================================

    async def insert_memory_entries(self, entries: list[MemoryEntry]) -> None:
        self.memory.extend(copy.deepcopy(e) for e in entries)

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
        rows = [
            m for m in self.memory
            if m.company_id == company_id
            and m.department == department
            and (outcomes is None or m.outcome_evaluation in outcomes)
            and (created_before is None or m.created_at <= created_before)
            and (decision_type is None or m.decision_type == decision_type)
        ]
        rows.sort(key=lambda m: getattr(m, order_by) or datetime.min, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def complete_memory_evaluation(
        self,
        entry_id: str,
        outcome: OutcomeEvaluation,
        score: float,
        lesson: str,
        evaluated_at: datetime,
    ) -> bool:
        for entry in self.memory:
            if entry.id == entry_id:
                if not entry.is_pending:
                    return False
                entry.outcome_evaluation = outcome
                entry.outcome_score = score
                entry.lesson_learned = lesson
                entry.evaluated_at = evaluated_at
                return True
        return False

    async def attach_memory_rules(self, entry_id: str, rules: list[str]) -> None:
        for entry in self.memory:
            if entry.id == entry_id:
                entry.applies_to_future = list(rules)

    # ============================================
    # 外部情报缓存
    # ============================================

    async def has_fresh_intelligence(self, company_id: str, fetched_since: datetime) -> bool:
        return any(
            r["company_id"] == company_id and r["fetched_at"] >= fetched_since
            for r in self.intelligence
        )

    async def list_intelligence(
        self,
        company_id: str,
        fetched_since: Optional[datetime] = None,
        unexpired_at: Optional[datetime] = None,
        limit: int = 10,
    ) -> list[dict]:
        rows = [
            r for r in self.intelligence
            if r["company_id"] == company_id
            and (fetched_since is None or r["fetched_at"] >= fetched_since)
            and (unexpired_at is None or r["expires_at"] >= unexpired_at)
        ]
        rows.sort(key=lambda r: r.get("relevance_score") or 0, reverse=True)
        return copy.deepcopy(rows[:limit])

    async def insert_intelligence(self, row: dict) -> None:
        row = dict(row)
        row.setdefault("fetched_at", datetime.utcnow())
        self.intelligence.append(row)

    # ============================================
    # 能力
    # ============================================

    async def list_capabilities(
        self,
        company_id: str,
        department: Optional[str] = None,
        statuses: Optional[list[CapabilityStatus]] = None,
    ) -> list[Capability]:
        return [
            copy.deepcopy(c)
            for c in self.capabilities
            if c.company_id == company_id
            and (department is None or c.department == department)
            and (statuses is None or c.status in statuses)
        ]

    async def get_capability(self, capability_id: str) -> Optional[Capability]:
        for cap in self.capabilities:
            if cap.id == capability_id:
                return copy.deepcopy(cap)
        return None

    async def insert_capability(self, capability: Capability) -> bool:
        if any(
            c.company_id == capability.company_id and c.capability_code == capability.capability_code
            for c in self.capabilities
        ):
            return False
        self.capabilities.append(copy.deepcopy(capability))
        return True

    async def save_capability(self, capability: Capability) -> None:
        for i, cap in enumerate(self.capabilities):
            if cap.id == capability.id:
                self.capabilities[i] = copy.deepcopy(capability)
                return
        logger.warning("保存能力失败：不存在", capability_id=capability.id)

    async def increment_capability_usage(self, capability_id: str) -> None:
        for cap in self.capabilities:
            if cap.id == capability_id:
                cap.execution_count += 1

    # ============================================
    # 审批与日志
    # ============================================

    async def insert_approval(self, record: ApprovalRecord) -> None:
        self.approvals.append(copy.deepcopy(record))

    async def list_approvals(
        self,
        company_id: str,
        record_type: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRecord]:
        return [
            copy.deepcopy(a)
            for a in self.approvals
            if a.company_id == company_id
            and (record_type is None or a.record_type == record_type)
            and (status is None or a.status == status)
        ]

    async def update_approval_status(self, approval_id: str, status: ApprovalStatus) -> None:
        for record in self.approvals:
            if record.id == approval_id:
                record.status = status
                record.decided_at = datetime.utcnow()

    async def insert_execution_log(self, entry: ExecutionLogEntry) -> None:
        self.execution_log.append(copy.deepcopy(entry))

    async def insert_audit_event(self, event: AuditEvent) -> None:
        self.audit_events.append(copy.deepcopy(event))
