# Enterprise Autopilot - 数据访问接口
"""
数据访问端口

引擎所有组件通过构造函数注入 DataStore，不持有全局客户端。
实现:
- storage.postgres.PostgresDataStore: asyncpg 连接池
- storage.memory.InMemoryDataStore: 进程内实现（测试/演示）

原始业务数据（帖子、商机、成员等）只读，通过白名单数据源访问；
引擎自有实体（决策、记忆、能力、审批、日志）使用专用方法。
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

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


# 只读数据源白名单
POST_SOURCES = {
    "instagram": "instagram_posts",
    "linkedin": "linkedin_posts",
    "facebook": "facebook_posts",
    "tiktok": "tiktok_posts",
}

RAW_SOURCES = frozenset({
    *POST_SOURCES.values(),
    "marketing_campaigns",
    "social_listening_mentions",
    "social_connections",
    "competitors",
    "crm_deals",
    "crm_contacts",
    "crm_activities",
    "agent_usage_log",
    "business_health_snapshots",
    "company_parameters",
    "company_members",
    "workforce_tasks",
})


class DataStore(ABC):
    """数据访问抽象基类"""

    async def close(self) -> None:
        pass

    # ============================================
    # 原始数据（只读）
    # ============================================

    @abstractmethod
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
        """读取原始数据，按 time_field 倒序

        Args:
            source: 数据源（必须在 RAW_SOURCES 中）
            company_id: 公司 ID
            since: time_field 下限（含）
            time_field: 时间字段
            filters: 等值过滤，值为 list 时表示 IN
            key_prefix: parameter_key 前缀过滤（company_parameters 专用）
            limit: 最大行数
        """
        pass

    @abstractmethod
    async def count_records(
        self,
        source: str,
        company_id: str,
        since: Optional[datetime] = None,
        time_field: str = "created_at",
        filters: Optional[dict] = None,
        key_prefix: Optional[str] = None,
    ) -> int:
        """统计原始数据行数"""
        pass

    # ============================================
    # 配置与公司
    # ============================================

    @abstractmethod
    async def list_department_configs(
        self,
        company_id: Optional[str] = None,
        department: Optional[str] = None,
    ) -> list[DepartmentConfig]:
        """列出启用自动驾驶的部门配置"""
        pass

    @abstractmethod
    async def get_company_profile(self, company_id: str) -> dict:
        """公司概况（name, industry_sector, country, maturity_level, brand_voice）"""
        pass

    @abstractmethod
    async def mark_department_executed(
        self,
        company_id: str,
        department: str,
        executed_at: datetime,
    ) -> None:
        """更新 last_execution_at 并累加周期计数"""
        pass

    @abstractmethod
    async def list_executors(self, department: Optional[str] = None) -> list[ExecutorDefinition]:
        """列出可用执行器"""
        pass

    # ============================================
    # 决策与用量
    # ============================================

    @abstractmethod
    async def insert_decisions(self, decisions: list[Decision]) -> None:
        pass

    @abstractmethod
    async def list_recent_decisions(
        self,
        company_id: str,
        department: Optional[str] = None,
        limit: int = 50,
    ) -> list[Decision]:
        pass

    @abstractmethod
    async def count_actioned_decisions(
        self,
        company_id: str,
        department: str,
        decision_type: str,
        since: datetime,
    ) -> int:
        """统计窗口内已执行的同类决策数"""
        pass

    @abstractmethod
    async def insert_usage_log(self, row: dict) -> None:
        pass

    @abstractmethod
    async def sum_credits(
        self,
        company_id: str,
        since: datetime,
        department: Optional[str] = None,
    ) -> int:
        """统计窗口内消耗的点数"""
        pass

    # ============================================
    # 记忆
    # ============================================

    @abstractmethod
    async def insert_memory_entries(self, entries: list[MemoryEntry]) -> None:
        pass

    @abstractmethod
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
        """按 order_by 倒序列出记忆"""
        pass

    @abstractmethod
    async def complete_memory_evaluation(
        self,
        entry_id: str,
        outcome: OutcomeEvaluation,
        score: float,
        lesson: str,
        evaluated_at: datetime,
    ) -> bool:
        """pending → 结论，仅当仍为 pending 时生效

        Returns:
            是否发生了更新
        """
        pass

    @abstractmethod
    async def attach_memory_rules(self, entry_id: str, rules: list[str]) -> None:
        pass

    # ============================================
    # 外部情报缓存
    # ============================================

    @abstractmethod
    async def has_fresh_intelligence(self, company_id: str, fetched_since: datetime) -> bool:
        pass

    @abstractmethod
    async def list_intelligence(
        self,
        company_id: str,
        fetched_since: Optional[datetime] = None,
        unexpired_at: Optional[datetime] = None,
        limit: int = 10,
    ) -> list[dict]:
        """按相关度倒序列出缓存情报"""
        pass

    @abstractmethod
    async def insert_intelligence(self, row: dict) -> None:
        pass

    # ============================================
    # 能力
    # ============================================

    @abstractmethod
    async def list_capabilities(
        self,
        company_id: str,
        department: Optional[str] = None,
        statuses: Optional[list[CapabilityStatus]] = None,
    ) -> list[Capability]:
        pass

    @abstractmethod
    async def get_capability(self, capability_id: str) -> Optional[Capability]:
        pass

    @abstractmethod
    async def insert_capability(self, capability: Capability) -> bool:
        """插入能力，同公司同 code 已存在时返回 False"""
        pass

    @abstractmethod
    async def save_capability(self, capability: Capability) -> None:
        """保存可变字段（状态、时间戳、原因）"""
        pass

    @abstractmethod
    async def increment_capability_usage(self, capability_id: str) -> None:
        pass

    # ============================================
    # 审批与日志
    # ============================================

    @abstractmethod
    async def insert_approval(self, record: ApprovalRecord) -> None:
        pass

    @abstractmethod
    async def list_approvals(
        self,
        company_id: str,
        record_type: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[ApprovalRecord]:
        pass

    @abstractmethod
    async def update_approval_status(self, approval_id: str, status: ApprovalStatus) -> None:
        pass

    @abstractmethod
    async def insert_execution_log(self, entry: ExecutionLogEntry) -> None:
        pass

    @abstractmethod
    async def insert_audit_event(self, event: AuditEvent) -> None:
        pass
