# Enterprise Autopilot - 感知阶段
"""
Sense 聚合器

提供:
- 部门专属采集器（30 天回看窗口，7 天近期窗口）
- 趋势判断: 近期均值 > 早期均值 × 1.1 为 improving，< × 0.9 为 declining
- 子查询失败降级为空数据，不中止周期
- 数据充分性检查（纯函数）与营销部门的一次性数据引导
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from agents.executor import ExecutorClient
from engine.departments import get_department_spec
from engine.errors import CycleAborted
from engine.models import ApprovalStatus, Department, SenseSnapshot
from engine.settings import AutopilotSettings
from storage.base import POST_SOURCES, DataStore

logger = structlog.get_logger()


# 各渠道的互动字段 (点赞, 评论)
ENGAGEMENT_FIELDS = {
    "instagram": ("like_count", "comment_count"),
    "linkedin": ("likes_count", "comments_count"),
    "facebook": ("likes_count", "comments_count"),
    "tiktok": ("digg_count", "comment_count"),
}

MAX_POSTS_PER_CHANNEL = 50

TREND_UP = 1.1
TREND_DOWN = 0.9


# ============================================
# 趋势计算
# ============================================

def compute_trend(recent_avg: float, older_avg: float) -> str:
    """比较近期与早期均值"""
    if recent_avg > older_avg * TREND_UP:
        return "improving"
    if recent_avg < older_avg * TREND_DOWN:
        return "declining"
    return "stable"


def _split(rows: list[dict], time_field: str, recent_since: datetime) -> tuple[list[dict], list[dict]]:
    recent, older = [], []
    for row in rows:
        ts = row.get(time_field)
        if ts is not None and ts >= recent_since:
            recent.append(row)
        else:
            older.append(row)
    return recent, older


def series_stats(
    rows: list[dict],
    value: Callable[[dict], float],
    recent_since: datetime,
    time_field: str = "created_at",
) -> dict:
    """按行取值的序列统计: total / avg / count / trend"""
    if not rows:
        return {"total": 0, "avg": 0, "count": 0, "trend": "stable"}

    total = sum(value(r) for r in rows)
    recent, older = _split(rows, time_field, recent_since)
    recent_avg = sum(value(r) for r in recent) / len(recent) if recent else 0
    older_avg = sum(value(r) for r in older) / len(older) if older else 0

    return {
        "total": total,
        "avg": total / len(rows),
        "count": len(rows),
        "trend": compute_trend(recent_avg, older_avg),
    }


def rate_trend(
    rows: list[dict],
    now: datetime,
    recent_since: datetime,
    lookback_since: datetime,
    time_field: str = "created_at",
) -> str:
    """按日频率比较近期与早期（用于计数型序列）"""
    recent, older = _split(rows, time_field, recent_since)
    recent_days = max((now - recent_since).days, 1)
    older_days = max((recent_since - lookback_since).days, 1)
    return compute_trend(len(recent) / recent_days, len(older) / older_days)


def _engagement(like_field: str, comment_field: str) -> Callable[[dict], float]:
    def value(post: dict) -> float:
        return (post.get(like_field) or 0) + (post.get(comment_field) or 0)
    return value


# ============================================
# 数据充分性
# ============================================

def is_sufficient(department: str, snapshot: SenseSnapshot) -> bool:
    """快照是否有可推理的数据（纯函数）"""
    m = snapshot.metrics

    if department == Department.MARKETING.value:
        posts = sum(p.get("count", 0) for p in m.get("platforms", {}).values())
        return posts > 0 or len(m.get("active_campaigns", [])) > 0
    if department == Department.SALES.value:
        return m.get("total_deals", 0) > 0 or m.get("contacts_count", 0) > 0
    if department == Department.FINANCE.value:
        return m.get("credits_used_30d", 0) > 0 or len(m.get("recent_snapshots", [])) > 0
    if department == Department.LEGAL.value:
        return m.get("parameters_count", 0) > 0
    if department == Department.HR.value:
        return m.get("team_size", 0) > 0
    if department == Department.OPERATIONS.value:
        return m.get("total_tasks", 0) > 0 or m.get("agent_executions", 0) > 0
    return False


# ============================================
# 感知聚合器
# ============================================

class SenseAggregator:
    """部门感知聚合器"""

    def __init__(
        self,
        store: DataStore,
        settings: AutopilotSettings,
        executor_client: Optional[ExecutorClient] = None,
    ):
        self.store = store
        self.settings = settings
        self.executor_client = executor_client

        self._collectors = {
            Department.MARKETING.value: self._sense_marketing,
            Department.SALES.value: self._sense_sales,
            Department.FINANCE.value: self._sense_finance,
            Department.LEGAL.value: self._sense_legal,
            Department.HR.value: self._sense_hr,
            Department.OPERATIONS.value: self._sense_operations,
        }

    async def _safe_fetch(self, snapshot: SenseSnapshot, source: str, company_id: str, **kwargs) -> list[dict]:
        """子查询失败时降级为空"""
        try:
            return await self.store.fetch_records(source, company_id, **kwargs)
        except Exception as e:
            logger.warning("感知子查询失败，降级为空", source=source, company_id=company_id, error=str(e))
            snapshot.degraded_sources.append(source)
            return []

    async def collect(self, company_id: str, department: str, now: Optional[datetime] = None) -> SenseSnapshot:
        """采集部门快照

        Args:
            company_id: 公司 ID
            department: 部门
            now: 当前时间（测试注入）

        Returns:
            SenseSnapshot
        """
        get_department_spec(department)
        now = now or datetime.utcnow()
        window = {
            "lookback_since": now - timedelta(days=self.settings.sense_lookback_days),
            "recent_since": now - timedelta(days=self.settings.sense_recent_days),
            "now": now,
        }

        snapshot = SenseSnapshot(department=department, collected_at=now)
        snapshot.metrics = await self._collectors[department](snapshot, company_id, window)

        if department in (Department.MARKETING.value, Department.SALES.value):
            snapshot.competitors = await self._competitors(snapshot, company_id)

        logger.info(
            "感知完成",
            company_id=company_id,
            department=department,
            degraded=snapshot.degraded_sources,
        )
        return snapshot

    async def _competitors(self, snapshot: SenseSnapshot, company_id: str) -> list[dict]:
        rows = await self._safe_fetch(snapshot, "competitors", company_id)
        # priority 越小越优先，未设置的排在最后
        rows.sort(key=lambda r: (r.get("priority") is None, r.get("priority") or 0))
        return rows[: self.settings.max_competitors]

    # ============================================
    # 部门采集器
    # ============================================

    async def _sense_marketing(self, snapshot: SenseSnapshot, company_id: str, window: dict) -> dict:
        platforms = {}
        for platform, source in POST_SOURCES.items():
            like_field, comment_field = ENGAGEMENT_FIELDS[platform]
            posts = await self._safe_fetch(
                snapshot, source, company_id,
                since=window["lookback_since"], limit=MAX_POSTS_PER_CHANNEL,
            )
            platforms[platform] = series_stats(
                posts, _engagement(like_field, comment_field), window["recent_since"],
            )

        campaigns = await self._safe_fetch(
            snapshot, "marketing_campaigns", company_id,
            filters={"status": ["active", "running"]},
        )
        mentions = await self._safe_fetch(
            snapshot, "social_listening_mentions", company_id, since=window["recent_since"],
        )
        connections = await self._safe_fetch(
            snapshot, "social_connections", company_id, filters={"is_active": True},
        )

        try:
            pending = len(await self.store.list_approvals(company_id, status=ApprovalStatus.PENDING_REVIEW))
        except Exception as e:
            logger.warning("感知子查询失败，降级为空", source="approvals", error=str(e))
            snapshot.degraded_sources.append("approvals")
            pending = 0

        return {
            "platforms": platforms,
            "active_campaigns": campaigns,
            "sentiment": {
                "positive": sum(1 for m in mentions if m.get("sentiment") == "positive"),
                "negative": sum(1 for m in mentions if m.get("sentiment") == "negative"),
                "neutral": sum(1 for m in mentions if m.get("sentiment") == "neutral"),
                "total": len(mentions),
            },
            "pending_approvals": pending,
            "connected_channels": len(connections),
            "connected_platforms": sorted({c.get("platform") for c in connections if c.get("platform")}),
        }

    async def _sense_sales(self, snapshot: SenseSnapshot, company_id: str, window: dict) -> dict:
        deals = await self._safe_fetch(snapshot, "crm_deals", company_id, time_field="updated_at", limit=100)
        contacts = await self._safe_fetch(snapshot, "crm_contacts", company_id, limit=100)
        activities = await self._safe_fetch(
            snapshot, "crm_activities", company_id, since=window["lookback_since"], limit=200,
        )

        stalled_before = window["now"] - timedelta(days=7)
        stalled = [d for d in deals if d.get("updated_at") and d["updated_at"] < stalled_before]
        pipeline_value = sum(d.get("value") or 0 for d in deals)

        stages: dict[str, int] = {}
        for deal in deals:
            stage = deal.get("stage") or "unknown"
            stages[stage] = stages.get(stage, 0) + 1

        return {
            "total_deals": len(deals),
            "pipeline_value": pipeline_value,
            "stalled_deals": len(stalled),
            "avg_deal_value": pipeline_value / len(deals) if deals else 0,
            "contacts_count": len(contacts),
            "recent_activities": {
                "count": len(activities),
                "trend": rate_trend(activities, window["now"], window["recent_since"], window["lookback_since"]),
            },
            "stage_distribution": stages,
        }

    async def _sense_finance(self, snapshot: SenseSnapshot, company_id: str, window: dict) -> dict:
        usage = await self._safe_fetch(
            snapshot, "agent_usage_log", company_id, since=window["lookback_since"],
        )
        snapshots = await self._safe_fetch(
            snapshot, "business_health_snapshots", company_id, time_field="snapshot_date", limit=30,
        )
        credits = series_stats(usage, lambda r: r.get("credits_consumed") or 0, window["recent_since"])

        return {
            "credits_used_30d": credits["total"],
            "burn_rate": credits["avg"],
            "credit_burn": credits,
            "recent_snapshots": snapshots[:7],
        }

    async def _sense_legal(self, snapshot: SenseSnapshot, company_id: str, window: dict) -> dict:
        params = await self._safe_fetch(
            snapshot, "company_parameters", company_id, time_field="updated_at", key_prefix="legal_",
        )
        return {
            "legal_parameters": params,
            "parameters_count": len(params),
        }

    async def _sense_hr(self, snapshot: SenseSnapshot, company_id: str, window: dict) -> dict:
        members = await self._safe_fetch(snapshot, "company_members", company_id, time_field="joined_at")
        params = await self._safe_fetch(
            snapshot, "company_parameters", company_id, time_field="updated_at", key_prefix="hr_",
        )

        roles: dict[str, int] = {}
        for member in members:
            role = member.get("role") or "member"
            roles[role] = roles.get(role, 0) + 1

        return {
            "team_size": len(members),
            "roles": roles,
            "hr_parameters": params,
        }

    async def _sense_operations(self, snapshot: SenseSnapshot, company_id: str, window: dict) -> dict:
        tasks = await self._safe_fetch(snapshot, "workforce_tasks", company_id)
        usage = await self._safe_fetch(
            snapshot, "agent_usage_log", company_id, since=window["lookback_since"],
        )

        completed = [t for t in tasks if t.get("status") == "completed"]
        durations = [
            (t["completed_at"] - t["started_at"]).total_seconds() * 1000
            for t in completed
            if t.get("started_at") and t.get("completed_at")
        ]
        failures = [u for u in usage if u.get("status") in ("error", "failed")]

        return {
            "total_tasks": len(tasks),
            "completed_tasks": len(completed),
            "pending_tasks": sum(1 for t in tasks if t.get("status") == "pending"),
            "avg_completion_time_ms": sum(durations) / len(durations) if durations else 0,
            "agent_executions": len(usage),
            "failure_rate": len(failures) / len(usage) if usage else 0,
            "executions": {
                "count": len(usage),
                "trend": rate_trend(usage, window["now"], window["recent_since"], window["lookback_since"]),
            },
        }

    # ============================================
    # 数据充分性与引导
    # ============================================

    async def ensure_sufficient(
        self,
        company_id: str,
        department: str,
        snapshot: SenseSnapshot,
        cycle_id: str = "",
        now: Optional[datetime] = None,
    ) -> SenseSnapshot:
        """数据不足时: 营销部门尝试一次引导并重新感知，其他部门中止

        Raises:
            CycleAborted: 数据不足
        """
        if is_sufficient(department, snapshot):
            return snapshot

        if department != Department.MARKETING.value:
            raise CycleAborted(
                phase="sense",
                reason=f"insufficient_data: {department} snapshot is empty",
            )

        imported = await self._bootstrap_marketing(company_id, snapshot, cycle_id)
        if imported:
            snapshot = await self.collect(company_id, department, now)
            if is_sufficient(department, snapshot):
                logger.info("数据引导成功", company_id=company_id, executors=imported)
                return snapshot

        raise CycleAborted(
            phase="sense",
            reason=(
                "needs_action: insufficient marketing data after bootstrap attempt "
                f"(import executors invoked: {len(imported)})"
            ),
            missing=["imported_posts"],
        )

    async def _bootstrap_marketing(self, company_id: str, snapshot: SenseSnapshot, cycle_id: str) -> list[str]:
        """调用已连接渠道的导入执行器（每周期最多一次）"""
        if self.executor_client is None:
            return []

        platforms = set(snapshot.metrics.get("connected_platforms", []))
        if not platforms:
            return []

        executors = [
            e for e in await self.store.list_executors(Department.MARKETING.value)
            if e.import_platform in platforms and e.is_implemented
        ]

        invoked = []
        for executor in executors:
            payload = {
                "company_id": company_id,
                "department": Department.MARKETING.value,
                "decision_type": "import_posts",
                "parameters": {"platform": executor.import_platform},
                "cycle_id": cycle_id,
                "autopilot": True,
                "company_context": {},
                "call_stack": [self.settings.engine_executor_name],
                "call_depth": 1,
            }
            try:
                result = await self.executor_client.invoke(executor, payload)
            except Exception as e:
                logger.warning("数据引导失败", executor=executor.code, error=str(e))
                continue
            if result.get("success"):
                invoked.append(executor.code)

        logger.info("营销数据引导", company_id=company_id, platforms=sorted(platforms), invoked=invoked)
        return invoked
