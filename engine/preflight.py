# Enterprise Autopilot - 预检
"""
预检: 部门是否有足够的原始数据运行周期

- check_readiness: 纯函数，只依赖计数
- PreflightChecker: 从数据存储收集计数
"""

from dataclasses import dataclass, field

import structlog

from engine.departments import get_department_spec
from engine.models import Department
from storage.base import POST_SOURCES, DataStore

logger = structlog.get_logger()


@dataclass
class PreflightResult:
    """预检结果"""
    ready: bool
    reason: str = ""
    missing: list[str] = field(default_factory=list)
    counts: dict = field(default_factory=dict)


# 部门 → [(前置条件组, 原因)]；组内任一计数达标即满足
READINESS_RULES: dict[str, list[tuple[dict[str, int], str]]] = {
    Department.MARKETING.value: [
        ({"connected_channels": 1, "imported_posts": 5},
         "connect at least one social channel or import 5 posts"),
    ],
    Department.SALES.value: [
        ({"deals": 1, "contacts": 1}, "add at least one deal or contact to the CRM"),
    ],
    Department.FINANCE.value: [
        ({"usage_records": 1, "health_snapshots": 1}, "no credit usage or business health data yet"),
    ],
    Department.LEGAL.value: [
        ({"legal_parameters": 1}, "configure at least one legal parameter"),
    ],
    Department.HR.value: [
        ({"members": 2}, "invite at least 2 team members"),
    ],
    Department.OPERATIONS.value: [
        ({"workforce_tasks": 1, "agent_executions": 1}, "no workforce tasks or agent executions yet"),
    ],
}


def check_readiness(department: str, counts: dict) -> PreflightResult:
    """根据计数判断部门是否就绪

    Args:
        department: 部门
        counts: 前置条件计数

    Returns:
        PreflightResult，未就绪时 reason 以 "needs_action:" 开头
    """
    get_department_spec(department)

    missing = []
    reasons = []
    for group, reason in READINESS_RULES.get(department, []):
        if any(counts.get(key, 0) >= minimum for key, minimum in group.items()):
            continue
        missing.extend(group.keys())
        reasons.append(reason)

    if missing:
        return PreflightResult(
            ready=False,
            reason="needs_action: " + "; ".join(reasons),
            missing=missing,
            counts=dict(counts),
        )
    return PreflightResult(ready=True, counts=dict(counts))


class PreflightChecker:
    """预检器"""

    def __init__(self, store: DataStore):
        self.store = store

    async def gather_counts(self, company_id: str, department: str) -> dict:
        """收集部门前置条件计数"""
        count = self.store.count_records

        if department == Department.MARKETING.value:
            posts = 0
            for source in POST_SOURCES.values():
                posts += await count(source, company_id)
            return {
                "connected_channels": await count(
                    "social_connections", company_id, filters={"is_active": True},
                ),
                "imported_posts": posts,
            }
        if department == Department.SALES.value:
            return {
                "deals": await count("crm_deals", company_id),
                "contacts": await count("crm_contacts", company_id),
            }
        if department == Department.FINANCE.value:
            return {
                "usage_records": await count("agent_usage_log", company_id),
                "health_snapshots": await count("business_health_snapshots", company_id),
            }
        if department == Department.LEGAL.value:
            return {
                "legal_parameters": await count("company_parameters", company_id, key_prefix="legal_"),
            }
        if department == Department.HR.value:
            return {"members": await count("company_members", company_id)}
        if department == Department.OPERATIONS.value:
            return {
                "workforce_tasks": await count("workforce_tasks", company_id),
                "agent_executions": await count("agent_usage_log", company_id),
            }
        return {}

    async def check(self, company_id: str, department: str) -> PreflightResult:
        counts = await self.gather_counts(company_id, department)
        result = check_readiness(department, counts)
        if not result.ready:
            logger.warning(
                "预检未通过",
                company_id=company_id,
                department=department,
                reason=result.reason,
                missing=result.missing,
            )
        return result
