# Enterprise Autopilot - 护栏策略引擎
"""
Guard 阶段

每条决策依次经过:
1. 硬拦截（首个命中即 blocked，跳过其余规则）
   - 跨部门拦截（财务预算超支 / 法务合规审查）
   - 日额度
   - 按决策类型的 24h 频率上限
   - 禁用词 / 限制话题
   - 内容类动作的活跃时段
2. 软调整（只升不降）
   - 活动预算 ≥90% 拦截，≥75% 警告
   - 部门月预算用尽拦截，≥80% 风险升至 high
   - 行业规则（fintech 提案需合规许可，healthcare 内容类升级）
   - 人工审批配置: 敏感类型至少 high
3. 处置: low→auto_approved, medium→post_review, high→requires_approval, critical→escalated

非 auto_approved 的处置都写入审计事件 guardrail_intervention（含反事实说明）。
预算与频率聚合在每次守卫时重新读取，并发周期之间是尽力而为的。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from engine.audit import AuditLogger
from engine.departments import CONTENT_TYPES, PROPOSAL_TYPES, SENSITIVE_TYPES, SPEND_TYPES
from engine.models import (
    Decision,
    Department,
    DepartmentConfig,
    GuardrailResult,
    RiskLevel,
)
from storage.base import DataStore

logger = structlog.get_logger()


# 风险 → 处置
DISPOSITION = {
    RiskLevel.LOW: GuardrailResult.AUTO_APPROVED,
    RiskLevel.MEDIUM: GuardrailResult.POST_REVIEW,
    RiskLevel.HIGH: GuardrailResult.REQUIRES_APPROVAL,
    RiskLevel.CRITICAL: GuardrailResult.ESCALATED,
}

CROSS_DEPARTMENT_KEYS = [
    "finance_budget_status",
    "legal_compliance_review_required",
    "legal_compliance_cleared",
]

CAMPAIGN_BLOCK_RATIO = 0.9
CAMPAIGN_WARN_RATIO = 0.75
MONTHLY_ESCALATE_RATIO = 0.8


@dataclass
class GuardContext:
    """本次守卫读取的聚合值"""
    now: datetime
    parameters: dict = field(default_factory=dict)
    industry_sector: str = ""
    credits_today: int = 0
    credits_this_month: int = 0
    actioned_24h: dict = field(default_factory=dict)  # {decision_type: count}
    campaigns: dict = field(default_factory=dict)     # {campaign_id: row}

    def flag(self, key: str) -> str:
        return str(self.parameters.get(key, "")).strip().lower()


def _hour(value: str, default: int) -> int:
    try:
        return int(str(value).split(":")[0])
    except (TypeError, ValueError):
        return default


def within_active_hours(active_hours: dict, now: datetime) -> bool:
    """小时粒度、两端包含；支持跨夜窗口（如 22:00-06:00）"""
    start = _hour((active_hours or {}).get("start", "09:00"), 9)
    end = _hour((active_hours or {}).get("end", "21:00"), 21)
    hour = now.hour
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


# ============================================
# 硬拦截规则
# ============================================

HardRule = Callable[[Decision, DepartmentConfig, GuardContext], Optional[str]]


def cross_department_block(decision: Decision, config: DepartmentConfig, ctx: GuardContext) -> Optional[str]:
    department = decision.department
    if department in (Department.MARKETING.value, Department.SALES.value):
        if decision.decision_type in SPEND_TYPES and ctx.flag("finance_budget_status") == "exceeded":
            return f"Finance department has flagged budget exceeded - {department} spending actions blocked"
    if department == Department.SALES.value:
        if decision.decision_type in PROPOSAL_TYPES and ctx.flag("legal_compliance_review_required") == "true":
            return "Legal compliance review required - sales proposals and deal advances blocked"
    return None


def daily_credit_block(decision: Decision, config: DepartmentConfig, ctx: GuardContext) -> Optional[str]:
    limit = config.daily_credit_limit
    if ctx.credits_today >= limit:
        return f"Daily credit limit reached ({ctx.credits_today}/{limit})"
    return None


def rate_limit_block(decision: Decision, config: DepartmentConfig, ctx: GuardContext) -> Optional[str]:
    limit = config.rate_limit_for(decision.decision_type)
    count = ctx.actioned_24h.get(decision.decision_type, 0)
    if count >= limit:
        return f"Rate limit reached for {decision.decision_type} ({count}/{limit} in 24h)"
    return None


def content_filter_block(decision: Decision, config: DepartmentConfig, ctx: GuardContext) -> Optional[str]:
    text = (decision.description or "").lower()
    for word in config.forbidden_words:
        if word and word.lower() in text:
            return f"Contains forbidden word: {word}"
    for topic in config.topic_restrictions:
        if topic and topic.lower() in text:
            return f"Contains restricted topic: {topic}"
    return None


def active_hours_block(decision: Decision, config: DepartmentConfig, ctx: GuardContext) -> Optional[str]:
    if decision.decision_type in CONTENT_TYPES and not within_active_hours(config.active_hours, ctx.now):
        return "Outside active hours"
    return None


HARD_RULES: list[HardRule] = [
    cross_department_block,
    daily_credit_block,
    rate_limit_block,
    content_filter_block,
    active_hours_block,
]


# ============================================
# 护栏引擎
# ============================================

class GuardEngine:
    """护栏策略引擎"""

    def __init__(self, store: DataStore, audit: AuditLogger):
        self.store = store
        self.audit = audit

    async def load_context(
        self,
        company_id: str,
        department: str,
        decisions: list[Decision],
        now: Optional[datetime] = None,
    ) -> GuardContext:
        """读取本次守卫需要的聚合值"""
        now = now or datetime.utcnow()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = midnight.replace(day=1)

        params = await self.store.fetch_records(
            "company_parameters", company_id,
            time_field="updated_at",
            filters={"parameter_key": CROSS_DEPARTMENT_KEYS},
        )
        campaigns = await self.store.fetch_records(
            "marketing_campaigns", company_id, filters={"status": ["active", "running"]},
        )
        profile = await self.store.get_company_profile(company_id)

        actioned = {}
        for decision_type in {d.decision_type for d in decisions}:
            actioned[decision_type] = await self.store.count_actioned_decisions(
                company_id, department, decision_type, since=now - timedelta(hours=24),
            )

        return GuardContext(
            now=now,
            parameters={p["parameter_key"]: p.get("parameter_value") for p in params},
            industry_sector=(profile.get("industry_sector") or "").lower(),
            credits_today=await self.store.sum_credits(company_id, since=midnight),
            credits_this_month=await self.store.sum_credits(company_id, since=month_start, department=department),
            actioned_24h=actioned,
            campaigns={str(c.get("id")): c for c in campaigns},
        )

    def check_hard_rules(self, decision: Decision, config: DepartmentConfig, ctx: GuardContext) -> Optional[str]:
        for rule in HARD_RULES:
            reason = rule(decision, config, ctx)
            if reason:
                return reason
        return None

    def apply_soft_rules(self, decision: Decision, config: DepartmentConfig, ctx: GuardContext) -> Optional[str]:
        """软调整，只升不降

        Returns:
            拦截原因（若被拦截）
        """
        notes = []

        # 活动预算
        campaign_id = decision.action_parameters.get("campaign_id")
        campaign = ctx.campaigns.get(str(campaign_id)) if campaign_id is not None else None
        if campaign and (campaign.get("budget") or 0) > 0:
            spent = campaign.get("spent") or campaign.get("budget_spent") or 0
            ratio = spent / campaign["budget"]
            if ratio >= CAMPAIGN_BLOCK_RATIO:
                return f"Campaign budget {ratio:.0%} consumed"
            if ratio >= CAMPAIGN_WARN_RATIO:
                decision.warnings.append(f"Campaign budget {ratio:.0%} consumed")

        # 部门月预算
        budget = config.monthly_credit_budget
        if budget:
            if ctx.credits_this_month >= budget:
                return f"Monthly department credit budget exhausted ({ctx.credits_this_month}/{budget})"
            if ctx.credits_this_month >= budget * MONTHLY_ESCALATE_RATIO:
                decision.risk_level = decision.risk_level.at_least(RiskLevel.HIGH)
                notes.append("monthly budget above 80%")

        # 行业规则
        sector = ctx.industry_sector
        if "fintech" in sector and decision.decision_type == "create_proposal":
            if ctx.flag("legal_compliance_cleared") != "true":
                return "Fintech proposals require prior compliance clearance"
        if "health" in sector and decision.decision_type in CONTENT_TYPES:
            decision.risk_level = decision.risk_level.at_least(RiskLevel.HIGH)
            notes.append("healthcare content pending legal review")

        # 人工审批配置
        if config.require_human_approval and decision.decision_type in SENSITIVE_TYPES:
            decision.risk_level = decision.risk_level.at_least(RiskLevel.HIGH)
            notes.append("human approval required")

        if notes:
            decision.guardrail_details = "; ".join(notes)
        return None

    async def evaluate(
        self,
        company_id: str,
        department: str,
        cycle_id: str,
        decisions: list[Decision],
        config: DepartmentConfig,
        now: Optional[datetime] = None,
    ) -> list[Decision]:
        """为每条决策确定处置（保持输入顺序）"""
        if not decisions:
            return decisions

        ctx = await self.load_context(company_id, department, decisions, now)

        for decision in decisions:
            original_risk = decision.risk_level
            reason = self.check_hard_rules(decision, config, ctx) or self.apply_soft_rules(decision, config, ctx)

            if reason:
                decision.guardrail_result = GuardrailResult.BLOCKED
                decision.guardrail_details = reason
            else:
                decision.guardrail_result = DISPOSITION[decision.risk_level]
                if not decision.guardrail_details:
                    decision.guardrail_details = "All guardrails passed"

            if decision.guardrail_result != GuardrailResult.AUTO_APPROVED:
                await self._record_intervention(decision, original_risk)

        logger.info(
            "护栏完成",
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            results=[d.guardrail_result.value for d in decisions],
        )
        return decisions

    async def _record_intervention(self, decision: Decision, original_risk: RiskLevel) -> None:
        target = decision.agent_to_execute or "no mapped executor"
        counterfactual = (
            f"Without intervention, '{decision.decision_type}' would have been executed "
            f"immediately via {target} at {original_risk.value} risk"
        )
        await self.audit.record(
            company_id=decision.company_id,
            department=decision.department,
            cycle_id=decision.cycle_id,
            event_type="guardrail_intervention",
            target_type="decision",
            target_id=decision.id,
            details={
                "decision_type": decision.decision_type,
                "disposition": decision.guardrail_result.value,
                "reason": decision.guardrail_details,
                "original_risk": original_risk.value,
                "final_risk": decision.risk_level.value,
                "counterfactual": counterfactual,
            },
        )
