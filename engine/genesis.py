# Enterprise Autopilot - 能力演化
"""
Capability Genesis

缺口检测（最近 50 条决策，限本部门决策类型词表）:
- unmapped_executors: 已放行但从未执行（无执行器映射）≥2 次
- recurring_blocks: 同一原因被拦截 ≥3 次
- unhandled_signals: 近 7 天高影响威胁信号
- repeated_successes: 同类型 positive 记忆 ≥3
- repeated_failures: 同类型强负面记忆（score ≤ -0.5）≥3

缺口总数 ≥2 时由 LLM 提出至多 3 个新能力，按风险治理:
- low + auto_activate → 立即试用（7 天）
- low / medium        → 待审核审批记录，保持 proposed
- high / critical     → 需签字的草稿审批，保持 proposed

桥接: 外部已批准的能力审批 → proposed 能力进入试用，审批标记为 applied
"""

import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Union

import structlog
from pydantic import BaseModel, Field

from agents.llm import LLMClient
from engine.departments import get_department_spec
from engine.errors import AutopilotError
from engine.learn import STRONG_NEGATIVE
from engine.lifecycle import CapabilityLifecycle
from engine.models import (
    EXECUTABLE_RESULTS,
    ApprovalRecord,
    ApprovalStatus,
    Capability,
    CapabilityStatus,
    GuardrailResult,
    OutcomeEvaluation,
    RiskLevel,
)
from engine.parsing import extract_json_array, validate_items
from engine.settings import AutopilotSettings
from storage.base import DataStore

logger = structlog.get_logger()


SIGNAL_LOOKBACK_DAYS = 7
UNMAPPED_THRESHOLD = 2
REPEAT_THRESHOLD = 3


# ============================================
# 缺口报告
# ============================================

@dataclass
class GapReport:
    """能力缺口"""
    unmapped_executors: list[dict] = field(default_factory=list)
    recurring_blocks: list[dict] = field(default_factory=list)
    unhandled_signals: list[dict] = field(default_factory=list)
    repeated_successes: list[dict] = field(default_factory=list)
    repeated_failures: list[dict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.unmapped_executors)
            + len(self.recurring_blocks)
            + len(self.unhandled_signals)
            + len(self.repeated_successes)
            + len(self.repeated_failures)
        )

    def to_dict(self) -> dict:
        return asdict(self)


class CapabilityProposal(BaseModel):
    """LLM 提出的能力"""
    code: str = Field(pattern=r"^[a-z][a-z0-9_]*$")
    name: str
    description: str = ""
    trigger_condition: dict = Field(default_factory=dict)
    decision_types: list[str] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.MEDIUM
    auto_activate: bool = False
    required_data: list[str] = Field(default_factory=list)
    success_metrics: list[str] = Field(default_factory=list)
    proposed_reason: str = "AI-generated based on gap analysis"


# ============================================
# 治理
# ============================================

@dataclass
class AutoTrial:
    """直接进入试用"""
    reason: str = "Low-risk capability auto-activated for trial"


@dataclass
class PendingReview:
    """待人工审核"""
    approvers: list[str] = field(default_factory=lambda: ["department_lead"])


@dataclass
class RequiresApproval:
    """需要人工签字的草稿"""
    approvers: list[str] = field(default_factory=lambda: ["department_lead", "executive"])


GovernanceAction = Union[AutoTrial, PendingReview, RequiresApproval]


def decide_governance(risk_level: RiskLevel, auto_activate: bool) -> GovernanceAction:
    """按风险等级决定治理路径"""
    if risk_level.rank >= RiskLevel.HIGH.rank:
        return RequiresApproval()
    if risk_level == RiskLevel.LOW and auto_activate:
        return AutoTrial()
    return PendingReview()


class CapabilityGenesis:
    """能力演化引擎"""

    def __init__(
        self,
        store: DataStore,
        llm: LLMClient,
        lifecycle: CapabilityLifecycle,
        settings: AutopilotSettings,
    ):
        self.store = store
        self.llm = llm
        self.lifecycle = lifecycle
        self.settings = settings

    # ============================================
    # 缺口检测
    # ============================================

    async def detect_gaps(self, company_id: str, department: str, now: Optional[datetime] = None) -> GapReport:
        now = now or datetime.utcnow()
        vocabulary = set(get_department_spec(department).decision_types)
        decisions = [
            d for d in await self.store.list_recent_decisions(company_id, department, limit=50)
            if d.decision_type in vocabulary
        ]
        report = GapReport()

        unmapped = Counter(
            d.decision_type for d in decisions
            if d.guardrail_result in EXECUTABLE_RESULTS and d.execution_result == "no_executor_mapped"
        )
        report.unmapped_executors = [
            {"decision_type": t, "count": n}
            for t, n in unmapped.items() if n >= UNMAPPED_THRESHOLD
        ]

        blocks = Counter(
            (d.decision_type, d.guardrail_details or "unknown") for d in decisions
            if d.guardrail_result == GuardrailResult.BLOCKED
        )
        report.recurring_blocks = [
            {"decision_type": t, "block_reason": reason, "count": n}
            for (t, reason), n in blocks.items() if n >= REPEAT_THRESHOLD
        ]

        intel = await self.store.list_intelligence(
            company_id, fetched_since=now - timedelta(days=SIGNAL_LOOKBACK_DAYS), limit=20,
        )
        for row in intel:
            signals = (row.get("data") or {}).get("signals") or []
            threats = [s for s in signals if s.get("impact") == "high" and s.get("category") == "threat"]
            if threats:
                report.unhandled_signals.append({"source": row.get("source"), "signal_count": len(threats)})

        evaluated = await self.store.list_memory_entries(
            company_id, department,
            outcomes=[OutcomeEvaluation.POSITIVE, OutcomeEvaluation.NEGATIVE],
            limit=50,
        )
        successes = Counter(
            m.decision_type for m in evaluated if m.outcome_evaluation == OutcomeEvaluation.POSITIVE
        )
        failures = Counter(
            m.decision_type for m in evaluated
            if m.outcome_evaluation == OutcomeEvaluation.NEGATIVE
            and m.outcome_score is not None
            and m.outcome_score <= STRONG_NEGATIVE
        )
        report.repeated_successes = [
            {"decision_type": t, "success_count": n}
            for t, n in successes.items() if n >= REPEAT_THRESHOLD
        ]
        report.repeated_failures = [
            {"decision_type": t, "failure_count": n}
            for t, n in failures.items() if n >= REPEAT_THRESHOLD
        ]

        logger.info("缺口检测", company_id=company_id, department=department, total=report.total)
        return report

    # ============================================
    # 提案
    # ============================================

    def _build_messages(self, department: str, profile: dict, report: GapReport, existing: list[str]) -> list[dict]:
        system = (
            "You are a Capability Genesis AI. Given a company profile, department, and gap analysis, "
            "propose 1-3 NEW capabilities that would address the identified gaps.\n\n"
            "Each capability must be a JSON object with:\n"
            '- code: snake_case unique identifier (e.g. "competitive_response_engine")\n'
            "- name: Human-readable name\n"
            "- description: Brief description of what this capability does\n"
            "- trigger_condition: JSON object with activation conditions\n"
            f"- decision_types: which of these decision types it handles: "
            f"{', '.join(get_department_spec(department).decision_types)}\n"
            '- risk_level: "low" | "medium" | "high" | "critical"\n'
            "- auto_activate: true for low-risk analytics/monitoring, false for action-heavy capabilities\n"
            "- required_data, success_metrics: lists of strings\n"
            "- proposed_reason: Why this capability is needed based on the gaps\n\n"
            f"Do NOT duplicate existing capabilities: {', '.join(existing) or 'none'}\n"
            "Respond ONLY with a valid JSON array of capability objects."
        )
        user = {
            "company": {
                "name": profile.get("name"),
                "industry": profile.get("industry_sector"),
                "country": profile.get("country"),
            },
            "department": department,
            "gap_report": report.to_dict(),
        }
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": json.dumps(user, ensure_ascii=False, default=str)},
        ]

    async def propose(
        self,
        company_id: str,
        department: str,
        report: GapReport,
        cycle_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[list[str], list[dict]]:
        """提出新能力并按风险治理

        Returns:
            (新插入的能力 code, 发生的状态转移)
        """
        if report.total < self.settings.gap_min_total:
            logger.info("缺口不足，不提出能力", department=department, total=report.total)
            return [], []

        profile = await self.store.get_company_profile(company_id)
        existing = {c.capability_code for c in await self.store.list_capabilities(company_id)}

        try:
            response = await self.llm.complete(
                self._build_messages(department, profile, report, sorted(existing)),
                temperature=0.5,
            )
            items = extract_json_array(response)
        except AutopilotError as e:
            logger.warning("能力提案失败", department=department, error=e.message)
            return [], []

        proposals, _ = validate_items(items, CapabilityProposal)
        vocabulary = set(get_department_spec(department).decision_types)

        inserted, transitions = [], []
        for proposal in proposals[: self.settings.max_proposals]:
            if proposal.code in existing:
                continue

            capability = Capability(
                company_id=company_id,
                department=department,
                capability_code=proposal.code,
                capability_name=proposal.name,
                description=proposal.description,
                trigger_condition=proposal.trigger_condition,
                decision_types=[t for t in proposal.decision_types if t in vocabulary],
                status=CapabilityStatus.PROPOSED,
                source="ai_generated",
                auto_activate=proposal.auto_activate,
                risk_level=proposal.risk_level,
                required_data=proposal.required_data,
                success_metrics=proposal.success_metrics,
                proposed_reason=proposal.proposed_reason,
                gap_evidence=report.to_dict(),
            )
            if not await self.store.insert_capability(capability):
                continue
            existing.add(proposal.code)
            inserted.append(proposal.code)
            logger.info("提出新能力", department=department, capability=proposal.code, risk=proposal.risk_level.value)

            transition = await self.govern(capability, cycle_id, now)
            if transition:
                transitions.append(transition)

        return inserted, transitions

    async def govern(
        self,
        capability: Capability,
        cycle_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[dict]:
        """执行治理动作，进入试用时返回状态转移"""
        action = decide_governance(capability.risk_level, capability.auto_activate)

        if isinstance(action, AutoTrial):
            return await self.lifecycle.transition(capability, "auto_trial", action.reason, now, cycle_id)

        draft = isinstance(action, RequiresApproval)
        record = ApprovalRecord(
            company_id=capability.company_id,
            record_type="capability",
            reference_id=capability.id,
            content_type=f"autopilot_{capability.department}_capability",
            content_data=capability.to_dict(),
            status=ApprovalStatus.DRAFT if draft else ApprovalStatus.PENDING_REVIEW,
            required_approvers=list(action.approvers),
            requires_sign_off=draft,
            notes=f"[Capability Genesis] {capability.capability_name}: {capability.proposed_reason}",
        )
        await self.store.insert_approval(record)
        return None

    # ============================================
    # 审批桥接
    # ============================================

    async def bridge_approvals(
        self,
        company_id: str,
        now: Optional[datetime] = None,
        cycle_id: Optional[str] = None,
    ) -> list[dict]:
        """已批准的能力审批 → 能力进入试用"""
        approvals = await self.store.list_approvals(
            company_id, record_type="capability", status=ApprovalStatus.APPROVED,
        )
        transitions = []
        for approval in approvals:
            capability = await self.store.get_capability(approval.reference_id)
            if capability is not None and capability.status == CapabilityStatus.PROPOSED:
                transitions.append(await self.lifecycle.transition(
                    capability, "approved", f"Approved by human reviewer (approval {approval.id})", now, cycle_id,
                ))
            else:
                logger.info("审批对应的能力不可试用", approval_id=approval.id, reference_id=approval.reference_id)
            await self.store.update_approval_status(approval.id, ApprovalStatus.APPLIED)
        return transitions
