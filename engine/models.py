# Enterprise Autopilot - 核心实体
"""
自动驾驶引擎的数据模型

包含:
- 枚举: 部门、优先级、风险等级、护栏处置、记忆结论、能力状态、审批状态
- 实体: DepartmentConfig, SenseSnapshot, Decision, MemoryEntry, Capability,
        ExecutionLogEntry, AuditEvent, ApprovalRecord, ExecutorDefinition
- 周期结果: CycleResult
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


# ============================================
# 枚举定义
# ============================================

class Department(str, Enum):
    """部门"""
    MARKETING = "marketing"
    SALES = "sales"
    FINANCE = "finance"
    LEGAL = "legal"
    HR = "hr"
    OPERATIONS = "operations"


class Priority(str, Enum):
    """决策优先级"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RiskLevel(str, Enum):
    """风险等级（四级）"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return RISK_ORDER.index(self)

    def at_least(self, other: "RiskLevel") -> "RiskLevel":
        """只升不降"""
        return self if self.rank >= other.rank else other


RISK_ORDER: list[RiskLevel] = [
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
]


class GuardrailResult(str, Enum):
    """护栏处置（封闭枚举）"""
    AUTO_APPROVED = "auto_approved"          # 直接执行
    POST_REVIEW = "post_review"              # 执行后人工复核
    REQUIRES_APPROVAL = "requires_approval"  # 待审批，不执行
    ESCALATED = "escalated"                  # 多方审批，不执行
    BLOCKED = "blocked"                      # 拦截


EXECUTABLE_RESULTS = {GuardrailResult.AUTO_APPROVED, GuardrailResult.POST_REVIEW}


class OutcomeEvaluation(str, Enum):
    """记忆结论"""
    PENDING = "pending"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class CapabilityStatus(str, Enum):
    """能力生命周期状态"""
    SEEDED = "seeded"
    PROPOSED = "proposed"
    TRIAL = "trial"
    ACTIVE = "active"
    DEPRECATED = "deprecated"


class ApprovalStatus(str, Enum):
    """审批状态"""
    DRAFT = "draft"                  # 草稿，需要人工签字
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"              # 已被引擎消费


class PhaseStatus(str, Enum):
    """阶段状态"""
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"
    SKIPPED = "skipped"


# ============================================
# 配置
# ============================================

@dataclass
class DepartmentConfig:
    """部门执行配置（引擎只读）"""
    company_id: str
    department: str
    enabled: bool = True
    execution_frequency: str = "6h"

    # 预算
    max_credits_per_cycle: int = 10
    max_credits_per_day: Optional[int] = None
    monthly_credit_budget: Optional[int] = None
    max_posts_per_day: int = 5
    max_actions_per_type: int = 10
    rate_limits: dict = field(default_factory=dict)  # {decision_type: max_per_24h}

    # 时间窗口
    active_hours: dict = field(default_factory=lambda: {"start": "09:00", "end": "21:00"})

    # 护栏
    forbidden_words: list[str] = field(default_factory=list)
    topic_restrictions: list[str] = field(default_factory=list)
    allowed_actions: list[str] = field(default_factory=list)
    require_human_approval: bool = False

    maturity_level: str = "starter"

    # 运行记录
    last_execution_at: Optional[datetime] = None
    total_cycles_run: int = 0

    @property
    def daily_credit_limit(self) -> int:
        """日额度，未单独配置时沿用单周期额度"""
        if self.max_credits_per_day is not None:
            return self.max_credits_per_day
        return self.max_credits_per_cycle

    def rate_limit_for(self, decision_type: str) -> int:
        return int(self.rate_limits.get(decision_type, self.max_actions_per_type))

    @classmethod
    def from_dict(cls, data: dict) -> "DepartmentConfig":
        """从数据行创建配置"""
        guardrails = data.get("guardrails") or {}
        return cls(
            company_id=str(data.get("company_id", "")),
            department=data.get("department", ""),
            enabled=data.get("autopilot_enabled", data.get("enabled", True)),
            execution_frequency=data.get("execution_frequency") or "6h",
            max_credits_per_cycle=data.get("max_credits_per_cycle") or 10,
            max_credits_per_day=data.get("max_credits_per_day"),
            monthly_credit_budget=data.get("monthly_credit_budget"),
            max_posts_per_day=data.get("max_posts_per_day") or 5,
            max_actions_per_type=data.get("max_actions_per_type") or 10,
            rate_limits=data.get("rate_limits") or {},
            active_hours=data.get("active_hours") or {"start": "09:00", "end": "21:00"},
            forbidden_words=guardrails.get("forbidden_words", data.get("forbidden_words") or []),
            topic_restrictions=guardrails.get("topic_restrictions", data.get("topic_restrictions") or []),
            allowed_actions=data.get("allowed_actions") or [],
            require_human_approval=bool(data.get("require_human_approval", False)),
            maturity_level=data.get("maturity_level") or "starter",
            last_execution_at=data.get("last_execution_at"),
            total_cycles_run=data.get("total_cycles_run") or 0,
        )


# ============================================
# 感知快照
# ============================================

@dataclass
class SenseSnapshot:
    """部门感知快照（每周期新建，只嵌入日志）"""
    department: str
    metrics: dict = field(default_factory=dict)
    competitors: list[dict] = field(default_factory=list)
    collected_at: datetime = field(default_factory=datetime.utcnow)
    degraded_sources: list[str] = field(default_factory=list)

    def trend_signature(self) -> list[str]:
        """提取所有趋势方向，用于粗粒度上下文哈希"""
        trends = []

        def _walk(prefix: str, node: Any) -> None:
            if isinstance(node, dict):
                for key in sorted(node):
                    value = node[key]
                    if key == "trend" and isinstance(value, str):
                        trends.append(f"{prefix}:{value}")
                    else:
                        _walk(f"{prefix}.{key}" if prefix else key, value)

        _walk("", self.metrics)
        return trends

    def to_dict(self) -> dict:
        return {
            "department": self.department,
            "metrics": self.metrics,
            "competitors": self.competitors,
            "collected_at": self.collected_at.isoformat(),
            "degraded_sources": self.degraded_sources,
        }


# ============================================
# 决策
# ============================================

@dataclass
class Decision:
    """决策

    由 Think 创建，Guard/Act 修改，Learn 持久化后不可变。
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    company_id: str = ""
    department: str = ""
    cycle_id: str = ""

    decision_type: str = ""
    priority: Priority = Priority.MEDIUM
    risk_level: RiskLevel = RiskLevel.MEDIUM

    description: str = ""
    reasoning: str = ""
    agent_to_execute: Optional[str] = None
    action_parameters: dict = field(default_factory=dict)
    expected_impact: dict = field(default_factory=dict)
    external_signal_influence: bool = False

    # 评分
    priority_score: float = 0.0
    score_breakdown: dict = field(default_factory=dict)

    # 护栏
    guardrail_result: Optional[GuardrailResult] = None
    guardrail_details: str = ""
    warnings: list[str] = field(default_factory=list)

    # 执行
    action_taken: bool = False
    execution_result: Optional[str] = None
    execution_error: Optional[str] = None
    credits_consumed: int = 0
    executed_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def depends_on(self) -> Optional[str]:
        ref = self.action_parameters.get("depends_on")
        return str(ref) if ref not in (None, "") else None

    @property
    def is_executable(self) -> bool:
        return self.guardrail_result in EXECUTABLE_RESULTS

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department,
            "cycle_id": self.cycle_id,
            "decision_type": self.decision_type,
            "priority": self.priority.value,
            "risk_level": self.risk_level.value,
            "description": self.description,
            "reasoning": self.reasoning,
            "agent_to_execute": self.agent_to_execute,
            "action_parameters": self.action_parameters,
            "expected_impact": self.expected_impact,
            "external_signal_influence": self.external_signal_influence,
            "priority_score": self.priority_score,
            "score_breakdown": self.score_breakdown,
            "guardrail_result": self.guardrail_result.value if self.guardrail_result else None,
            "guardrail_details": self.guardrail_details,
            "warnings": self.warnings,
            "action_taken": self.action_taken,
            "execution_result": self.execution_result,
            "execution_error": self.execution_error,
            "credits_consumed": self.credits_consumed,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "created_at": self.created_at.isoformat(),
        }


# ============================================
# 记忆
# ============================================

@dataclass
class MemoryEntry:
    """决策记忆

    Learn 时以 pending 创建；冷却期后评估一次，之后不可变。
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    company_id: str = ""
    department: str = ""
    cycle_id: str = ""
    decision_id: Optional[str] = None
    decision_type: str = ""
    capability_code: Optional[str] = None

    context_summary: str = ""
    context_hash: str = ""
    external_signal_used: bool = False

    outcome_evaluation: OutcomeEvaluation = OutcomeEvaluation.PENDING
    outcome_score: Optional[float] = None
    lesson_learned: Optional[str] = None
    applies_to_future: list[str] = field(default_factory=list)

    created_at: datetime = field(default_factory=datetime.utcnow)
    evaluated_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.outcome_evaluation == OutcomeEvaluation.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department,
            "cycle_id": self.cycle_id,
            "decision_id": self.decision_id,
            "decision_type": self.decision_type,
            "capability_code": self.capability_code,
            "context_summary": self.context_summary,
            "context_hash": self.context_hash,
            "external_signal_used": self.external_signal_used,
            "outcome_evaluation": self.outcome_evaluation.value,
            "outcome_score": self.outcome_score,
            "lesson_learned": self.lesson_learned,
            "applies_to_future": self.applies_to_future,
            "created_at": self.created_at.isoformat(),
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


# ============================================
# 能力
# ============================================

@dataclass
class Capability:
    """自主演化能力"""
    id: str = field(default_factory=lambda: str(uuid4()))
    company_id: str = ""
    department: str = ""
    capability_code: str = ""
    capability_name: str = ""
    description: str = ""

    # 触发与覆盖范围
    trigger_condition: dict = field(default_factory=dict)
    decision_types: list[str] = field(default_factory=list)

    status: CapabilityStatus = CapabilityStatus.PROPOSED
    source: str = "ai_generated"  # 'seeded', 'ai_generated'
    auto_activate: bool = False

    # 治理元数据
    risk_level: RiskLevel = RiskLevel.MEDIUM
    required_data: list[str] = field(default_factory=list)
    success_metrics: list[str] = field(default_factory=list)
    proposed_reason: str = ""
    gap_evidence: dict = field(default_factory=dict)

    # 生命周期
    trial_started_at: Optional[datetime] = None
    trial_expires_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    activation_reason: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None
    last_evaluated_at: Optional[datetime] = None
    execution_count: int = 0

    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_executable(self) -> bool:
        """trial/active 能力可以作为执行目标"""
        return self.status in (CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE)

    def to_dict(self) -> dict:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department,
            "capability_code": self.capability_code,
            "capability_name": self.capability_name,
            "description": self.description,
            "trigger_condition": self.trigger_condition,
            "decision_types": self.decision_types,
            "status": self.status.value,
            "source": self.source,
            "auto_activate": self.auto_activate,
            "risk_level": self.risk_level.value,
            "required_data": self.required_data,
            "success_metrics": self.success_metrics,
            "proposed_reason": self.proposed_reason,
            "trial_started_at": _iso(self.trial_started_at),
            "trial_expires_at": _iso(self.trial_expires_at),
            "activated_at": _iso(self.activated_at),
            "activation_reason": self.activation_reason,
            "deactivated_at": _iso(self.deactivated_at),
            "deactivation_reason": self.deactivation_reason,
            "last_evaluated_at": _iso(self.last_evaluated_at),
            "execution_count": self.execution_count,
            "created_at": self.created_at.isoformat(),
        }


# ============================================
# 日志与审批
# ============================================

@dataclass
class ExecutionLogEntry:
    """部门执行日志（只追加）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    company_id: str = ""
    department: str = ""
    cycle_id: str = ""
    phase: str = ""
    status: PhaseStatus = PhaseStatus.COMPLETED

    context_snapshot: Optional[dict] = None
    decisions_made: list[dict] = field(default_factory=list)
    actions_taken: list[dict] = field(default_factory=list)

    content_approved: int = 0
    content_rejected: int = 0
    content_pending_review: int = 0
    credits_consumed: int = 0
    execution_time_ms: int = 0
    error_message: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class AuditEvent:
    """统一审计事件（护栏干预、能力状态转移、周期失败）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    company_id: str = ""
    department: Optional[str] = None
    cycle_id: Optional[str] = None
    event_type: str = ""  # 'guardrail_intervention', 'capability_transition', 'cycle_failed'
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ApprovalRecord:
    """审批记录（外部审核界面读写）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    company_id: str = ""
    record_type: str = "decision"  # 'decision', 'capability'
    reference_id: str = ""
    content_type: str = ""
    content_data: dict = field(default_factory=dict)

    status: ApprovalStatus = ApprovalStatus.PENDING_REVIEW
    required_approvers: list[str] = field(default_factory=list)
    requires_sign_off: bool = False
    flagged_for_review: bool = False

    submitted_by: str = "enterprise_autopilot_engine"
    notes: str = ""

    created_at: datetime = field(default_factory=datetime.utcnow)
    decided_at: Optional[datetime] = None


@dataclass
class ExecutorDefinition:
    """执行器（独立部署的 Agent）"""
    code: str
    name: str = ""
    department: str = ""
    endpoint: str = ""
    credits_per_use: int = 1
    is_active: bool = True
    is_implemented: bool = True
    required_context: list[str] = field(default_factory=list)
    import_platform: Optional[str] = None  # 渠道导入执行器对应的平台

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutorDefinition":
        return cls(
            code=data.get("internal_code") or data.get("code", ""),
            name=data.get("name", ""),
            department=data.get("department", ""),
            endpoint=data.get("edge_function_name") or data.get("endpoint") or "",
            credits_per_use=data.get("credits_per_use") or 1,
            is_active=data.get("is_active", True),
            is_implemented=data.get("is_implemented", True),
            required_context=data.get("required_context") or [],
            import_platform=data.get("import_platform"),
        )


# ============================================
# 周期结果
# ============================================

@dataclass
class CycleResult:
    """单个部门周期的结果"""
    company_id: str
    department: str
    cycle_id: str
    success: bool = True

    total_decisions: int = 0
    passed: int = 0
    blocked: int = 0
    pending_review: int = 0
    credits_consumed: int = 0
    execution_time_ms: int = 0

    aborted: bool = False
    abort_reason: Optional[str] = None
    missing: list[str] = field(default_factory=list)
    error: Optional[str] = None

    capabilities_proposed: list[str] = field(default_factory=list)
    capability_transitions: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "company_id": self.company_id,
            "department": self.department,
            "cycle_id": self.cycle_id,
            "success": self.success,
            "total_decisions": self.total_decisions,
            "passed": self.passed,
            "blocked": self.blocked,
            "pending_review": self.pending_review,
            "credits_consumed": self.credits_consumed,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.aborted:
            data["aborted"] = True
            data["abort_reason"] = self.abort_reason
            data["missing"] = self.missing
        if self.error:
            data["error"] = self.error
        if self.capabilities_proposed:
            data["capabilities_proposed"] = self.capabilities_proposed
        if self.capability_transitions:
            data["capability_transitions"] = self.capability_transitions
        return data
