# Enterprise Autopilot - 部门注册表
"""
部门注册表

每个部门的:
- 决策类型词表（固定）
- 提示词上下文
- 决策类型 → 默认风险等级
"""

from dataclasses import dataclass, field

from engine.errors import UnknownDepartmentError
from engine.models import Department, RiskLevel


@dataclass(frozen=True)
class DepartmentSpec:
    """部门定义"""
    department: Department
    decision_types: tuple[str, ...]
    prompt_context: str
    default_risk: dict = field(default_factory=dict)


DEPARTMENT_REGISTRY: dict[str, DepartmentSpec] = {
    Department.MARKETING.value: DepartmentSpec(
        department=Department.MARKETING,
        decision_types=(
            "create_content", "publish", "reply_comments",
            "adjust_campaigns", "analyze", "ab_test",
        ),
        prompt_context="social media engagement, content creation, campaign optimization, audience growth",
        default_risk={
            "create_content": RiskLevel.MEDIUM,
            "publish": RiskLevel.MEDIUM,
            "reply_comments": RiskLevel.LOW,
            "adjust_campaigns": RiskLevel.HIGH,
            "analyze": RiskLevel.LOW,
            "ab_test": RiskLevel.LOW,
        },
    ),
    Department.SALES.value: DepartmentSpec(
        department=Department.SALES,
        decision_types=(
            "qualify_lead", "advance_deal", "create_proposal",
            "alert_stalled", "enrich_contact", "forecast_pipeline",
        ),
        prompt_context="sales pipeline, deal progression, lead qualification, revenue forecasting, proposal generation",
        default_risk={
            "qualify_lead": RiskLevel.LOW,
            "advance_deal": RiskLevel.MEDIUM,
            "create_proposal": RiskLevel.HIGH,
            "alert_stalled": RiskLevel.LOW,
            "enrich_contact": RiskLevel.LOW,
            "forecast_pipeline": RiskLevel.LOW,
        },
    ),
    Department.FINANCE.value: DepartmentSpec(
        department=Department.FINANCE,
        decision_types=(
            "budget_alert", "forecast_revenue", "optimize_expenses",
            "invoice_reminder", "cashflow_warning", "credit_alert",
        ),
        prompt_context="budget monitoring, credit consumption, revenue forecasting, expense optimization, cashflow management",
        default_risk={
            "budget_alert": RiskLevel.LOW,
            "forecast_revenue": RiskLevel.LOW,
            "optimize_expenses": RiskLevel.HIGH,
            "invoice_reminder": RiskLevel.MEDIUM,
            "cashflow_warning": RiskLevel.MEDIUM,
            "credit_alert": RiskLevel.LOW,
        },
    ),
    Department.LEGAL.value: DepartmentSpec(
        department=Department.LEGAL,
        decision_types=(
            "review_contract", "compliance_alert", "deadline_reminder",
            "regulatory_update", "risk_assessment",
        ),
        prompt_context="contract review, compliance monitoring, regulatory changes, legal deadlines, risk assessment",
        default_risk={
            "review_contract": RiskLevel.HIGH,
            "compliance_alert": RiskLevel.MEDIUM,
            "deadline_reminder": RiskLevel.LOW,
            "regulatory_update": RiskLevel.LOW,
            "risk_assessment": RiskLevel.MEDIUM,
        },
    ),
    Department.HR.value: DepartmentSpec(
        department=Department.HR,
        decision_types=(
            "create_job_profile", "climate_survey", "talent_match",
            "performance_review", "training_recommendation",
        ),
        prompt_context="talent management, job profiling, employee climate, performance evaluation, training needs",
        default_risk={
            "create_job_profile": RiskLevel.MEDIUM,
            "climate_survey": RiskLevel.MEDIUM,
            "talent_match": RiskLevel.MEDIUM,
            "performance_review": RiskLevel.HIGH,
            "training_recommendation": RiskLevel.LOW,
        },
    ),
    Department.OPERATIONS.value: DepartmentSpec(
        department=Department.OPERATIONS,
        decision_types=(
            "optimize_process", "sla_alert", "automate_task",
            "bottleneck_detection", "efficiency_report",
        ),
        prompt_context="process optimization, SLA monitoring, task automation, bottleneck detection, operational efficiency",
        default_risk={
            "optimize_process": RiskLevel.MEDIUM,
            "sla_alert": RiskLevel.LOW,
            "automate_task": RiskLevel.HIGH,
            "bottleneck_detection": RiskLevel.LOW,
            "efficiency_report": RiskLevel.LOW,
        },
    ),
}


# 内容发布类（受活跃时段约束）
CONTENT_TYPES = frozenset({"publish", "create_content"})

# 支出类（受财务跨部门拦截）
SPEND_TYPES = frozenset({"create_content", "publish", "create_proposal", "adjust_campaigns"})

# 提案/推进类（受法务跨部门拦截）
PROPOSAL_TYPES = frozenset({"create_proposal", "advance_deal"})

# 敏感类（人工审批配置生效）
SENSITIVE_TYPES = frozenset({"create_content", "publish", "create_proposal", "review_contract"})


def get_department_spec(department: str) -> DepartmentSpec:
    """获取部门定义"""
    spec = DEPARTMENT_REGISTRY.get(department)
    if spec is None:
        raise UnknownDepartmentError(department)
    return spec


def default_risk_for(department: str, decision_type: str) -> RiskLevel:
    """决策类型的默认风险，未知类型按 medium"""
    spec = DEPARTMENT_REGISTRY.get(department)
    if spec is None:
        return RiskLevel.MEDIUM
    return spec.default_risk.get(decision_type, RiskLevel.MEDIUM)


def all_decision_types() -> set[str]:
    types: set[str] = set()
    for spec in DEPARTMENT_REGISTRY.values():
        types.update(spec.decision_types)
    return types
