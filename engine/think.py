# Enterprise Autopilot - 决策生成
"""
Think 阶段

1. 构建提示词: 决策类型词表、动作上限、允许动作、品牌语气、真实执行器、
   可执行能力、记忆教训/规则、外部信号
2. 调用 LLM
3. 提取 JSON 数组并逐项结构校验（不合法的项被拒绝，不做兜底决策）
4. 补全风险等级、清理未知执行器引用、评分排序
"""

import json
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from agents.llm import LLMClient
from engine.departments import default_risk_for, get_department_spec
from engine.errors import OracleParseError, SchemaInvalidError
from engine.memory import MemoryContext
from engine.models import (
    Capability,
    CapabilityStatus,
    Decision,
    DepartmentConfig,
    ExecutorDefinition,
    Priority,
    RiskLevel,
    SenseSnapshot,
)
from engine.parsing import extract_json_array, validate_items
from engine.scoring import rank_decisions
from engine.settings import AutopilotSettings
from storage.base import DataStore

logger = structlog.get_logger()


class DecisionPayload(BaseModel):
    """LLM 返回的单条决策"""
    decision_type: str
    priority: Priority = Priority.MEDIUM
    risk_level: Optional[RiskLevel] = None
    description: str = Field(min_length=1)
    reasoning: str = ""
    agent_to_execute: Optional[str] = None
    action_parameters: dict = Field(default_factory=dict)
    expected_impact: dict = Field(default_factory=dict)
    external_signal_influence: bool = False


class DecisionGenerator:
    """决策生成器"""

    def __init__(self, store: DataStore, llm: LLMClient, settings: AutopilotSettings):
        self.store = store
        self.llm = llm
        self.settings = settings

    # ============================================
    # 提示词
    # ============================================

    def allowed_types(self, department: str, config: DepartmentConfig) -> list[str]:
        vocabulary = list(get_department_spec(department).decision_types)
        if config.allowed_actions:
            return [t for t in vocabulary if t in config.allowed_actions]
        return vocabulary

    def build_system_prompt(
        self,
        department: str,
        config: DepartmentConfig,
        brand_voice,
        executors: list[ExecutorDefinition],
        capabilities: list[Capability],
        memory: Optional[MemoryContext] = None,
        intelligence: Optional[list[dict]] = None,
    ) -> str:
        spec = get_department_spec(department)
        tone = json.dumps(brand_voice, ensure_ascii=False) if brand_voice else "professional"

        executor_lines = "\n".join(f"- {e.code}: {e.name}" for e in executors) or "- none"
        lines = [
            f"You are the Enterprise Autopilot AI for the {department.upper()} department.",
            f"You analyze business data and generate prioritized action decisions for: {spec.prompt_context}.",
            "",
            "RULES:",
            f"- Only use decision types from: {', '.join(spec.decision_types)}",
            f"- Max actions per cycle: {config.max_posts_per_day or self.settings.max_decisions}",
            f"- Allowed actions: {', '.join(self.allowed_types(department, config))}",
            f"- Brand tone: {tone}",
            "- agent_to_execute MUST be one of the available executors or capabilities below, otherwise null",
            "",
            "AVAILABLE EXECUTORS:",
            executor_lines,
        ]

        if capabilities:
            lines += ["", "EVOLVED CAPABILITIES (may be used as agent_to_execute):"]
            lines += [f"- {c.capability_code}: {c.description}" for c in capabilities]

        if memory and memory.lessons:
            lines += ["", "LESSONS FROM PAST DECISIONS (use these to make better decisions):", memory.lessons]
            if memory.rules:
                lines += ["", "RULES EXTRACTED:"] + [f"- {r}" for r in memory.rules]

        if intelligence:
            lines += [
                "",
                "EXTERNAL INTELLIGENCE (market, industry, macro signals):",
                json.dumps(intelligence[:5], ensure_ascii=False, indent=2),
            ]

        lines += [
            "",
            "Respond ONLY with a valid JSON array of 1-5 decisions. Each decision:",
            "{",
            '  "decision_type": "one of the allowed types",',
            '  "priority": "critical|high|medium|low",',
            '  "risk_level": "low|medium|high|critical",',
            '  "description": "What to do and why",',
            '  "reasoning": "Data-driven justification including any external signals considered",',
            '  "agent_to_execute": "EXECUTOR_CODE or null",',
            '  "action_parameters": {},',
            '  "expected_impact": {"metric": "relevant_metric", "estimated_change": "+X%"},',
            '  "external_signal_influence": true/false',
            "}",
        ]
        return "\n".join(lines)

    def build_user_prompt(self, department: str, snapshot: SenseSnapshot) -> str:
        return (
            f"Current {department} performance data:\n"
            f"{json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2, default=str)}\n\n"
            "Based on this data, what actions should we take? Generate 1-5 prioritized decisions."
        )

    # ============================================
    # 解析
    # ============================================

    def parse_decisions(
        self,
        text: str,
        company_id: str,
        department: str,
        cycle_id: str,
        config: DepartmentConfig,
        known_targets: set[str],
    ) -> list[Decision]:
        """解析 LLM 输出

        Raises:
            NoJsonFoundError: 输出中没有 JSON 数组
            SchemaInvalidError: 有 JSON，但没有任何一项合法
        """
        items = extract_json_array(text)
        payloads, rejected = validate_items(items, DecisionPayload)

        allowed = set(self.allowed_types(department, config))
        decisions = []
        for payload in payloads:
            if payload.decision_type not in allowed:
                rejected.append({"decision_type": payload.decision_type, "reason": "not in vocabulary"})
                continue

            agent = payload.agent_to_execute
            if agent and agent not in known_targets:
                logger.info("未知执行器引用已清空", agent=agent, decision_type=payload.decision_type)
                agent = None

            risk = payload.risk_level or default_risk_for(department, payload.decision_type)
            if payload.decision_type == "compliance_alert" and payload.action_parameters.get("financial_impact"):
                risk = RiskLevel.CRITICAL

            decisions.append(Decision(
                company_id=company_id,
                department=department,
                cycle_id=cycle_id,
                decision_type=payload.decision_type,
                priority=payload.priority,
                risk_level=risk,
                description=payload.description,
                reasoning=payload.reasoning,
                agent_to_execute=agent,
                action_parameters=payload.action_parameters,
                expected_impact=payload.expected_impact,
                external_signal_influence=payload.external_signal_influence,
            ))

        if items and not decisions:
            raise SchemaInvalidError("no conforming decisions", rejected=rejected)
        if rejected:
            logger.warning("部分决策被拒绝", department=department, rejected=len(rejected))

        return decisions[: self.settings.max_decisions]

    # ============================================
    # 生成
    # ============================================

    async def generate(
        self,
        company_id: str,
        department: str,
        cycle_id: str,
        config: DepartmentConfig,
        snapshot: SenseSnapshot,
        memory: Optional[MemoryContext] = None,
        intelligence: Optional[list[dict]] = None,
    ) -> list[Decision]:
        """生成并排序决策

        LLM 传输失败（OracleError）向上抛出；输出无法解析时返回空列表。
        """
        profile = await self.store.get_company_profile(company_id)
        executors = [e for e in await self.store.list_executors(department) if e.is_implemented]
        capabilities = await self.store.list_capabilities(
            company_id, department, statuses=[CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE],
        )

        messages = [
            {
                "role": "system",
                "content": self.build_system_prompt(
                    department, config, profile.get("brand_voice"),
                    executors, capabilities, memory, intelligence,
                ),
            },
            {"role": "user", "content": self.build_user_prompt(department, snapshot)},
        ]

        response = await self.llm.complete(messages, temperature=0.4)

        known_targets = {e.code for e in executors} | {c.capability_code for c in capabilities}
        try:
            decisions = self.parse_decisions(response, company_id, department, cycle_id, config, known_targets)
        except OracleParseError as e:
            logger.warning("决策解析失败，本周期无决策", department=department, error=e.message)
            return []

        ranked = rank_decisions(decisions)
        logger.info(
            "决策已生成",
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            count=len(ranked),
        )
        return ranked
