# Enterprise Autopilot - 优先级评分
"""
确定性多准则评分（不调用 LLM）

priority_score = 0.3·urgency + 0.3·impact + 0.2·strategic + 0.2·evidence
每项归一化到 0-100，结果保留两位小数并附带明细。
"""

import re

from engine.models import Decision, Priority

WEIGHTS = {
    "urgency": 0.3,
    "impact": 0.3,
    "strategic": 0.2,
    "evidence": 0.2,
}

URGENCY = {
    Priority.CRITICAL: 100,
    Priority.HIGH: 75,
    Priority.MEDIUM: 50,
    Priority.LOW: 25,
}

DEFAULT_IMPACT = 30

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def impact_score(expected_impact: dict) -> float:
    """从 estimated_change（如 "+15%"）提取数值"""
    change = (expected_impact or {}).get("estimated_change")
    if change is None:
        return DEFAULT_IMPACT
    if isinstance(change, (int, float)):
        value = float(change)
    else:
        match = _NUMBER.search(str(change))
        if not match:
            return DEFAULT_IMPACT
        value = float(match.group())
    return min(100.0, abs(value) * 5)


def strategic_score(reasoning: str) -> float:
    length = len(reasoning or "")
    if length > 100:
        return 70
    if length > 50:
        return 50
    return 30


def evidence_score(decision: Decision) -> float:
    if decision.external_signal_influence:
        return 80
    if decision.action_parameters:
        return 60
    return 30


def score_decision(decision: Decision) -> float:
    """计算并写入 priority_score 与 score_breakdown"""
    breakdown = {
        "urgency": URGENCY.get(decision.priority, 50),
        "impact": impact_score(decision.expected_impact),
        "strategic": strategic_score(decision.reasoning),
        "evidence": evidence_score(decision),
    }
    score = sum(WEIGHTS[k] * v for k, v in breakdown.items())
    score = round(max(0.0, min(100.0, score)), 2)

    decision.score_breakdown = {**breakdown, "weights": dict(WEIGHTS)}
    decision.priority_score = score
    return score


def rank_decisions(decisions: list[Decision]) -> list[Decision]:
    """评分并按分数降序排序（同分保持原顺序）"""
    for decision in decisions:
        score_decision(decision)
    return sorted(decisions, key=lambda d: d.priority_score, reverse=True)
