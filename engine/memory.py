# Enterprise Autopilot - 决策记忆
"""
决策记忆检索

- 上下文哈希: 部门 + 快照趋势签名的 md5 前缀。
  这是有损的粗粒度分桶键，只用于检索排序，不用于身份识别。
- 检索: 最近已评估（positive/negative）的记忆，哈希匹配的优先，
  按 (decision_type, lesson) 去重，最多 memory_limit 条
"""

import hashlib
from dataclasses import dataclass, field

import structlog

from engine.models import MemoryEntry, OutcomeEvaluation, SenseSnapshot
from engine.settings import AutopilotSettings
from storage.base import DataStore

logger = structlog.get_logger()

CANDIDATE_POOL = 50


def context_hash(department: str, snapshot: SenseSnapshot) -> str:
    """粗粒度上下文哈希（有损，仅用于排序）"""
    signature = "|".join([department, *snapshot.trend_signature()])
    return hashlib.md5(signature.encode("utf-8")).hexdigest()[:16]


@dataclass
class MemoryContext:
    """注入 Think 提示词的记忆"""
    lessons: str = ""
    rules: list[str] = field(default_factory=list)
    entries: list[MemoryEntry] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries


class MemoryStore:
    """记忆检索"""

    def __init__(self, store: DataStore, settings: AutopilotSettings):
        self.store = store
        self.settings = settings

    async def retrieve(self, company_id: str, department: str, current_hash: str = "") -> MemoryContext:
        """检索记忆

        Args:
            company_id: 公司 ID
            department: 部门
            current_hash: 当前上下文哈希（匹配的优先）

        Returns:
            MemoryContext
        """
        candidates = await self.store.list_memory_entries(
            company_id,
            department,
            outcomes=[OutcomeEvaluation.POSITIVE, OutcomeEvaluation.NEGATIVE],
            limit=CANDIDATE_POOL,
            order_by="evaluated_at",
        )

        # 稳定排序: 哈希匹配的在前，其余保持时间倒序
        if current_hash:
            candidates.sort(key=lambda m: m.context_hash != current_hash)

        selected: list[MemoryEntry] = []
        seen: set[tuple] = set()
        for entry in candidates:
            key = (entry.decision_type, entry.lesson_learned)
            if key in seen:
                continue
            seen.add(key)
            selected.append(entry)
            if len(selected) >= self.settings.memory_limit:
                break

        lessons = "\n".join(
            f"- [{m.outcome_evaluation.value}] {m.decision_type}: {m.lesson_learned}"
            for m in selected
            if m.lesson_learned
        )

        rules: list[str] = []
        for entry in selected:
            for rule in entry.applies_to_future:
                if rule not in rules:
                    rules.append(rule)

        logger.info(
            "记忆检索",
            company_id=company_id,
            department=department,
            count=len(selected),
            rules=len(rules),
        )
        return MemoryContext(lessons=lessons, rules=rules, entries=selected)
