# Enterprise Autopilot - 外部情报
"""
外部情报缓存

按公司成熟度决定新鲜度窗口:
- starter: 168h（每周）
- growing: 72h
- established: 24h
- scaling: 0（每周期拉取）

缓存未命中时按主题发起 web search 查询，解析信号数组后写入缓存（24h 过期）。
单个主题失败不影响其它主题。
"""

from datetime import datetime, timedelta
from typing import Literal, Optional

import structlog
from pydantic import BaseModel

from agents.llm import LLMClient
from engine.errors import AutopilotError
from engine.parsing import extract_json_array, validate_items
from engine.settings import AutopilotSettings
from storage.base import DataStore

logger = structlog.get_logger()


WEB_SEARCH_TOOLS = [{"type": "web_search_preview"}]

IMPACT_ORDER = ["low", "medium", "high"]

DEFAULT_RELEVANCE = 0.7


class IntelSignal(BaseModel):
    """单条外部信号"""
    title: str
    summary: str = ""
    impact: Literal["high", "medium", "low"] = "medium"
    category: Literal["opportunity", "threat", "neutral"] = "neutral"


def build_queries(profile: dict, year: int) -> list[dict]:
    """主题查询（国家已知时追加监管主题）"""
    sector = profile.get("industry_sector")
    country = profile.get("country")

    queries = [
        {"source": "industry_news", "query": f"{sector} industry trends {year}"},
        {"source": "macroeconomic", "query": f"macroeconomic outlook {country or 'global'} {year}"},
        {"source": "technology", "query": f"{sector} technology innovations AI automation {year}"},
    ]
    if country:
        queries.append({
            "source": "regulatory",
            "query": f"new business regulations {country} {sector} {year}",
        })
    return queries


class ExternalIntelligence:
    """外部情报缓存"""

    def __init__(self, store: DataStore, llm: LLMClient, settings: AutopilotSettings):
        self.store = store
        self.llm = llm
        self.settings = settings

    async def gather(
        self,
        company_id: str,
        maturity_level: str,
        now: Optional[datetime] = None,
    ) -> list[dict]:
        """获取外部情报

        Args:
            company_id: 公司 ID
            maturity_level: 成熟度（决定缓存新鲜度）
            now: 当前时间（测试注入）

        Returns:
            [{"source": str, "signals": [dict]}]
        """
        now = now or datetime.utcnow()
        max_age = self.settings.freshness_for(maturity_level)

        if max_age > 0:
            cutoff = now - timedelta(hours=max_age)
            if await self.store.has_fresh_intelligence(company_id, cutoff):
                cached = await self.store.list_intelligence(company_id, unexpired_at=now, limit=10)
                logger.info("外部情报命中缓存", company_id=company_id, count=len(cached))
                return [
                    {"source": row.get("source"), "signals": (row.get("data") or {}).get("signals", [])}
                    for row in cached
                ]

        profile = await self.store.get_company_profile(company_id)
        if not profile.get("industry_sector"):
            logger.info("缺少行业信息，跳过外部情报", company_id=company_id)
            return []

        results = []
        for q in build_queries(profile, now.year):
            signals = await self._fetch_topic(company_id, q, now)
            if signals is not None:
                results.append({"source": q["source"], "signals": signals})

        logger.info("外部情报已刷新", company_id=company_id, topics=len(results))
        return results

    async def _fetch_topic(self, company_id: str, q: dict, now: datetime) -> Optional[list[dict]]:
        """单个主题查询，失败返回 None"""
        messages = [{
            "role": "user",
            "content": (
                f"Search for: {q['query']}. Summarize the top 3 findings as JSON array: "
                '[{"title":"...","summary":"...","impact":"high|medium|low",'
                '"category":"opportunity|threat|neutral"}]'
            ),
        }]

        try:
            result = await self.llm.complete_with_tools(messages, WEB_SEARCH_TOOLS, temperature=0.3)
        except AutopilotError as e:
            logger.warning("外部情报查询失败", source=q["source"], error=e.message)
            return None

        raw = result.get("response") or ""
        try:
            items = extract_json_array(raw)
            valid, _ = validate_items(items, IntelSignal)
            signals = [s.model_dump() for s in valid]
        except AutopilotError as e:
            logger.warning("外部情报解析失败", source=q["source"], error=e.message)
            signals = []

        impact = max((s["impact"] for s in signals), key=IMPACT_ORDER.index, default=None)
        await self.store.insert_intelligence({
            "company_id": company_id,
            "intelligence_type": q["source"],
            "source": q["source"],
            "query_used": q["query"],
            "data": {"raw": raw, "signals": signals},
            "relevance_score": DEFAULT_RELEVANCE,
            "impact_level": impact,
            "fetched_at": now,
            "expires_at": now + timedelta(hours=self.settings.intelligence_ttl_hours),
        })
        return signals
