"""外部情报缓存测试"""

import json
from datetime import timedelta

import pytest

from agents.llm import MockLLMClient
from engine.errors import OracleError
from engine.intelligence import ExternalIntelligence, build_queries

SIGNALS = json.dumps([
    {"title": "New open banking rules", "summary": "...", "impact": "high", "category": "threat"},
    {"title": "Rising demand", "impact": "medium", "category": "opportunity"},
    {"title": "Malformed", "impact": "enormous"},
])


@pytest.fixture
def profiled_store(store, company_id):
    store.set_company_profile(company_id, {"industry_sector": "fintech", "country": "Mexico"})
    return store


def test_build_queries_adds_regulatory_topic_with_country():
    queries = build_queries({"industry_sector": "retail", "country": "Chile"}, 2026)
    assert [q["source"] for q in queries] == ["industry_news", "macroeconomic", "technology", "regulatory"]
    assert queries[0]["query"] == "retail industry trends 2026"


def test_build_queries_without_country():
    queries = build_queries({"industry_sector": "retail"}, 2026)
    assert len(queries) == 3
    assert "global" in queries[1]["query"]


class TestGather:

    async def test_skipped_without_industry(self, store, settings, company_id, now):
        llm = MockLLMClient(default=SIGNALS)

        assert await ExternalIntelligence(store, llm, settings).gather(company_id, "growing", now) == []
        assert llm.calls == []

    async def test_fetches_and_caches(self, profiled_store, settings, company_id, now):
        llm = MockLLMClient(default=SIGNALS)

        results = await ExternalIntelligence(profiled_store, llm, settings).gather(company_id, "growing", now)

        assert len(results) == 4
        assert all(call["tools"] == [{"type": "web_search_preview"}] for call in llm.calls)
        assert [s["title"] for s in results[0]["signals"]] == ["New open banking rules", "Rising demand"]

        row = profiled_store.intelligence[0]
        assert row["impact_level"] == "high"
        assert row["expires_at"] == now + timedelta(hours=24)
        assert row["data"]["raw"] == SIGNALS

    async def test_cache_hit_within_freshness(self, profiled_store, settings, company_id, now):
        llm = MockLLMClient(default=SIGNALS)
        intelligence = ExternalIntelligence(profiled_store, llm, settings)
        await intelligence.gather(company_id, "growing", now)
        calls = len(llm.calls)

        cached = await intelligence.gather(company_id, "growing", now + timedelta(hours=2))

        assert len(llm.calls) == calls
        assert len(cached) == 4
        assert cached[0]["signals"][0]["impact"] == "high"

    async def test_scaling_always_fetches(self, profiled_store, settings, company_id, now):
        llm = MockLLMClient(default=SIGNALS)
        intelligence = ExternalIntelligence(profiled_store, llm, settings)
        await intelligence.gather(company_id, "scaling", now)

        await intelligence.gather(company_id, "scaling", now + timedelta(minutes=5))

        assert len(llm.calls) == 8

    async def test_failed_topic_is_skipped(self, profiled_store, settings, company_id, now):
        llm = MockLLMClient(responses=[OracleError("search down")], default=SIGNALS)

        results = await ExternalIntelligence(profiled_store, llm, settings).gather(company_id, "growing", now)

        assert [r["source"] for r in results] == ["macroeconomic", "technology", "regulatory"]
        assert len(profiled_store.intelligence) == 3

    async def test_unparseable_topic_is_cached_empty(self, profiled_store, settings, company_id, now):
        llm = MockLLMClient(responses=["no findings today"], default=SIGNALS)

        results = await ExternalIntelligence(profiled_store, llm, settings).gather(company_id, "growing", now)

        assert results[0] == {"source": "industry_news", "signals": []}
        assert profiled_store.intelligence[0]["impact_level"] is None
