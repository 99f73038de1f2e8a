"""HTTP 客户端配置测试"""

import httpx

from agents.executor import HttpExecutorClient
from agents.llm import HttpLLMClient


async def test_llm_client_leaves_timeout_to_gateway():
    llm = HttpLLMClient("http://llm.local/v1/chat", "sk-test")

    client = await llm._get_client()

    assert client.timeout == httpx.Timeout(None)
    assert client.headers["Authorization"] == "Bearer sk-test"
    await llm.close()


async def test_executor_client_leaves_timeout_to_executor():
    executor = HttpExecutorClient("http://executors.local/")

    client = await executor._get_client()

    assert executor.base_url == "http://executors.local"
    assert client.timeout == httpx.Timeout(None)
    await executor.close()
