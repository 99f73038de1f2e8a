# Enterprise Autopilot - LLM 客户端
"""
LLM 推理服务客户端

包含:
- LLMClient: 抽象接口（prompt 入，文本出）
- HttpLLMClient: 通过 HTTP 网关调用
- MockLLMClient: 脚本化响应（测试/演示）
"""

import os
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

import httpx
import structlog

from engine.errors import OracleError

logger = structlog.get_logger()


# ============================================
# LLM 客户端接口
# ============================================

class LLMClient(ABC):
    """LLM 客户端抽象基类"""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> str:
        """生成回复"""
        pass

    @abstractmethod
    async def complete_with_tools(
        self,
        messages: list[dict],
        tools: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> dict:
        """带工具调用的生成（如 web search）

        Returns:
            {"response": str, "tool_calls": list}
        """
        pass

    async def close(self) -> None:
        pass


class HttpLLMClient(LLMClient):
    """HTTP 网关 LLM 客户端

    网关响应格式: {"success": bool, "response": str, "error": str?}
    传输失败或 success=false 时抛出 OracleError。
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_url = api_url or os.getenv("LLM_API_URL", "")
        self.api_key = api_key or os.getenv("LLM_API_KEY")
        self.default_model = default_model or os.getenv("LLM_MODEL")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """获取 HTTP 客户端"""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        """关闭客户端"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: dict) -> dict:
        client = await self._get_client()
        try:
            response = await client.post(self.api_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("LLM 调用失败", error=str(e))
            raise OracleError(f"LLM request failed: {e}") from e

        if not data.get("success", False):
            raise OracleError(
                f"LLM gateway error: {data.get('error', 'unknown')}",
                details={"response": data},
            )
        return data

    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> str:
        data = await self._post({
            "messages": messages,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        return data.get("response") or ""

    async def complete_with_tools(
        self,
        messages: list[dict],
        tools: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> dict:
        data = await self._post({
            "messages": messages,
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        return {
            "response": data.get("response") or "",
            "tool_calls": data.get("tool_calls") or [],
        }


# ============================================
# Mock 客户端
# ============================================

Responder = Union[str, Exception, Callable[[list[dict]], str]]


class MockLLMClient(LLMClient):
    """模拟 LLM 客户端（用于测试）

    按顺序消费脚本化响应；脚本耗尽后使用 default。
    响应可以是字符串、异常实例（抛出）或 callable(messages) -> str。
    """

    def __init__(self, responses: Optional[list[Responder]] = None, default: Responder = "[]"):
        self.responses: list[Responder] = list(responses or [])
        self.default = default
        self.calls: list[dict] = []

    def _next(self, messages: list[dict]) -> str:
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(messages)
        return item

    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> str:
        self.calls.append({"messages": messages, "tools": None})
        return self._next(messages)

    async def complete_with_tools(
        self,
        messages: list[dict],
        tools: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> dict:
        self.calls.append({"messages": messages, "tools": tools})
        return {"response": self._next(messages), "tool_calls": []}
