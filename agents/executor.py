# Enterprise Autopilot - 执行器客户端
"""
独立部署的执行器（Agent）调用

请求: {company_id, department, decision_type, parameters, cycle_id,
       autopilot: true, company_context, call_stack, call_depth}
响应: {success: bool, summary?: str, error?: str}
"""

import os
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from engine.errors import ExecutorError
from engine.models import ExecutorDefinition

logger = structlog.get_logger()


class ExecutorClient(ABC):
    """执行器客户端抽象基类"""

    @abstractmethod
    async def invoke(self, executor: ExecutorDefinition, payload: dict) -> dict:
        """调用执行器

        Args:
            executor: 执行器定义
            payload: 请求体

        Returns:
            {"success": bool, "summary": str?, "error": str?}

        Raises:
            ExecutorError: 传输失败
        """
        pass

    async def close(self) -> None:
        pass


class HttpExecutorClient(ExecutorClient):
    """HTTP 执行器客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or os.getenv("EXECUTOR_BASE_URL", "")).rstrip("/")
        self.api_key = api_key or os.getenv("EXECUTOR_API_KEY")
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

    async def invoke(self, executor: ExecutorDefinition, payload: dict) -> dict:
        client = await self._get_client()
        url = f"{self.base_url}/{executor.endpoint or executor.code}"

        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error("执行器调用失败", executor=executor.code, error=str(e))
            raise ExecutorError(
                f"Executor '{executor.code}' unreachable: {e}",
                details={"executor": executor.code},
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            return {
                "success": False,
                "error": data.get("error") or f"HTTP {response.status_code}",
            }

        return {
            "success": bool(data.get("success", True)),
            "summary": data.get("summary"),
            "error": data.get("error"),
        }


class MockExecutorClient(ExecutorClient):
    """模拟执行器（用于测试与演示）

    记录调用顺序；failures 中的执行器返回失败。
    """

    def __init__(self, failures: Optional[set[str]] = None):
        self.failures = set(failures or ())
        self.calls: list[tuple[str, dict]] = []

    async def invoke(self, executor: ExecutorDefinition, payload: dict) -> dict:
        self.calls.append((executor.code, payload))
        if executor.code in self.failures:
            return {"success": False, "error": f"{executor.code} failed"}
        return {"success": True, "summary": f"{executor.code}: {payload.get('decision_type')} done"}
