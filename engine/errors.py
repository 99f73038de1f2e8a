# Enterprise Autopilot - 异常定义
"""
引擎异常层级

所有异常继承自 AutopilotError，携带 message 与 details，
可以直接序列化到周期结果或 API 响应。
"""

from typing import Optional


class AutopilotError(Exception):
    """引擎异常基类"""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.__class__.__name__,
                "message": self.message,
                "details": self.details,
            }
        }


class UnknownDepartmentError(AutopilotError):
    """未注册的部门"""

    def __init__(self, department: str):
        super().__init__(
            message=f"Unknown department: {department}",
            details={"department": department},
        )


# ============================================
# 周期中止
# ============================================

class CycleAborted(AutopilotError):
    """周期干净中止（预检失败 / 数据不足），不记录任何决策"""

    def __init__(self, phase: str, reason: str, missing: Optional[list[str]] = None):
        self.phase = phase
        self.reason = reason
        self.missing = missing or []
        super().__init__(
            message=reason,
            details={"phase": phase, "missing": self.missing},
        )


# ============================================
# LLM 调用
# ============================================

class OracleError(AutopilotError):
    """LLM 服务调用失败（传输层）"""


class OracleParseError(AutopilotError):
    """LLM 输出无法解析"""


class NoJsonFoundError(OracleParseError):
    """输出中找不到 JSON 数组"""

    def __init__(self, preview: str = ""):
        super().__init__(
            message="No JSON array found in oracle output",
            details={"preview": preview[:200]},
        )


class SchemaInvalidError(OracleParseError):
    """找到 JSON，但不符合结构"""

    def __init__(self, reason: str, rejected: Optional[list[dict]] = None):
        super().__init__(
            message=f"Oracle output failed schema validation: {reason}",
            details={"rejected": rejected or []},
        )


# ============================================
# 执行器
# ============================================

class ExecutorError(AutopilotError):
    """执行器调用失败"""


class RecursionGuardError(ExecutorError):
    """执行链出现环或超过深度上限"""

    def __init__(self, executor: str, call_stack: list[str]):
        super().__init__(
            message=f"Executor '{executor}' already in call chain",
            details={"executor": executor, "call_stack": call_stack},
        )


# ============================================
# 能力生命周期
# ============================================

class InvalidTransitionError(AutopilotError):
    """非法的能力状态转移"""

    def __init__(self, capability_code: str, from_state: str, trigger: str):
        super().__init__(
            message=f"Invalid transition '{trigger}' from '{from_state}'",
            details={
                "capability_code": capability_code,
                "from_state": from_state,
                "trigger": trigger,
            },
        )
