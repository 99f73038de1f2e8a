# Enterprise Autopilot - LLM 输出解析
"""
从 LLM 自由文本中提取 JSON 数组，并逐项做结构校验

- 找不到数组: NoJsonFoundError
- 数组不是合法 JSON: SchemaInvalidError
- 单项不符合模型: 逐项拒绝，不影响其余项
"""

import json
from typing import TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from engine.errors import NoJsonFoundError, SchemaInvalidError

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)


def extract_json_array(text: str) -> list:
    """取最外层方括号之间的内容并解码

    Raises:
        NoJsonFoundError: 没有方括号对
        SchemaInvalidError: 内容不是合法的 JSON 数组
    """
    text = text or ""
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        raise NoJsonFoundError(text)

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise SchemaInvalidError(f"invalid JSON: {e.msg}") from e

    if not isinstance(data, list):
        raise SchemaInvalidError("top-level value is not an array")
    return data


def validate_items(items: list, model: type[T]) -> tuple[list[T], list[dict]]:
    """逐项校验

    Returns:
        (通过校验的模型实例, 被拒绝的项及原因)
    """
    valid: list[T] = []
    rejected: list[dict] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            rejected.append({"index": index, "reason": "not an object"})
            continue
        try:
            valid.append(model.model_validate(item))
        except ValidationError as e:
            rejected.append({"index": index, "reason": str(e.errors()[0].get("msg", "invalid"))})

    if rejected:
        logger.warning("LLM 输出项被拒绝", model=model.__name__, rejected=rejected)
    return valid, rejected
