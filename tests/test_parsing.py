"""LLM 输出解析测试"""

import pytest
from pydantic import BaseModel

from engine.errors import NoJsonFoundError, OracleParseError, SchemaInvalidError
from engine.parsing import extract_json_array, validate_items


class Item(BaseModel):
    name: str
    count: int = 0


class TestExtractJsonArray:

    def test_array_surrounded_by_prose(self):
        text = 'Here are the decisions:\n```json\n[{"name": "a"}, {"name": "b"}]\n```\nDone.'
        assert extract_json_array(text) == [{"name": "a"}, {"name": "b"}]

    def test_no_brackets(self):
        with pytest.raises(NoJsonFoundError):
            extract_json_array("I could not decide anything today.")

    def test_empty_input(self):
        with pytest.raises(NoJsonFoundError):
            extract_json_array("")

    def test_invalid_json(self):
        with pytest.raises(SchemaInvalidError):
            extract_json_array("[{'name': 'single quotes'}]")

    def test_errors_share_parse_base(self):
        assert issubclass(NoJsonFoundError, OracleParseError)
        assert issubclass(SchemaInvalidError, OracleParseError)


def test_validate_items_rejects_per_item():
    items = [{"name": "ok", "count": 2}, "not a dict", {"count": "many"}]

    valid, rejected = validate_items(items, Item)

    assert [v.name for v in valid] == ["ok"]
    assert [r["index"] for r in rejected] == [1, 2]
    assert rejected[0]["reason"] == "not an object"
