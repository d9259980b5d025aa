# tests/test_ai_matcher.py
import asyncio

import pytest

from src.ai_matcher import AIMatcher, parse_choice

OPTIONS = ["関東地方", "近畿地方", "九州"]


class DummyModel:
    def __init__(self, text="", delay=0.0):
        self.text = text
        self.delay = delay
        self.prompts = []

    async def generate_content_async(self, items, *args, **kwargs):
        class DummyResponse:
            def __init__(self, text):
                self.text = text
        self.prompts.append(items[0])
        if self.delay:
            await asyncio.sleep(self.delay)
        return DummyResponse(self.text)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2", "近畿地方"),
        ("回答: 3", "九州"),
        ("```\n1\n```", "関東地方"),
        ("５", None),
        ("なし", None),
        ("該当なし", None),
        ("近畿地方", "近畿地方"),
        ("答えは九州です", "九州"),
        ("", None),
    ],
)
def test_parse_choice(raw, expected):
    assert parse_choice(raw, OPTIONS) == expected


@pytest.mark.asyncio
async def test_best_match_numbered_prompt():
    model = DummyModel("1")
    matcher = AIMatcher(model=model)
    assert matcher.enabled
    assert await matcher.best_match("東京", OPTIONS, context="地方") == "関東地方"
    prompt = model.prompts[0]
    assert "1. 関東地方" in prompt
    assert "3. 九州" in prompt
    assert "テキスト: 東京" in prompt
    assert "補足: 地方" in prompt


@pytest.mark.asyncio
async def test_best_match_without_model_or_input():
    matcher = AIMatcher(model=None)
    matcher.model = None
    assert matcher.enabled is False
    assert await matcher.best_match("東京", OPTIONS) is None
    assert await AIMatcher(model=DummyModel("1")).best_match("", OPTIONS) is None
    assert await AIMatcher(model=DummyModel("1")).best_match("東京", []) is None


@pytest.mark.asyncio
async def test_best_match_timeout_returns_none():
    matcher = AIMatcher(model=DummyModel("1", delay=0.2), timeout_sec=0.01)
    assert await matcher.best_match("東京", OPTIONS) is None
