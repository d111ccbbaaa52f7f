"""
Tests for the batch classification oracle: prompt, response parsing,
chunking, and failure handling. The Anthropic client is replaced by a fake.
"""

from types import SimpleNamespace

import anthropic
import httpx
import pytest

from spendcat.clients.base import OracleBatchFailure, RateLimitExceeded, exponential_backoff_retry
from spendcat.clients.oracle import AnthropicCategoryOracle, build_prompt, parse_oracle_response
from spendcat.matching.types import CLASSIFIABLE_CATEGORIES, OracleConfig

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _message(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


class FakeMessages:
    """Answers every asked store name with ``category`` unless told to fail."""

    def __init__(self, category="Food", errors=None):
        self.category = category
        self.errors = list(errors or [])
        self.prompts = []

    async def create(self, **kwargs):
        prompt = kwargs["messages"][0]["content"]
        self.prompts.append(prompt)
        if self.errors:
            raise self.errors.pop(0)
        names = [line[2:] for line in prompt.split("STORE NAMES:\n")[1].split("\n\n")[0].splitlines()]
        body = ", ".join(f'"{name}": "{self.category}"' for name in names)
        return _message("{" + body + "}")


def _oracle(messages, **config):
    settings = dict(batch_delay_seconds=0.0, retry_base_delay=0.0)
    settings.update(config)
    return AnthropicCategoryOracle(
        config=OracleConfig(**settings),
        client=SimpleNamespace(messages=messages),
    )


def _rate_limit():
    return anthropic.RateLimitError(
        "rate limited", response=httpx.Response(429, request=REQUEST), body=None
    )


# ============================================================================
# PROMPT AND PARSING
# ============================================================================

def test_prompt_lists_names_and_categories():
    prompt = build_prompt(["Corner Deli", "Bean Bar"], ["Food", "Cafe"], "- Cafe: Blue Bottle")
    assert "- Corner Deli\n- Bean Bar" in prompt
    assert "Food, Cafe" in prompt
    assert "KNOWN EXAMPLES:\n- Cafe: Blue Bottle" in prompt


def test_prompt_without_reference_examples():
    assert "KNOWN EXAMPLES" not in build_prompt(["A"], ["Food"])


class TestParseResponse:

    def test_plain_json(self):
        result = parse_oracle_response('{"A": "Food", "B": "Cafe"}', ["A", "B"], ["Food", "Cafe"])
        assert result == {"A": "Food", "B": "Cafe"}

    def test_json_inside_markdown(self):
        text = 'Here you go:\n```json\n{"A": "Food"}\n```'
        assert parse_oracle_response(text, ["A"], ["Food"]) == {"A": "Food"}

    def test_unknown_names_and_categories_dropped(self):
        text = '{"A": "Food", "B": "Groceries", "C": "Food", "D": 3}'
        assert parse_oracle_response(text, ["A", "B", "D"], ["Food"]) == {"A": "Food"}

    def test_missing_names_are_unresolved(self):
        assert parse_oracle_response('{}', ["A"], ["Food"]) == {}

    @pytest.mark.parametrize("text", ["no json here", "{not json}", '["A", "Food"]'])
    def test_malformed_response_raises(self, text):
        with pytest.raises(OracleBatchFailure):
            parse_oracle_response(text, ["A"], ["Food"])


# ============================================================================
# BATCHED CLASSIFICATION
# ============================================================================

class TestAnthropicCategoryOracle:

    async def test_names_sent_in_chunks(self):
        messages = FakeMessages(category="Food")
        oracle = _oracle(messages, batch_size=50)
        names = [f"Store {i}" for i in range(120)]

        result = await oracle.classify(names, CLASSIFIABLE_CATEGORIES)

        assert len(messages.prompts) == 3
        assert result == {name: "Food" for name in names}

    async def test_duplicates_collapsed(self):
        messages = FakeMessages()
        oracle = _oracle(messages)
        result = await oracle.classify(["A", "A", ""], CLASSIFIABLE_CATEGORIES)
        assert result == {"A": "Food"}

    async def test_failed_chunk_skipped(self):
        messages = FakeMessages(errors=[anthropic.APIConnectionError(request=REQUEST)])
        oracle = _oracle(messages, batch_size=2, max_concurrency=1)

        result = await oracle.classify(["A", "B", "C", "D"], CLASSIFIABLE_CATEGORIES)

        assert len(result) == 2
        assert len(messages.prompts) == 2

    async def test_rate_limit_retried(self):
        messages = FakeMessages(errors=[_rate_limit()])
        oracle = _oracle(messages, max_retries=2)

        assert await oracle.classify(["A"], CLASSIFIABLE_CATEGORIES) == {"A": "Food"}
        assert len(messages.prompts) == 2

    async def test_rate_limit_retries_bounded(self):
        messages = FakeMessages(errors=[_rate_limit() for _ in range(5)])
        oracle = _oracle(messages, max_retries=2)

        assert await oracle.classify(["A"], CLASSIFIABLE_CATEGORIES) == {}
        assert len(messages.prompts) == 3

    async def test_disabled_without_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        oracle = AnthropicCategoryOracle()
        assert not oracle.enabled
        assert await oracle.classify(["A"], CLASSIFIABLE_CATEGORIES) == {}

    async def test_reference_examples_in_prompt(self):
        class Provider:
            async def get_reference_text(self):
                return "- Cafe: Blue Bottle"

        messages = FakeMessages()
        oracle = AnthropicCategoryOracle(
            config=OracleConfig(batch_delay_seconds=0.0),
            client=SimpleNamespace(messages=messages),
            reference_provider=Provider(),
        )
        await oracle.classify(["A"], CLASSIFIABLE_CATEGORIES)
        assert "- Cafe: Blue Bottle" in messages.prompts[0]


# ============================================================================
# RETRY DECORATOR
# ============================================================================

async def test_backoff_only_retries_rate_limits():
    calls = []

    @exponential_backoff_retry(max_retries=3, base_delay=0.0)
    async def flaky():
        calls.append(1)
        raise OracleBatchFailure("bad request")

    with pytest.raises(OracleBatchFailure):
        await flaky()
    assert len(calls) == 1


async def test_backoff_gives_up_after_max_retries():
    calls = []

    @exponential_backoff_retry(max_retries=1, base_delay=0.0)
    async def limited():
        calls.append(1)
        raise RateLimitExceeded("429")

    with pytest.raises(RateLimitExceeded):
        await limited()
    assert len(calls) == 2
