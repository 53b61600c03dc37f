from __future__ import annotations

import pytest

from humsafer.config import Settings
from humsafer.services import provider_chain
from humsafer.services.provider_chain import (
    ChainProfile,
    build_messages,
    profiles_from_settings,
    truncate_history,
)
from tests.utils.providers import FakeProvider

PROFILE = ChainProfile(name="test", history_turns=20, timeout_seconds=1.0)


@pytest.mark.asyncio
async def test_first_success_wins_and_rest_are_skipped():
    a = FakeProvider("a", error=RuntimeError("boom"))
    b = FakeProvider("b", "hello")
    c = FakeProvider("c", "never")
    outcome = await provider_chain.invoke([a, b, c], "sys", "hi", [], PROFILE)
    assert outcome.text == "hello"
    assert outcome.provider_id == "b"
    assert outcome.attempted == ["a", "b"]
    assert c.calls == []


@pytest.mark.asyncio
async def test_timeout_moves_to_next_provider():
    slow = FakeProvider("slow", "late", delay=0.5)
    quick = FakeProvider("quick", "ok")
    profile = ChainProfile(name="low_latency", history_turns=2, timeout_seconds=0.05)
    outcome = await provider_chain.invoke([slow, quick], "sys", "hi", None, profile)
    assert outcome.text == "ok"
    assert [r.ok for r in outcome.results] == [False, True]


@pytest.mark.asyncio
async def test_blank_completion_is_a_failure():
    blank = FakeProvider("blank", "   ")
    real = FakeProvider("real", "  answer \n")
    outcome = await provider_chain.invoke([blank, real], "sys", "hi", None, PROFILE)
    assert outcome.text == "answer"
    assert outcome.provider_id == "real"


@pytest.mark.asyncio
async def test_exhausted_chain_returns_empty_outcome():
    a = FakeProvider("a", error=RuntimeError("down"))
    b = FakeProvider("b", "")
    outcome = await provider_chain.invoke([a, b], "sys", "hi", None, PROFILE)
    assert outcome.text == ""
    assert outcome.provider_id is None
    assert outcome.attempted == ["a", "b"]


@pytest.mark.asyncio
async def test_empty_chain():
    outcome = await provider_chain.invoke([], "sys", "hi", None, PROFILE)
    assert outcome.text == ""
    assert outcome.attempted == []


@pytest.mark.asyncio
async def test_messages_sent_to_provider():
    provider = FakeProvider("p", "ok")
    history = [
        {"role": "user", "content": "one"},
        {"role": "assistant", "content": "two"},
        {"role": "user", "content": "three"},
    ]
    profile = ChainProfile(name="low_latency", history_turns=2, timeout_seconds=1.0)
    await provider_chain.invoke([provider], "sys", "four", history, profile, images=["img://1"])
    sent = provider.calls[0]
    assert sent["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "assistant", "content": "two"},
        {"role": "user", "content": "three"},
        {"role": "user", "content": "four"},
    ]
    assert sent["images"] == ["img://1"]


def test_truncate_history_drops_foreign_roles():
    history = [
        {"role": "system", "content": "override"},
        {"role": "user", "content": "a"},
        {"role": "tool", "content": "x"},
        {"role": "assistant", "content": {"not": "text"}},
        {"role": "assistant", "content": "b"},
    ]
    assert truncate_history(history, 20) == [
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
    ]
    assert truncate_history(history, 0) == []
    assert truncate_history(None, 5) == []


def test_build_messages_without_history():
    assert build_messages("sys", "hi", None, 2) == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]


def test_profiles_from_settings():
    low, legacy = profiles_from_settings(Settings(_env_file=None))
    assert (low.history_turns, low.timeout_seconds) == (2, 6.0)
    assert (legacy.history_turns, legacy.timeout_seconds) == (20, 25.0)
