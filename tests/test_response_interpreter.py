"""Tests for capability and usage extraction from completion metadata."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from platform_copilot.ai.ai_types import ProviderCompletion
from platform_copilot.ai.orchestration.response_interpreter import (
    AliasProbingAdapter,
    OpenAIMetadataAdapter,
    ResponseInterpreter,
    select_metadata_adapter,
)
from platform_copilot.ai.orchestration.types import CapabilityCall
from tests.helpers import WordCounter


def test_openai_adapter_reads_tool_call_records() -> None:
    completion = ProviderCompletion(
        content="done",
        metadata={
            "tool_calls": [
                {"id": "call-1", "name": "InfrastructureAgent", "arguments": "{}"},
                {"id": "call-2", "function": {"name": "ComplianceAgent"}},
            ]
        },
    )

    calls = ResponseInterpreter().extract_capability_calls(completion)

    assert calls == [
        CapabilityCall(name="InfrastructureAgent", arguments="{}", call_id="call-1"),
        CapabilityCall(name="ComplianceAgent", arguments=None, call_id="call-2"),
    ]


def test_openai_adapter_reads_sdk_objects() -> None:
    tool_call = SimpleNamespace(id="c1", function=SimpleNamespace(name="CostManagementAgent", arguments='{"x": 1}'))
    completion = ProviderCompletion(content="", metadata={"tool_calls": [tool_call], "usage": SimpleNamespace(completion_tokens=11)})
    interpreter = ResponseInterpreter()

    assert interpreter.extract_capability_calls(completion) == [
        CapabilityCall(name="CostManagementAgent", arguments='{"x": 1}', call_id="c1")
    ]
    assert interpreter.extract_completion_tokens(completion) == 11


@pytest.mark.parametrize(
    "metadata",
    [
        {},
        {"tool_calls": []},
        {"tool_calls": None},
        {"tool_calls": [{"id": "x"}]},
        {"tool_calls": [42, "junk"]},
    ],
)
def test_no_capability_calls_yields_none(metadata: dict) -> None:
    assert ResponseInterpreter().extract_capability_calls(ProviderCompletion("text", metadata)) is None


@pytest.mark.parametrize("completion", [None, SimpleNamespace(content="x"), SimpleNamespace(metadata="bogus")])
def test_missing_metadata_yields_none(completion: object) -> None:
    assert ResponseInterpreter().extract_capability_calls(completion) is None


def test_probing_adapter_finds_aliases() -> None:
    adapter = AliasProbingAdapter()

    assert adapter.capability_calls({"ToolCalls": [{"FunctionName": "EnvironmentAgent", "id": "t1"}]}) == [
        CapabilityCall(name="EnvironmentAgent", call_id="t1")
    ]
    assert adapter.capability_calls({"function_calls": "DiscoveryAgent, CostManagementAgent"}) == [
        CapabilityCall(name="DiscoveryAgent"),
        CapabilityCall(name="CostManagementAgent"),
    ]
    assert adapter.capability_calls({"tool_calls": {"function": {"name": "ComplianceAgent", "arguments": "{}"}}}) == [
        CapabilityCall(name="ComplianceAgent", arguments="{}")
    ]


def test_probing_adapter_skips_empty_containers() -> None:
    adapter = AliasProbingAdapter()

    calls = adapter.capability_calls({"tool_calls": [], "ToolCalls": ["InfrastructureAgent"]})

    assert calls == [CapabilityCall(name="InfrastructureAgent")]


def test_probing_adapter_usage_aliases() -> None:
    adapter = AliasProbingAdapter()

    assert adapter.completion_tokens({"Usage": {"CompletionTokens": 17}}) == 17
    assert adapter.completion_tokens({"usage": SimpleNamespace(output_tokens=4)}) == 4
    assert adapter.completion_tokens({"usage": {"completion_tokens": "12"}}) is None


def test_completion_tokens_fall_back_to_counting_text() -> None:
    counter = WordCounter()
    interpreter = ResponseInterpreter(counter=counter)

    tokens = interpreter.extract_completion_tokens(
        ProviderCompletion(content="three word answer", metadata={"usage": {"completion_tokens": True}}),
        model_name="gpt-4o",
    )

    assert tokens == 3
    assert counter.calls == [("three word answer", "gpt-4o")]


def test_completion_tokens_without_counter_or_text_are_zero() -> None:
    assert ResponseInterpreter().extract_completion_tokens(ProviderCompletion("some text")) == 0
    assert ResponseInterpreter(counter=WordCounter()).extract_completion_tokens(ProviderCompletion("")) == 0


@pytest.mark.parametrize(
    "name, adapter_type",
    [
        ("auto", OpenAIMetadataAdapter),
        (None, OpenAIMetadataAdapter),
        (" OpenAI ", OpenAIMetadataAdapter),
        ("probing", AliasProbingAdapter),
        ("something-else", OpenAIMetadataAdapter),
    ],
)
def test_select_metadata_adapter(name: str | None, adapter_type: type) -> None:
    assert isinstance(select_metadata_adapter(name), adapter_type)
