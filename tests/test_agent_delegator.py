from __future__ import annotations

import json
from pathlib import Path

import pytest

from fakes import FakeSpawner
from planforge.agent.delegator import (
    AgentRequest,
    CommandAgentDelegator,
    compose_prompt,
    find_result_event,
    metrics_from_result,
    parse_envelope,
)
from planforge.agent.metrics import TokenUsage, UsageMetrics, merge_metrics
from planforge.exec.process import ProcessResult

_RESULT_EVENT = {
    "type": "result",
    "session_id": "sess-42",
    "result": "All done",
    "is_error": False,
    "num_turns": 3,
    "duration_ms": 1500,
    "usage": {"input_tokens": 100, "output_tokens": 20, "cache_read_input_tokens": 5},
    "modelUsage": {"claude-haiku": {"inputTokens": 100, "outputTokens": 20}},
}


def _request(tmp_path: Path, **kwargs: object) -> AgentRequest:
    return AgentRequest(instructions="Fix the tests", cwd=tmp_path, **kwargs)  # type: ignore


def test_build_argv_keeps_output_format_last(tmp_path: Path) -> None:
    delegator = CommandAgentDelegator(executable="agent", extra_args=["--verbose"])
    argv = delegator.build_argv(
        _request(
            tmp_path,
            model="fast",
            session_id="s-1",
            max_turns=5,
            allowed_folders=["/a", "/b"],
        )
    )
    assert argv == [
        "agent",
        "-p",
        "Fix the tests",
        "--model",
        "haiku",
        "--resume",
        "s-1",
        "--max-turns",
        "5",
        "--add-dir",
        "/a",
        "--add-dir",
        "/b",
        "--verbose",
        "--output-format",
        "json",
    ]


def test_build_argv_passes_explicit_model_names_through(tmp_path: Path) -> None:
    argv = CommandAgentDelegator().build_argv(_request(tmp_path, model="my-model"))
    assert argv[argv.index("--model") + 1] == "my-model"
    assert argv[0] == "claude"


def test_compose_prompt_appends_context_sections(tmp_path: Path) -> None:
    prompt = compose_prompt(
        _request(
            tmp_path,
            context="The build uses make.",
            context_files=["Makefile"],
            allowed_urls=["https://docs.example.com"],
            instructions_file="TASK.md",
        )
    )
    assert prompt.startswith("Fix the tests\n\nRead the full instructions in `TASK.md`.")
    assert "## Context\n\nThe build uses make." in prompt
    assert "## Relevant files\n\n- Makefile" in prompt
    assert "## Allowed URLs\n\n- https://docs.example.com" in prompt


def test_parse_envelope_accepts_array_and_json_lines() -> None:
    array = json.dumps([{"type": "system"}, _RESULT_EVENT, 7])
    lines = "\n".join(['{"type": "system"}', "progress text", json.dumps(_RESULT_EVENT)])

    assert len(parse_envelope(array)) == 2
    assert find_result_event(parse_envelope(lines)) == _RESULT_EVENT
    assert parse_envelope("") == []
    assert find_result_event([{"type": "assistant"}]) is None


def test_metrics_from_result_reads_usage_and_breakdown() -> None:
    metrics = metrics_from_result(_RESULT_EVENT)
    assert metrics.tokens == TokenUsage(input_tokens=100, output_tokens=20, cache_read_tokens=5)
    assert [item.model for item in metrics.model_breakdown] == ["claude-haiku"]
    assert metrics.model_breakdown[0].tokens.output_tokens == 20
    assert metrics.turns == 3
    assert metrics.duration_ms == 1500


def test_merge_metrics_adds_tokens_and_counters() -> None:
    first = metrics_from_result(_RESULT_EVENT)
    merged = merge_metrics(first, metrics_from_result(_RESULT_EVENT))
    assert merged is not None
    assert merged.tokens.input_tokens == 200
    assert merged.model_breakdown[0].tokens.input_tokens == 200
    assert merged.turns == 6
    assert first.tokens.input_tokens == 100
    assert merge_metrics(None, first) is first
    assert merge_metrics(first, None) is first
    assert UsageMetrics.from_dict(first.to_dict()) == first


@pytest.mark.asyncio
async def test_delegate_returns_session_output_and_metrics(tmp_path: Path) -> None:
    spawner = FakeSpawner()
    delegator = CommandAgentDelegator(executable="agent", spawner=spawner)
    request = _request(tmp_path)
    key = spawner.key(delegator.build_argv(request))
    spawner.scripts[key] = [ProcessResult(exit_code=0, stdout=json.dumps([_RESULT_EVENT]))]

    result = await delegator.delegate(request)

    assert result.success
    assert result.session_id == "sess-42"
    assert result.output == "All done"
    assert result.metrics is not None
    assert result.metrics.tokens.input_tokens == 100
    assert spawner.calls[0].cwd == tmp_path


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("reply", "error"),
    [
        (ProcessResult(exit_code=2, stdout=""), "Agent exited with code 2"),
        (ProcessResult(exit_code=None, signal="SIGKILL"), "Agent killed by signal SIGKILL"),
        (ProcessResult(exit_code=0, stdout="plain text"), "Agent produced no result event"),
        (
            ProcessResult(
                exit_code=0,
                stdout=json.dumps({"type": "result", "is_error": True, "result": "quota"}),
            ),
            "quota",
        ),
        (ProcessResult(exit_code=None, start_failed=True, stderr="not found"), "not found"),
        (ProcessResult(exit_code=None, canceled=True), "Execution canceled"),
    ],
)
async def test_delegate_reports_failures(
    tmp_path: Path, reply: ProcessResult, error: str
) -> None:
    spawner = FakeSpawner()
    delegator = CommandAgentDelegator(executable="agent", spawner=spawner)
    request = _request(tmp_path)
    spawner.scripts[spawner.key(delegator.build_argv(request))] = [reply]

    result = await delegator.delegate(request)

    assert not result.success
    assert result.error == error
