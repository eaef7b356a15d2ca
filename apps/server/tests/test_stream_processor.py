import asyncio

import pytest

from automode_server.cancellation import CancellationToken, RunCancelledError
from automode_server.provider import (
    AssistantMessage,
    ErrorMessage,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    assistant_text,
)
from automode_server.stream_processor import (
    StreamError,
    StreamHandlers,
    StreamResult,
    collect_stream_text,
    extract_before_marker,
    has_marker,
    process_stream,
    process_stream_with_progress,
)


async def _stream(messages):
    for message in messages:
        await asyncio.sleep(0)
        yield message


def test_process_stream_concatenates_text_and_captures_result() -> None:
    messages = [assistant_text("Hello "), assistant_text("world"), ResultMessage(subtype="success", result="done")]

    result = asyncio.run(process_stream(_stream(messages)))

    assert result.text == "Hello world"
    assert result.success is True
    assert result.result == "done"
    assert result.error is None


def test_process_stream_dispatches_every_block_kind() -> None:
    seen: list[tuple[str, object]] = []

    async def on_thinking(text: str) -> None:
        seen.append(("thinking", text))

    handlers = StreamHandlers(
        on_text=lambda text: seen.append(("text", text)),
        on_tool_use=lambda name, tool_input: seen.append(("tool", (name, tool_input))),
        on_thinking=on_thinking,
        on_complete=lambda result: seen.append(("complete", result)),
    )
    messages = [
        AssistantMessage(
            content=[
                ThinkingBlock(thinking="hmm"),
                TextBlock(text="a"),
                ToolUseBlock(id="tool-1", name="Read", input={"path": "x.py"}),
                ToolResultBlock(tool_use_id="tool-1", content="file body"),
                TextBlock(text="b"),
            ]
        ),
        ResultMessage(result="fin"),
    ]

    result = asyncio.run(process_stream(_stream(messages), handlers))

    assert seen == [
        ("thinking", "hmm"),
        ("text", "a"),
        ("tool", ("Read", {"path": "x.py"})),
        ("text", "b"),
        ("complete", "fin"),
    ]
    assert result.text == "ab"


def test_process_stream_ignores_non_success_results() -> None:
    completions: list[str | None] = []
    messages = [assistant_text("x"), ResultMessage(subtype="error_max_turns", result="stopped")]

    result = asyncio.run(process_stream(_stream(messages), StreamHandlers(on_complete=completions.append)))

    assert result.result is None
    assert completions == []


def test_error_message_raises_after_partial_text_was_delivered() -> None:
    texts: list[str] = []
    errors: list[str] = []
    handlers = StreamHandlers(on_text=texts.append, on_error=errors.append)
    messages = [assistant_text("partial"), ErrorMessage(error="boom"), assistant_text("never")]

    with pytest.raises(StreamError, match="boom"):
        asyncio.run(process_stream(_stream(messages), handlers))

    assert texts == ["partial"]
    assert errors == ["boom"]


def test_process_stream_closes_the_stream_on_error() -> None:
    closed: list[bool] = []

    async def stream():
        try:
            yield assistant_text("one")
            yield ErrorMessage(error="fail")
            yield assistant_text("two")
        finally:
            closed.append(True)

    with pytest.raises(StreamError):
        asyncio.run(process_stream(stream()))

    assert closed == [True]


def test_cancelled_token_stops_consumption() -> None:
    token = CancellationToken()
    texts: list[str] = []

    def on_text(text: str) -> None:
        texts.append(text)
        token.cancel("stop requested")

    messages = [assistant_text("first"), assistant_text("second"), ResultMessage(result="done")]

    with pytest.raises(RunCancelledError, match="stop requested"):
        asyncio.run(process_stream(_stream(messages), StreamHandlers(on_text=on_text), token))

    assert texts == ["first"]


def test_collect_and_progress_helpers() -> None:
    text = asyncio.run(collect_stream_text(_stream([assistant_text("a"), assistant_text("b")])))
    assert text == "ab"

    chunks: list[str] = []
    result = asyncio.run(process_stream_with_progress(_stream([assistant_text("x"), assistant_text("y")]), chunks.append))
    assert chunks == ["x", "y"]
    assert result.text == "xy"


def test_marker_helpers() -> None:
    result = StreamResult(text="plan body\n[SPEC_GENERATED] review", success=True)

    assert has_marker(result, "[SPEC_GENERATED]")
    assert not has_marker(result, "[PLAN_GENERATED]")
    assert extract_before_marker(result.text, "[SPEC_GENERATED]") == "plan body"
    assert extract_before_marker(result.text, "[PLAN_GENERATED]") is None
