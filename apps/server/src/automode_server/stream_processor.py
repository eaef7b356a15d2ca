from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from automode_server.cancellation import CancellationToken
from automode_server.provider import (
    AssistantMessage,
    ErrorMessage,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)


ProviderStream = AsyncIterator[AssistantMessage | ErrorMessage | ResultMessage]
Callback = Callable[..., Awaitable[None] | None]


class StreamError(Exception):
    pass


@dataclass
class StreamHandlers:
    on_text: Callable[[str], Awaitable[None] | None] | None = None
    on_tool_use: Callable[[str, Any], Awaitable[None] | None] | None = None
    on_thinking: Callable[[str], Awaitable[None] | None] | None = None
    on_error: Callable[[str], Awaitable[None] | None] | None = None
    on_complete: Callable[[str | None], Awaitable[None] | None] | None = None


@dataclass
class StreamResult:
    text: str
    success: bool
    error: str | None = None
    result: str | None = None


async def process_stream(
    stream: ProviderStream,
    handlers: StreamHandlers | None = None,
    cancellation_token: CancellationToken | None = None,
) -> StreamResult:
    """Drain a provider stream into handler callbacks and an aggregate result.

    An error message is passed to ``on_error`` and then raised as StreamError,
    so callers only see a StreamResult for streams that finished cleanly.
    """
    handlers = handlers or StreamHandlers()
    parts: list[str] = []
    result_text: str | None = None
    try:
        async for message in stream:
            if cancellation_token is not None:
                cancellation_token.raise_if_cancelled()

            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        parts.append(block.text)
                        await _invoke(handlers.on_text, block.text)
                    elif isinstance(block, ToolUseBlock):
                        await _invoke(handlers.on_tool_use, block.name, block.input)
                    elif isinstance(block, ThinkingBlock):
                        await _invoke(handlers.on_thinking, block.thinking)
                    elif isinstance(block, ToolResultBlock):
                        continue
            elif isinstance(message, ErrorMessage):
                await _invoke(handlers.on_error, message.error)
                raise StreamError(message.error)
            elif isinstance(message, ResultMessage):
                if message.subtype == "success":
                    result_text = message.result
                    await _invoke(handlers.on_complete, result_text)
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    if cancellation_token is not None:
        cancellation_token.raise_if_cancelled()
    return StreamResult(text="".join(parts), success=True, result=result_text)


async def collect_stream_text(stream: ProviderStream, cancellation_token: CancellationToken | None = None) -> str:
    result = await process_stream(stream, cancellation_token=cancellation_token)
    return result.text


async def process_stream_with_progress(
    stream: ProviderStream,
    on_progress: Callable[[str], Awaitable[None] | None],
    cancellation_token: CancellationToken | None = None,
) -> StreamResult:
    return await process_stream(
        stream,
        StreamHandlers(on_text=on_progress),
        cancellation_token=cancellation_token,
    )


def has_marker(result: StreamResult, marker: str) -> bool:
    return marker in result.text


def extract_before_marker(text: str, marker: str) -> str | None:
    index = text.find(marker)
    if index == -1:
        return None
    return text[:index].strip()


async def _invoke(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome
