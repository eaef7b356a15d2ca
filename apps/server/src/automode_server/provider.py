from __future__ import annotations

import asyncio
import json
import logging
import shlex
from dataclasses import dataclass, field
from typing import Annotated, Any, AsyncIterator, Literal, Protocol, Union

from pydantic import BaseModel, Field, TypeAdapter

from automode_server.cancellation import CancellationToken
from automode_server.config import AutoModeSettings
from automode_server.security import redact_sensitive_text


logger = logging.getLogger("automode.provider")


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str | None = None
    name: str = ""
    input: Any = None


class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str | None = None
    content: Any = None
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ThinkingBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class AssistantMessage(BaseModel):
    type: Literal["assistant"] = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)
    session_id: str | None = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str = "Unknown error"


class ResultMessage(BaseModel):
    type: Literal["result"] = "result"
    subtype: str = "success"
    result: str | None = None
    session_id: str | None = None


ProviderMessage = Annotated[
    Union[AssistantMessage, ErrorMessage, ResultMessage],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(ProviderMessage)
_BLOCK_TYPES = frozenset({"text", "tool_use", "thinking", "tool_result"})
# stream-json lines carry whole tool results
_STREAM_LIMIT_BYTES = 16 * 1024 * 1024


@dataclass
class ExecuteOptions:
    prompt: str
    model: str
    cwd: str
    system_prompt: str | None = None
    max_turns: int = 20
    allowed_tools: list[str] | None = None
    cancellation_token: CancellationToken | None = None
    conversation_history: list[dict[str, Any]] = field(default_factory=list)
    session_id: str | None = None
    thinking_level: str | None = None


class Provider(Protocol):
    name: str

    def execute_query(self, options: ExecuteOptions) -> AsyncIterator[AssistantMessage | ErrorMessage | ResultMessage]:
        ...


def assistant_text(text: str) -> AssistantMessage:
    return AssistantMessage(content=[TextBlock(text=text)])


def parse_provider_message(raw: dict[str, Any]) -> AssistantMessage | ErrorMessage | ResultMessage | None:
    """Map one raw stream-json event onto the closed message variants.

    Event kinds outside assistant/error/result (system, user, ...) yield None.
    """
    kind = raw.get("type")
    if kind == "assistant":
        message = raw.get("message")
        content = message.get("content") if isinstance(message, dict) else raw.get("content")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        blocks = [
            block
            for block in content or []
            if isinstance(block, dict) and block.get("type") in _BLOCK_TYPES
        ]
        data: dict[str, Any] = {"type": "assistant", "content": blocks, "session_id": raw.get("session_id")}
    elif kind == "error":
        error = raw.get("error") or raw.get("message") or "Unknown error"
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error, sort_keys=True)
        data = {"type": "error", "error": str(error)}
    elif kind == "result":
        result = raw.get("result")
        data = {
            "type": "result",
            "subtype": str(raw.get("subtype") or "success"),
            "result": result if isinstance(result, str) else None,
            "session_id": raw.get("session_id"),
        }
    else:
        return None
    return _MESSAGE_ADAPTER.validate_python(data)


class MockProvider:
    name = "mock"

    def __init__(self, *, steps: int = 3, delay_seconds: float = 0.03) -> None:
        self._steps = steps
        self._delay_seconds = delay_seconds

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[AssistantMessage | ErrorMessage | ResultMessage]:
        token = options.cancellation_token
        for _ in range(self._steps):
            if token is not None and token.is_cancelled:
                return
            await asyncio.sleep(self._delay_seconds)

        headline = options.prompt.strip().splitlines()[0] if options.prompt.strip() else "empty prompt"
        yield assistant_text(f"[mock] {headline}\n")
        yield ResultMessage(result="mock execution completed")


class CliProvider:
    """Runs an agent CLI that prints one stream-json event per line."""

    name = "cli"

    def __init__(self, binary: str = "claude", args: list[str] | None = None) -> None:
        self._binary = binary
        self._args = list(args) if args is not None else []

    def build_command(self, options: ExecuteOptions) -> list[str]:
        command = [self._binary, *self._args]
        if options.model:
            command.extend(["--model", options.model])
        if options.max_turns:
            command.extend(["--max-turns", str(options.max_turns)])
        if options.system_prompt:
            command.extend(["--append-system-prompt", options.system_prompt])
        if options.allowed_tools:
            command.extend(["--allowedTools", ",".join(options.allowed_tools)])
        if options.session_id:
            command.extend(["--resume", options.session_id])
        command.append(options.prompt)
        return command

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[AssistantMessage | ErrorMessage | ResultMessage]:
        command = self.build_command(options)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=options.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError:
            yield ErrorMessage(error=f"agent binary not found: {self._binary}")
            return

        token = options.cancellation_token
        watcher = asyncio.create_task(_terminate_on_cancel(process, token)) if token is not None else None
        stderr_reader = asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        saw_terminal = False
        try:
            assert process.stdout is not None
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("skipping non-json agent output line: %s", line[:200])
                    continue
                if not isinstance(raw, dict):
                    continue
                message = parse_provider_message(raw)
                if message is None:
                    continue
                if isinstance(message, (ErrorMessage, ResultMessage)):
                    saw_terminal = True
                yield message

            return_code = await process.wait()
            stderr = (await stderr_reader).decode("utf-8", errors="replace") if stderr_reader is not None else ""
            cancelled = token is not None and token.is_cancelled
            if return_code != 0 and not saw_terminal and not cancelled:
                tail = redact_sensitive_text(stderr.strip()[-500:]) or "no stderr"
                yield ErrorMessage(error=f"agent exited with code {return_code}: {tail}")
        finally:
            if watcher is not None:
                watcher.cancel()
            if stderr_reader is not None and not stderr_reader.done():
                stderr_reader.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()


async def _terminate_on_cancel(process: asyncio.subprocess.Process, token: CancellationToken) -> None:
    await token.wait()
    if process.returncode is None:
        logger.info("terminating agent process %s: %s", process.pid, token.reason)
        process.terminate()


def build_provider(settings: AutoModeSettings) -> Provider:
    if settings.provider == "cli":
        return CliProvider(binary=settings.cli_bin, args=shlex.split(settings.cli_args))
    if settings.provider != "mock":
        logger.warning("unknown provider %r, falling back to mock", settings.provider)
    return MockProvider()
