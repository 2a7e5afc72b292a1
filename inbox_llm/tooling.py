"""Tool execution, retry and source-link helpers used by the backend chain."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from inbox_llm.types import (
    LlmClient,
    LlmCompletion,
    LlmError,
    LlmRequest,
    LlmResponse,
    ToolCall,
)

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any, uuid.UUID, Path], Union[str, Awaitable[str]]]

_URL_RE = re.compile(r"https?://[^\s<>\"'`()\[\]{}]+")
_TRAILING_PUNCT = ".,;:!?"
_RETRY_BASE_DELAY = 0.5


def extract_http_urls(text: str) -> list[str]:
    """Return the distinct http(s) URLs in ``text``, in order of appearance."""
    seen: set[str] = set()
    urls: list[str] = []
    for match in _URL_RE.finditer(text):
        url = match.group(0).rstrip(_TRAILING_PUNCT)
        if len(url) <= len("https://") or url in seen:
            continue
        seen.add(url)
        urls.append(url)
    return urls


def truncate_tool_result(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` characters, appending a notice when cut."""
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n... [truncated to {max_chars} chars]"


def append_missing_source_links(
    resp: LlmResponse, tool_source_urls: Iterable[str]
) -> LlmResponse:
    """Append a ``Sources:`` list of tool URLs not already cited in the response."""
    urls = list(tool_source_urls)
    if not urls:
        return resp
    present = set(extract_http_urls(resp.summary))
    if resp.excerpt is not None:
        present.update(extract_http_urls(resp.excerpt))
    missing = [url for url in urls if url not in present]
    if not missing:
        return resp
    summary = resp.summary + "\n\nSources:" + "".join(f"\n- {url}" for url in missing)
    return dataclasses.replace(resp, summary=summary, tags=list(resp.tags))


class ToolExecutor:
    """Runs the tools a model may call.

    Each tool is given as a pair of an OpenAI-style function definition and a
    handler ``handler(arguments, msg_id, attachments_dir)`` returning text,
    either directly or as an awaitable.
    """

    def __init__(
        self,
        tools: Iterable[tuple[dict[str, Any], ToolHandler]] = (),
        disabled: Iterable[str] = (),
    ) -> None:
        self._tools: dict[str, tuple[dict[str, Any], ToolHandler]] = {}
        for definition, handler in tools:
            name = definition["function"]["name"]
            self._tools[name] = (definition, handler)
        self._disabled = set(disabled)

    def active_tool_definitions(self) -> list[dict[str, Any]]:
        """Definitions of the enabled tools, in registration order."""
        return [
            definition
            for name, (definition, _) in self._tools.items()
            if name not in self._disabled
        ]

    async def execute(
        self, name: str, arguments: Any, msg_id: uuid.UUID, attachments_dir: Path
    ) -> str:
        """Run the named tool and return its text result."""
        entry = self._tools.get(name)
        if entry is None or name in self._disabled:
            raise LlmError(f"unknown tool: {name}")
        _, handler = entry
        result = handler(arguments, msg_id, Path(attachments_dir))
        if inspect.isawaitable(result):
            result = await result
        return str(result)


@dataclass
class ToolExecutionOutput:
    """Combined text of a batch of tool calls and the URLs found in their results."""

    text: str
    source_urls: list[str] = field(default_factory=list)


async def execute_tool_calls(
    executor: ToolExecutor,
    calls: list[ToolCall],
    req: LlmRequest,
    tool_result_max_chars: Optional[int],
) -> ToolExecutionOutput:
    """Run all calls concurrently and merge their results into one text block."""
    if not calls:
        raise ValueError("execute_tool_calls needs at least one call")

    results = await asyncio.gather(
        *(
            executor.execute(call.name, call.arguments, req.msg_id, req.attachments_dir)
            for call in calls
        ),
        return_exceptions=True,
    )

    outputs: list[str] = []
    seen: set[str] = set()
    source_urls: list[str] = []

    for call, result in zip(calls, results):
        logger.info("Executing LLM tool call: %s", call.name)
        if isinstance(result, BaseException):
            logger.warning("Tool call %s failed: %r", call.name, result)
            outputs.append(f"tool `{call.name}` error: {result}")
            continue
        logger.info(
            "Tool call %s result (%d chars): %s", call.name, len(result), result[:120]
        )
        for url in extract_http_urls(result):
            if url not in seen:
                seen.add(url)
                source_urls.append(url)
        text = result
        if tool_result_max_chars is not None:
            text = truncate_tool_result(result, tool_result_max_chars)
            if len(text) < len(result):
                logger.info(
                    "Tool result of %s truncated from %d to %d chars (max %d)",
                    call.name,
                    len(result),
                    len(text),
                    tool_result_max_chars,
                )
        outputs.append(f"tool `{call.name}`: {text}")

    return ToolExecutionOutput(text="\n".join(outputs), source_urls=source_urls)


async def retry_inner(backend: LlmClient, req: LlmRequest, retries: int) -> LlmCompletion:
    """Call ``backend.complete`` up to ``retries + 1`` times with exponential backoff."""
    last_err = LlmError("no attempts")
    for attempt in range(retries + 1):
        if attempt > 0:
            await asyncio.sleep(_RETRY_BASE_DELAY * 2 ** (attempt - 1))
        try:
            return await backend.complete(
                dataclasses.replace(req, tool_definitions=list(req.tool_definitions))
            )
        except LlmError as err:
            logger.warning(
                "Inner LLM call retry (backend=%s, attempt=%d, max_retries=%d): %s",
                backend.name,
                attempt,
                retries,
                err,
            )
            last_err = err
    raise last_err