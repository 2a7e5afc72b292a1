# inbox-llm

Asynchronous LLM enrichment for captured inbox content. A message, with
its text, any fetched pages and any image attachments, is turned into an
`LlmRequest`. An `LlmChain` then sends it through one or more backends and
returns an outcome. On success the outcome holds an `LlmResponse` with a
title, tags, a summary and an optional excerpt.

## Modules

- `inbox_llm.types` holds the data types and the backend interface:
  - `LlmRequest`, with `LlmRequest.simple()` and `LlmRequest.from_enriched()`.
  - `LlmResponse`, `ToolCall`, `MessageCompletion` and `ToolCallsCompletion`.
  - The outcomes `Success`, `RawFallback` and `Discard`.
  - `FallbackMode`, `LlmConfig`, `LlmPrompts` and `LlmError`.
  - The message types `IncomingMessage`, `EnrichedMessage`, `UrlContent`,
    `Attachment` and `MediaKind`.
  - The abstract `LlmClient` base class.
  - The built-in tool definitions `activate_thinking_tool_def()` and
    `llm_call_tool_def()`.
- `inbox_llm.mock` provides `MockLlm`. It is a backend that always returns
  the same response. `MockLlm.failing(message)` gives one that always
  raises `LlmError`.
- `inbox_llm.tooling` holds the helpers for tools and retries:
  - `ToolExecutor` registers tools as `(definition, handler)` pairs.
    Handlers may be sync or async.
  - `execute_tool_calls` runs the tool calls of one turn concurrently.
  - `truncate_tool_result` shortens a tool result to a character limit.
  - `extract_http_urls` finds the http and https URLs in a text.
  - `append_missing_source_links` adds a `Sources:` list to a summary.
  - `retry_inner` retries a backend call with exponential backoff.
- `inbox_llm.chain` provides `LlmChain`, which drives the backends in order.

## How the chain behaves

- Each backend is tried `backend.retries` times. Each try makes
  `inner_retries + 1` calls, with backoff between them, before it counts
  as failed.
- When the model asks for tools, the chain runs them through the
  `ToolExecutor` and appends the results to the user content. It then asks
  the model again. Each attempt allows at most `max_tool_turns` tool turns.
  Once half the budget is left, a short budget hint is appended. When the
  budget is used up, a forced summary pass runs without any tools.
- `activate_thinking` sets `think = True` on the request.
- `llm_call` runs a nested model call through `LlmClient.complete_raw()`.
  It is offered only while `llm_depth < max_llm_tool_depth`.
- Some model answers may leave out URLs that the tools found. In that case
  `append_missing_source_links` adds those URLs to the summary.
- If every backend fails, the result depends on the fallback mode:
  - `FallbackMode.RAW` returns `RawFallback`. It holds the source URLs and
    the tool output gathered so far.
  - `FallbackMode.DISCARD` returns `Discard`.
- Set `on_progress` on the request to a callable to receive an
  `LlmTurnProgress` after each tool turn.

## Usage

```python
import asyncio

from inbox_llm.chain import LlmChain
from inbox_llm.mock import MockLlm
from inbox_llm.types import FallbackMode, LlmRequest, LlmResponse, Success

response = LlmResponse(title="Title", tags=["note"], summary="Summary", produced_by="mock")
chain = LlmChain([MockLlm(response)], FallbackMode.RAW, 3)


async def main():
    outcome = await chain.complete(LlmRequest.simple("system prompt", "user content"))
    if isinstance(outcome, Success):
        print(outcome.response.title)


asyncio.run(main())
```

To use a real model, subclass `LlmClient`. Set `name`, `model` and
`retries`, and implement `async complete(req)` so that it returns a
`MessageCompletion` or a `ToolCallsCompletion`, or raises `LlmError`.

## What this package does not do

The package has no HTTP client for any model service, so no backend for a
real model ships with it. It also does not fetch web pages or parse model
output into an `LlmResponse`, and it has no command-line program. You
provide the backends and the tool handlers.

## Testing

```
pip install -e ".[test]"
pytest
```