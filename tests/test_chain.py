import asyncio

import pytest

from inbox_llm.chain import LlmChain
from inbox_llm.mock import MockLlm
from inbox_llm.tooling import ToolExecutor
from inbox_llm.types import (
    Discard,
    EnrichedMessage,
    FallbackMode,
    IncomingMessage,
    LlmClient,
    LlmConfig,
    LlmError,
    LlmRequest,
    LlmResponse,
    LlmTurnProgress,
    MessageCompletion,
    RawFallback,
    Success,
    ToolCall,
    ToolCallsCompletion,
)


def default_response() -> LlmResponse:
    return LlmResponse(
        title="Test title",
        tags=["test"],
        summary="A test summary.",
        excerpt=None,
        produced_by="mock",
    )


def tool_def(name: str) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": name,
            "parameters": {"type": "object", "properties": {}},
        },
    }


def make_executor(name: str, result: str) -> ToolExecutor:
    def handler(arguments, msg_id, attachments_dir):
        return result

    return ToolExecutor([(tool_def(name), handler)])


class ScriptedLlm(LlmClient):
    """Backend driven by a function of (request, call index)."""

    model = "test-model"
    retries = 1

    def __init__(self, script, name="scripted", thinking=False):
        self.script = script
        self.name = name
        self.thinking = thinking
        self.requests: list[LlmRequest] = []

    def thinking_supported(self) -> bool:
        return self.thinking

    async def complete(self, req):
        n = len(self.requests)
        self.requests.append(req)
        result = self.script(req, n)
        if isinstance(result, Exception):
            raise result
        return result


def tool_calls(name, arguments=None):
    return ToolCallsCompletion(
        [ToolCall(id="t1", name=name, arguments=arguments if arguments is not None else {})]
    )


def message(resp=None):
    return MessageCompletion(resp or default_response())


@pytest.mark.asyncio
async def test_chain_returns_success():
    chain = LlmChain([MockLlm(default_response())], FallbackMode.RAW, 3)
    enriched = EnrichedMessage(original=IncomingMessage(text="test"))
    req = LlmRequest.from_enriched(enriched, LlmConfig(), "/tmp", "", False)
    outcome = await chain.complete(req)
    assert isinstance(outcome, Success)
    assert outcome.response.title == "Test title"


@pytest.mark.asyncio
async def test_chain_raw_fallback_when_no_backends():
    chain = LlmChain([], FallbackMode.RAW, 5, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert outcome == RawFallback(source_urls=[], tool_content="")


@pytest.mark.asyncio
async def test_chain_discard_fallback_when_no_backends():
    chain = LlmChain([], FallbackMode.DISCARD, 5, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert outcome == Discard()


@pytest.mark.asyncio
async def test_failing_backend_with_discard():
    llm = ScriptedLlm(lambda req, n: LlmError("boom"))
    chain = LlmChain([llm], FallbackMode.DISCARD, 3)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert outcome == Discard()
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_second_backend_used_after_first_fails():
    second = MockLlm(LlmResponse(title="B", tags=[], summary="ok", produced_by="second"))
    chain = LlmChain([MockLlm.failing("boom"), second], FallbackMode.RAW, 3)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert outcome.response.produced_by == "second"


def test_max_tool_turns_accessor():
    chain = LlmChain([], FallbackMode.RAW, 7, None, 1, 0, None)
    assert chain.max_tool_turns() == 7


def test_zero_max_tool_turns_rejected():
    with pytest.raises(ValueError):
        LlmChain([], FallbackMode.RAW, 0)


@pytest.mark.asyncio
async def test_chain_tool_calls_without_executor_falls_back():
    llm = ScriptedLlm(lambda req, n: tool_calls("scrape_page", {"url": "https://example.com"}))
    chain = LlmChain([llm], FallbackMode.RAW, 2, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, RawFallback)
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_chain_empty_tool_calls_falls_back():
    llm = ScriptedLlm(lambda req, n: ToolCallsCompletion([]))
    chain = LlmChain([llm], FallbackMode.RAW, 2, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert outcome == RawFallback(source_urls=[], tool_content="")
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_chain_activate_thinking_retries_with_think_true():
    def script(req, n):
        return tool_calls("activate_thinking") if n == 0 else message()

    llm = ScriptedLlm(script, thinking=True)
    chain = LlmChain([llm], FallbackMode.RAW, 5, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert len(llm.requests) == 2
    assert llm.requests[0].think is None
    assert llm.requests[1].think is True


@pytest.mark.asyncio
async def test_chain_thinking_loop_terminates():
    llm = ScriptedLlm(lambda req, n: tool_calls("activate_thinking"), thinking=True)
    chain = LlmChain([llm], FallbackMode.RAW, 5, None, 1, 0, None)
    outcome = await asyncio.wait_for(chain.complete(LlmRequest.simple("s", "u")), 5)
    assert isinstance(outcome, RawFallback)
    assert len(llm.requests) == 5


@pytest.mark.asyncio
async def test_llm_call_executes_sub_call():
    def script(req, n):
        if n == 0:
            return tool_calls(
                "llm_call",
                {"system_prompt": "Summarize the following", "content": "some content"},
            )
        return message()

    llm = ScriptedLlm(script)
    chain = LlmChain([llm], FallbackMode.RAW, 5, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert len(llm.requests) == 3
    sub = llm.requests[1]
    assert sub.user_content == "some content"
    assert sub.system_prompt.startswith("Summarize the following")
    assert "Respond ONLY with a JSON object" in sub.system_prompt
    assert sub.llm_depth == 1
    assert "tool `llm_call` result: A test summary." in llm.requests[2].user_content


@pytest.mark.asyncio
async def test_llm_call_not_offered_when_depth_zero():
    def script(req, n):
        if n == 0:
            return tool_calls("llm_call", {"system_prompt": "x", "content": "y"})
        return message()

    llm = ScriptedLlm(script)
    chain = LlmChain([llm], FallbackMode.RAW, 5, None, 0, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, (Success, RawFallback))
    assert llm.requests[0].tool_definitions == []


@pytest.mark.asyncio
async def test_tool_definitions_offered():
    llm = ScriptedLlm(lambda req, n: message(), thinking=True)
    chain = LlmChain([llm], FallbackMode.RAW, 3, make_executor("scrape_page", "x"), 1)
    await chain.complete(LlmRequest.simple("s", "u"))
    names = [d["function"]["name"] for d in llm.requests[0].tool_definitions]
    assert names == ["scrape_page", "activate_thinking", "llm_call"]


@pytest.mark.asyncio
async def test_llm_call_tool_not_offered_at_max_depth():
    llm = ScriptedLlm(lambda req, n: message())
    chain = LlmChain([llm], FallbackMode.RAW, 3, make_executor("scrape_page", "x"), 1)
    req = LlmRequest.simple("s", "u")
    req.llm_depth = 1
    await chain.complete(req)
    names = [d["function"]["name"] for d in llm.requests[0].tool_definitions]
    assert names == ["scrape_page"]


@pytest.mark.asyncio
async def test_chain_forced_summary_without_tools_succeeds():
    def script(req, n):
        if not req.tool_definitions:
            return message()
        return tool_calls("scrape_page", {"url": "https://example.com"})

    llm = ScriptedLlm(script)
    chain = LlmChain([llm], FallbackMode.RAW, 2, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert outcome.response == default_response()
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_chain_max_tool_turns_attempts_forced_summary():
    def script(req, n):
        if not req.tool_definitions:
            return message()
        return tool_calls("scrape_page", {"url": "https://example.com"})

    llm = ScriptedLlm(script)
    executor = make_executor("scrape_page", "page text")
    chain = LlmChain([llm], FallbackMode.RAW, 2, executor, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert len(llm.requests) == 4
    assert "Tool call limit reached" in llm.requests[-1].user_content
    assert llm.requests[-1].tool_definitions == []


@pytest.mark.asyncio
async def test_chain_forced_summary_fail_falls_back():
    llm = ScriptedLlm(lambda req, n: tool_calls("scrape_page"))
    chain = LlmChain([llm], FallbackMode.RAW, 1, None, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert outcome == RawFallback(source_urls=[], tool_content="")
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_raw_fallback_carries_tool_urls_and_content():
    llm = ScriptedLlm(lambda req, n: tool_calls("scrape_page"))
    executor = make_executor("scrape_page", "see https://example.com/a for details")
    chain = LlmChain([llm], FallbackMode.RAW, 1, executor, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, RawFallback)
    assert outcome.source_urls == ["https://example.com/a"]
    assert "--- Tool execution results ---" in outcome.tool_content
    assert "tool `scrape_page`: see https://example.com/a" in outcome.tool_content


@pytest.mark.asyncio
async def test_success_appends_tool_source_links():
    def script(req, n):
        return tool_calls("scrape_page") if n == 0 else message()

    executor = make_executor("scrape_page", "found https://example.com/a")
    chain = LlmChain([ScriptedLlm(script)], FallbackMode.RAW, 5, executor, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert outcome.response.summary == "A test summary.\n\nSources:\n- https://example.com/a"


@pytest.mark.asyncio
async def test_chain_budget_hint_injected_at_half_budget():
    def script(req, n):
        return tool_calls("scrape_page") if n < 3 else message()

    llm = ScriptedLlm(script)
    executor = make_executor("scrape_page", "text")
    chain = LlmChain([llm], FallbackMode.RAW, 4, executor, 1, 0, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert "Tool budget:" not in llm.requests[1].user_content
    assert "[Tool budget: 2 turn(s) remaining." in llm.requests[2].user_content
    assert "[Tool budget: 1 turn(s) remaining." in llm.requests[3].user_content


@pytest.mark.asyncio
async def test_chain_inner_retry_succeeds_after_transient_failure():
    def script(req, n):
        return LlmError("transient error") if n == 0 else message()

    llm = ScriptedLlm(script)
    chain = LlmChain([llm], FallbackMode.RAW, 5, None, 1, 1, None)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    assert len(llm.requests) == 2


@pytest.mark.asyncio
async def test_chain_sends_progress_events():
    def script(req, n):
        return tool_calls("web_search", {"query": "test"}) if n == 0 else message()

    events: list[LlmTurnProgress] = []
    executor = make_executor("web_search", "results")
    chain = LlmChain([ScriptedLlm(script)], FallbackMode.RAW, 5, executor, 1, 0, None)
    req = LlmRequest.simple("s", "u")
    req.on_progress = events.append
    outcome = await chain.complete(req)
    assert isinstance(outcome, Success)
    assert events == [LlmTurnProgress(turn=1, max_turns=5, tools_called=["web_search"])]


@pytest.mark.asyncio
async def test_tool_result_truncated_in_chain():
    def script(req, n):
        return tool_calls("scrape_page") if n == 0 else message()

    llm = ScriptedLlm(script)
    executor = make_executor("scrape_page", "x" * 200)
    chain = LlmChain([llm], FallbackMode.RAW, 5, executor, 1, 0, 50)
    outcome = await chain.complete(LlmRequest.simple("s", "u"))
    assert isinstance(outcome, Success)
    content = llm.requests[1].user_content
    assert "[truncated to 50 chars]" in content
    assert "x" * 51 not in content


@pytest.mark.asyncio
async def test_required_initial_tool_call_reprompts_then_falls_back():
    llm = ScriptedLlm(lambda req, n: message())
    executor = make_executor("scrape_page", "text")
    chain = LlmChain([llm], FallbackMode.RAW, 3, executor, 1, 0, None)
    req = LlmRequest.simple("s", "u")
    req.require_initial_tool_call = True
    outcome = await chain.complete(req)
    assert isinstance(outcome, RawFallback)
    assert len(llm.requests) == 4
    assert llm.requests[-1].user_content.count("A tool call is required") == 3


@pytest.mark.asyncio
async def test_required_initial_tool_call_satisfied():
    def script(req, n):
        return tool_calls("scrape_page") if n == 0 else message()

    llm = ScriptedLlm(script)
    executor = make_executor("scrape_page", "text")
    chain = LlmChain([llm], FallbackMode.RAW, 3, executor, 1, 0, None)
    req = LlmRequest.simple("s", "u")
    req.require_initial_tool_call = True
    outcome = await chain.complete(req)
    assert isinstance(outcome, Success)
    assert llm.requests[1].require_initial_tool_call is False