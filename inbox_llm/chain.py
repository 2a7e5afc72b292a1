"""An ordered chain of LLM backends with tool-calling turns, retries and fallback."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from inbox_llm.tooling import (
    ToolExecutor,
    append_missing_source_links,
    execute_tool_calls,
    retry_inner,
)
from inbox_llm.types import (
    Discard,
    FallbackMode,
    LlmClient,
    LlmError,
    LlmOutcome,
    LlmRequest,
    LlmTurnProgress,
    MessageCompletion,
    RawFallback,
    Success,
    ToolCall,
    activate_thinking_tool_def,
    llm_call_tool_def,
)

logger = logging.getLogger(__name__)

_ACTIVATE_THINKING = "activate_thinking"
_LLM_CALL = "llm_call"
_MAX_REQUIRED_TOOL_PROMPTS = 3
_RETRY_BASE_DELAY = 0.5

_REQUIRED_TOOL_PROMPT = (
    "\n\nA tool call is required before final JSON because URLs are present. "
    "First analyze and call exactly one best retrieval tool, then continue."
)
_FORCED_SUMMARY_PROMPT = (
    "\n\n[Tool call limit reached. Based on all information gathered above, "
    "produce your final JSON response now without calling any more tools.]"
)
_TOOL_RESULTS_HEADER = "\n\n--- Tool execution results ---\n"
_DEFAULT_SUB_SYSTEM_PROMPT = "You are a helpful assistant."
_LLM_CALL_FAILED = "llm_call failed: all backends exhausted"


@dataclass
class _AttemptState:
    """What one attempt gathered from tools, kept for the raw fallback."""

    source_urls: list[str] = field(default_factory=list)
    tool_text: str = ""
    _seen: set[str] = field(default_factory=set)

    def add_urls(self, urls: Sequence[str]) -> None:
        for url in urls:
            if url not in self._seen:
                self._seen.add(url)
                self.source_urls.append(url)


class LlmChain:
    """Tries each backend in order, driving tool-call turns until a final answer."""

    def __init__(
        self,
        backends: Sequence[LlmClient],
        fallback: FallbackMode,
        max_tool_turns: int,
        tool_executor: Optional[ToolExecutor] = None,
        max_llm_tool_depth: int = 1,
        inner_retries: int = 0,
        tool_result_max_chars: Optional[int] = None,
    ) -> None:
        if max_tool_turns <= 0:
            raise ValueError("max_tool_turns must be positive")
        self._backends = list(backends)
        self._fallback = fallback
        self._max_tool_turns = max_tool_turns
        self._tool_executor = tool_executor
        self._max_llm_tool_depth = max_llm_tool_depth
        self._inner_retries = inner_retries
        self._tool_result_max_chars = tool_result_max_chars

    def max_tool_turns(self) -> int:
        """The maximum number of tool-call turns per attempt."""
        return self._max_tool_turns

    async def complete(self, req: LlmRequest) -> LlmOutcome:
        """Try each backend with retries; apply the fallback policy when all fail."""
        tool_defs = self._tool_definitions(req)
        fallback_urls: list[str] = []
        fallback_content = ""

        for backend in self._backends:
            for attempt in range(backend.retries):
                state = _AttemptState()
                outcome = await self._run_attempt(backend, attempt, req, tool_defs, state)
                if outcome is not None:
                    return outcome
                fallback_urls = list(state.source_urls)
                fallback_content = state.tool_text
            logger.warning(
                "LLM backend exhausted all retries (backend=%s, model=%s, retries=%d)",
                backend.name,
                backend.model,
                backend.retries,
            )

        logger.warning(
            "All LLM backends failed, applying fallback (backend_count=%d)",
            len(self._backends),
        )
        if self._fallback is FallbackMode.DISCARD:
            return Discard()
        return RawFallback(source_urls=fallback_urls, tool_content=fallback_content)

    def _tool_definitions(self, req: LlmRequest) -> list[dict]:
        tool_defs = (
            list(self._tool_executor.active_tool_definitions())
            if self._tool_executor is not None
            else []
        )
        thinking = any(b.thinking_supported() for b in self._backends)
        if thinking and tool_defs:
            tool_defs.append(activate_thinking_tool_def())
        if req.llm_depth < self._max_llm_tool_depth and tool_defs:
            tool_defs.append(llm_call_tool_def())
        return tool_defs

    async def _run_attempt(
        self,
        backend: LlmClient,
        attempt: int,
        req: LlmRequest,
        tool_defs: list[dict],
        state: _AttemptState,
    ) -> Optional[Success]:
        """Run one attempt; return a success or ``None`` when it gives up."""
        current = dataclasses.replace(req, tool_definitions=list(tool_defs))
        turns = 0
        thinking_activations = 0
        required_tool_prompts = 0

        while True:
            logger.debug(
                "LLM request (backend=%s, model=%s, turn=%d, system_len=%d, content_len=%d)",
                backend.name,
                backend.model,
                turns + 1,
                len(current.system_prompt),
                len(current.user_content),
            )
            try:
                completion = await retry_inner(backend, current, self._inner_retries)
            except LlmError as err:
                logger.warning(
                    "LLM attempt failed (backend=%s, model=%s, attempt=%d/%d): %s",
                    backend.name,
                    backend.model,
                    attempt + 1,
                    backend.retries,
                    err,
                )
                return None

            if isinstance(completion, MessageCompletion):
                if current.require_initial_tool_call and turns == 0 and tool_defs:
                    if required_tool_prompts < _MAX_REQUIRED_TOOL_PROMPTS:
                        logger.debug(
                            "Re-prompting model to make required initial tool call "
                            "(backend=%s, prompt_attempt=%d)",
                            backend.name,
                            required_tool_prompts + 1,
                        )
                        current.user_content += _REQUIRED_TOOL_PROMPT
                        required_tool_prompts += 1
                        continue
                    logger.warning(
                        "Required initial tool call was not produced (backend=%s)",
                        backend.name,
                    )
                    return None
                return Success(
                    append_missing_source_links(completion.response, state.source_urls)
                )

            calls = list(completion.calls)

            thinking_calls = [c for c in calls if c.name == _ACTIVATE_THINKING]
            calls = [c for c in calls if c.name != _ACTIVATE_THINKING]
            if thinking_calls:
                if current.think is None:
                    logger.info("LLM activated thinking mode (backend=%s)", backend.name)
                    current.think = True
                thinking_activations += 1
                if not calls:
                    if thinking_activations >= self._max_tool_turns:
                        logger.warning(
                            "activate_thinking loop limit reached (backend=%s, max=%d)",
                            backend.name,
                            self._max_tool_turns,
                        )
                        return None
                    continue

            llm_calls = [c for c in calls if c.name == _LLM_CALL]
            calls = [c for c in calls if c.name != _LLM_CALL]
            if llm_calls:
                if turns >= self._max_tool_turns:
                    return await self._forced_summary(backend, current, state, turns)
                for llm_call in llm_calls:
                    result = await self._execute_llm_tool_call(llm_call, current)
                    current.user_content += f"\n\ntool `llm_call` result: {result}"
                    state.tool_text += f"\ntool `llm_call` result: {result}"
                turns += 1
                self._report_turn(current, turns, [c.name for c in llm_calls])
                if not calls:
                    continue

            if not calls:
                logger.warning("LLM returned empty tool call list (backend=%s)", backend.name)
                return None

            if turns >= self._max_tool_turns:
                return await self._forced_summary(backend, current, state, turns)

            if self._tool_executor is None:
                logger.warning(
                    "Tool call requested but no executor configured (backend=%s)",
                    backend.name,
                )
                return None

            output = await execute_tool_calls(
                self._tool_executor, calls, current, self._tool_result_max_chars
            )
            state.add_urls(output.source_urls)
            current.user_content += _TOOL_RESULTS_HEADER + output.text
            state.tool_text += _TOOL_RESULTS_HEADER + output.text
            current.require_initial_tool_call = False
            turns += 1
            self._report_turn(current, turns, [c.name for c in calls])

    def _report_turn(self, current: LlmRequest, turns: int, names: list[str]) -> None:
        if current.on_progress is not None:
            current.on_progress(
                LlmTurnProgress(
                    turn=turns, max_turns=self._max_tool_turns, tools_called=names
                )
            )
        remaining = max(self._max_tool_turns - turns, 0)
        if 0 < remaining <= self._max_tool_turns // 2:
            current.user_content += (
                f"\n\n[Tool budget: {remaining} turn(s) remaining. Prefer to "
                "consolidate and produce a final answer if you have enough information.]"
            )

    async def _forced_summary(
        self,
        backend: LlmClient,
        current: LlmRequest,
        state: _AttemptState,
        turns: int,
    ) -> Optional[Success]:
        logger.warning(
            "Max tool turns reached, attempting forced summary (backend=%s, max_turns=%d)",
            backend.name,
            self._max_tool_turns,
        )
        force_req = dataclasses.replace(
            current,
            tool_definitions=[],
            user_content=current.user_content + _FORCED_SUMMARY_PROMPT,
        )
        try:
            completion = await retry_inner(backend, force_req, self._inner_retries)
        except LlmError:
            completion = None
        if isinstance(completion, MessageCompletion):
            logger.info(
                "Forced summary pass succeeded after max tool turns (backend=%s, turns=%d)",
                backend.name,
                turns,
            )
            return Success(
                append_missing_source_links(completion.response, state.source_urls)
            )
        logger.warning(
            "Forced summary pass failed, falling through to next attempt (backend=%s)",
            backend.name,
        )
        return None

    async def _execute_llm_tool_call(self, call: ToolCall, parent: LlmRequest) -> str:
        args = call.arguments if isinstance(call.arguments, dict) else {}
        system_prompt = args.get("system_prompt")
        content = args.get("content")
        sub_req = LlmRequest(
            system_prompt=(
                system_prompt if isinstance(system_prompt, str) else _DEFAULT_SUB_SYSTEM_PROMPT
            ),
            user_content=content if isinstance(content, str) else "",
            msg_id=parent.msg_id,
            attachments_dir=parent.attachments_dir,
            llm_depth=parent.llm_depth + 1,
        )
        for backend in self._backends:
            for attempt in range(self._inner_retries + 1):
                if attempt > 0:
                    await asyncio.sleep(_RETRY_BASE_DELAY * 2 ** (attempt - 1))
                try:
                    return await backend.complete_raw(dataclasses.replace(sub_req))
                except LlmError as err:
                    logger.warning(
                        "llm_call sub-request retry (backend=%s, attempt=%d): %s",
                        backend.name,
                        attempt,
                        err,
                    )
        return _LLM_CALL_FAILED