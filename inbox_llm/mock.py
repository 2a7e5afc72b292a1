"""A scripted backend for tests and offline runs."""

from __future__ import annotations

import dataclasses
from typing import Optional

from inbox_llm.types import LlmClient, LlmError, LlmRequest, LlmResponse, MessageCompletion


class MockLlm(LlmClient):
    """Backend that always returns the same response or always fails."""

    model = "mock"
    retries = 1

    def __init__(
        self,
        response: Optional[LlmResponse] = None,
        *,
        error: Optional[str] = None,
        name: str = "mock",
    ) -> None:
        if response is None and error is None:
            raise ValueError("MockLlm needs either a response or an error message")
        self.response = response
        self.error = error
        self.name = name

    @classmethod
    def failing(cls, message: str) -> "MockLlm":
        """A mock whose every call raises ``LlmError(message)``."""
        return cls(error=str(message), name="mock-failing")

    async def complete(self, req: LlmRequest) -> MessageCompletion:
        if self.error is not None:
            raise LlmError(self.error)
        assert self.response is not None
        return MessageCompletion(
            dataclasses.replace(self.response, tags=list(self.response.tags))
        )