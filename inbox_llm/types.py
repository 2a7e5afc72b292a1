"""Core request, response and client types for the LLM layer."""

from __future__ import annotations

import abc
import base64
import dataclasses
import enum
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

_DEFAULT_IMAGE_MIME = "image/jpeg"
_RAW_JSON_INSTRUCTION = (
    '\n\nRespond ONLY with a JSON object: {"summary": "<your complete answer here>"}'
)


class FallbackMode(enum.Enum):
    """What to do when every backend has failed."""

    RAW = "raw"
    DISCARD = "discard"


class LlmError(Exception):
    """Raised when an LLM backend fails or returns something unusable."""


@dataclass
class LlmResponse:
    """Structured enrichment produced by a model."""

    title: str
    tags: list[str]
    summary: str
    excerpt: Optional[str] = None
    produced_by: str = ""


@dataclass
class ToolCall:
    """A single tool invocation requested by a model."""

    id: str
    name: str
    arguments: Any = None


@dataclass
class MessageCompletion:
    """The model answered with a final message."""

    response: LlmResponse


@dataclass
class ToolCallsCompletion:
    """The model asked for one or more tool calls."""

    calls: list[ToolCall]


LlmCompletion = Union[MessageCompletion, ToolCallsCompletion]


@dataclass
class Success:
    """The chain produced an enriched response."""

    response: LlmResponse


@dataclass
class RawFallback:
    """All backends failed; keep the raw message plus whatever tools gathered."""

    source_urls: list[str] = field(default_factory=list)
    tool_content: str = ""


@dataclass
class Discard:
    """All backends failed and the message should be dropped."""


LlmOutcome = Union[Success, RawFallback, Discard]


@dataclass
class LlmTurnProgress:
    """Progress event emitted after each tool-call turn."""

    turn: int
    max_turns: int
    tools_called: list[str]


class MediaKind(enum.Enum):
    """Broad category of an attachment."""

    IMAGE = "image"
    VOICE_MESSAGE = "voice_message"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    OTHER = "other"


@dataclass
class Attachment:
    """A file saved alongside a captured message."""

    original_name: str
    saved_path: Path
    mime_type: Optional[str] = None
    media_kind: MediaKind = MediaKind.OTHER


@dataclass
class UrlContent:
    """Text fetched from a URL found in a message."""

    url: str
    text: str = ""
    page_title: Optional[str] = None
    headings: list[str] = field(default_factory=list)


@dataclass
class IncomingMessage:
    """A captured message as received from an adapter."""

    text: str
    source: str = "http"
    forwarded_from: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass
class EnrichedMessage:
    """A message together with the URLs and page contents found in it."""

    original: IncomingMessage
    urls: list[str] = field(default_factory=list)
    url_contents: list[UrlContent] = field(default_factory=list)


@dataclass
class LlmPrompts:
    """Prompt fragments used to build requests."""

    base_system: str = (
        "You are an assistant that enriches captured inbox items. "
        "Respond ONLY with a JSON object with the keys "
        '"title" (string), "tags" (array of strings), "summary" (string) '
        'and optionally "excerpt" (string).'
    )
    tool_guidance_header: str = "Tool usage guidance:"
    vision_prompt_note: str = (
        "Images are attached to this message; describe their content and use it "
        "in the title, tags and summary."
    )


@dataclass
class LlmConfig:
    """Settings that shape LLM requests and the backend chain."""

    fallback: FallbackMode = FallbackMode.RAW
    url_content_max_chars: int = 4000
    max_tool_turns: int = 3
    max_llm_tool_depth: int = 1
    inner_retries: int = 0
    vision_max_bytes: int = 5 * 1024 * 1024
    tool_result_max_chars: Optional[int] = None
    prompts: LlmPrompts = field(default_factory=LlmPrompts)
    backends: list[Any] = field(default_factory=list)


def _collect_images(enriched: EnrichedMessage, max_bytes: int) -> list[tuple[str, str]]:
    images: list[tuple[str, str]] = []
    for attachment in enriched.original.attachments:
        if attachment.media_kind is not MediaKind.IMAGE:
            continue
        try:
            data = Path(attachment.saved_path).read_bytes()
        except OSError:
            continue
        if len(data) > max_bytes:
            logger.warning(
                "Image too large for vision analysis, skipping: %s (%d bytes > %d)",
                attachment.saved_path,
                len(data),
                max_bytes,
            )
            continue
        mime = attachment.mime_type or _DEFAULT_IMAGE_MIME
        images.append((mime, base64.b64encode(data).decode("ascii")))
    return images


def _build_user_content(enriched: EnrichedMessage) -> str:
    original = enriched.original
    if original.forwarded_from is not None:
        parts = [f"Forwarded from {original.forwarded_from}\n\n{original.text}"]
    else:
        parts = [original.text]
    for content in enriched.url_contents:
        parts.append(f"\n\n--- Page: {content.url} ---")
        if content.page_title is not None:
            parts.append(f"\nTitle: {content.page_title}")
        if content.headings:
            parts.append(f"\nHeadings: {' | '.join(content.headings)}")
        if content.text:
            parts.append(f"\n{content.text}")
    return "".join(parts)


@dataclass
class LlmRequest:
    """Everything a backend needs to answer one request."""

    system_prompt: str
    user_content: str
    msg_id: uuid.UUID = field(default_factory=lambda: uuid.UUID(int=0))
    attachments_dir: Path = field(default_factory=Path)
    tool_definitions: list[dict[str, Any]] = field(default_factory=list)
    require_initial_tool_call: bool = False
    images: list[tuple[str, str]] = field(default_factory=list)
    think: Optional[bool] = None
    llm_depth: int = 0
    on_progress: Optional[Callable[[LlmTurnProgress], None]] = None

    @classmethod
    def from_enriched(
        cls,
        enriched: EnrichedMessage,
        cfg: LlmConfig,
        attachments_dir: Path,
        guidance_block: str,
        require_initial_tool_call: bool,
    ) -> "LlmRequest":
        """Build a request from an enriched message and the LLM settings."""
        user_content = _build_user_content(enriched)
        images = _collect_images(enriched, cfg.vision_max_bytes)

        system_prompt = cfg.prompts.base_system
        if guidance_block.strip():
            system_prompt += (
                "\n\n"
                + cfg.prompts.tool_guidance_header.strip()
                + "\n"
                + guidance_block.strip()
            )
        if images:
            system_prompt += "\n" + cfg.prompts.vision_prompt_note.strip()

        return cls(
            system_prompt=system_prompt,
            user_content=user_content,
            msg_id=enriched.original.id,
            attachments_dir=Path(attachments_dir),
            require_initial_tool_call=require_initial_tool_call,
            images=images,
        )

    @classmethod
    def simple(cls, system_prompt: str, user_content: str) -> "LlmRequest":
        """Build a plain request with no tools, images or attachments."""
        return cls(system_prompt=system_prompt, user_content=user_content)


class LlmClient(abc.ABC):
    """A model backend. Subclasses set ``name``, ``model`` and ``retries``."""

    name: str = ""
    model: str = ""
    retries: int = 1

    def thinking_supported(self) -> bool:
        """Whether the backend understands the ``think`` flag."""
        return False

    @abc.abstractmethod
    async def complete(self, req: LlmRequest) -> LlmCompletion:
        """Send the request and return either a message or tool calls."""

    async def complete_raw(self, req: LlmRequest) -> str:
        """Ask for a plain answer and return the text of its ``summary`` field."""
        wrapped = dataclasses.replace(
            req, system_prompt=req.system_prompt + _RAW_JSON_INSTRUCTION
        )
        completion = await self.complete(wrapped)
        if isinstance(completion, MessageCompletion):
            return completion.response.summary
        raise LlmError("llm_call: unexpected tool calls in sub-request")


def activate_thinking_tool_def() -> dict[str, Any]:
    """Definition of the built-in tool that switches thinking mode on."""
    return {
        "type": "function",
        "function": {
            "name": "activate_thinking",
            "description": (
                "Activate extended thinking/reasoning mode for this request. "
                "Call this when the task requires deep analysis, complex "
                "multi-step reasoning, or careful deliberation."
            ),
            "parameters": {"type": "object", "properties": {}},
        },
    }


def llm_call_tool_def() -> dict[str, Any]:
    """Definition of the built-in tool that runs a nested model call."""
    return {
        "type": "function",
        "function": {
            "name": "llm_call",
            "description": (
                "Invoke the LLM with a custom system prompt and content. "
                "Returns the model's plain-text response. Use for sub-tasks: "
                "summarization, extraction, translation, analysis, etc."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "system_prompt": {
                        "type": "string",
                        "description": "System prompt for the sub-call",
                    },
                    "content": {
                        "type": "string",
                        "description": "User content to process",
                    },
                },
                "required": ["system_prompt", "content"],
            },
        },
    }