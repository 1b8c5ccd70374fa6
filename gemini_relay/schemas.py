from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class VersionTag(str, Enum):
    V1 = "v1"
    V2 = "v2"
    V3 = "v3"


# Client-facing (OpenAI-style) request schema.


class ImageURL(BaseModel):
    url: str
    detail: str | None = None


class TextContentPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageContentPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


class OtherContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None


def _content_part_tag(value: Any) -> str:
    if isinstance(value, dict):
        part_type = value.get("type")
    else:
        part_type = getattr(value, "type", None)
    return part_type if part_type in ("text", "image_url") else "other"


# Unrecognised part types validate as OtherContentPart and are skipped later.
ContentPart = Annotated[
    Annotated[TextContentPart, Tag("text")]
    | Annotated[ImageContentPart, Tag("image_url")]
    | Annotated[OtherContentPart, Tag("other")],
    Discriminator(_content_part_tag),
]


class FunctionCall(BaseModel):
    name: str
    arguments: str = "{}"


class ToolCall(BaseModel):
    id: str | None = None
    type: Literal["function"] = "function"
    function: FunctionCall


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[ContentPart] | None = None
    tool_calls: list[ToolCall] | None = None
    name: str | None = None
    tool_call_id: str | None = None

    @property
    def is_tool_result(self) -> bool:
        return self.role == "tool" or bool(self.tool_call_id)


class FunctionDefinition(BaseModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class ToolDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "function"
    function: FunctionDefinition | None = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    messages: list[ChatMessage] = Field(min_length=1)
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop: str | list[str] | None = None
    tools: list[ToolDefinition] | None = None
    stream: bool = False


# Upstream (Gemini-style) parts. One dataclass per variant.


@dataclass(slots=True)
class TextPart:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(slots=True)
class InlineDataPart:
    mime_type: str
    data: str

    def to_dict(self) -> dict[str, Any]:
        return {"inlineData": {"mimeType": self.mime_type, "data": self.data}}


@dataclass(slots=True)
class FunctionCallPart:
    name: str
    args: Any

    def to_dict(self) -> dict[str, Any]:
        return {"functionCall": {"name": self.name, "args": self.args}}


@dataclass(slots=True)
class FunctionResponsePart:
    name: str
    response: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"functionResponse": {"name": self.name, "response": self.response}}


UpstreamPart = TextPart | InlineDataPart | FunctionCallPart | FunctionResponsePart


@dataclass(slots=True)
class UpstreamContent:
    role: Literal["user", "model"]
    parts: list[UpstreamPart] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [part.to_dict() for part in self.parts]}


@dataclass(slots=True)
class UpstreamRequest:
    contents: list[UpstreamContent]
    generation_config: dict[str, Any]
    function_declarations: list[dict[str, Any]] | None = None
    system_instruction: list[TextPart] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": [content.to_dict() for content in self.contents],
            "generationConfig": dict(self.generation_config),
        }
        if self.function_declarations is not None:
            payload["tools"] = [
                {"functionDeclarations": list(self.function_declarations)}
            ]
        if self.system_instruction is not None:
            payload["systemInstruction"] = {
                "parts": [part.to_dict() for part in self.system_instruction]
            }
        return payload


# Client-facing response.


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class AssistantMessage:
    content: str | list[dict[str, str]] | None
    tool_calls: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls is not None:
            message["tool_calls"] = self.tool_calls
        return message


@dataclass(slots=True)
class ChatResponse:
    id: str
    created: int
    model: str
    message: AssistantMessage
    finish_reason: str
    usage: TokenUsage

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": self.message.to_dict(),
                    "finish_reason": self.finish_reason,
                }
            ],
            "usage": self.usage.to_dict(),
        }
