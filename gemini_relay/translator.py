from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from gemini_relay.errors import NoResponseCandidateError, TranslationError
from gemini_relay.schemas import (
    AssistantMessage,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    FunctionCallPart,
    FunctionResponsePart,
    ImageContentPart,
    InlineDataPart,
    OtherContentPart,
    TextContentPart,
    TextPart,
    TokenUsage,
    ToolDefinition,
    UpstreamContent,
    UpstreamPart,
    UpstreamRequest,
    VersionTag,
)

INLINE_IMAGE_MIME_TYPE = "image/jpeg"
PLAIN_TEXT_MIME_TYPE = "text/plain"
THINKING_TEMPERATURE = 1.0
UNKNOWN_FUNCTION_NAME = "unknown"

FINISH_REASON_MAP: dict[str, str] = {
    "FINISH_REASON_UNSPECIFIED": "stop",
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "OTHER": "stop",
}


@dataclass(slots=True)
class DecodedArguments:
    value: Any = None
    error: TranslationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def decode_tool_arguments(name: str, raw: str) -> DecodedArguments:
    try:
        return DecodedArguments(value=json.loads(raw))
    except json.JSONDecodeError as exc:
        return DecodedArguments(
            error=TranslationError(
                f"Tool call '{name}' has arguments that are not valid JSON: {exc.msg}",
                details={"tool": name, "arguments": raw},
            )
        )


def extract_inline_image_data(url: str) -> str:
    # Non data-URI values are forwarded verbatim; no remote fetch happens here.
    if url.startswith("data:"):
        _, _, payload = url.partition(",")
        return payload
    return url


def map_finish_reason(reason: str | None) -> str:
    if not reason:
        return "stop"
    return FINISH_REASON_MAP.get(reason, "stop")


def to_upstream(request: ChatRequest, version: VersionTag) -> UpstreamRequest:
    system_message = next(
        (message for message in request.messages if message.role == "system"),
        None,
    )
    upstream = UpstreamRequest(
        contents=_convert_messages(request.messages),
        generation_config=_convert_generation_config(request, version),
    )
    declarations = _convert_tools(request.tools or [])
    if declarations:
        upstream.function_declarations = declarations
    if system_message is not None:
        upstream.system_instruction = _system_instruction_parts(system_message)

    config = upstream.generation_config
    if version is VersionTag.V3:
        config["response_mime_type"] = PLAIN_TEXT_MIME_TYPE
        if request.model and "thinking" in request.model:
            config["temperature"] = THINKING_TEMPERATURE
    elif version is VersionTag.V2:
        config.setdefault("response_mime_type", PLAIN_TEXT_MIME_TYPE)
    return upstream


def _convert_messages(messages: list[ChatMessage]) -> list[UpstreamContent]:
    contents: list[UpstreamContent] = []
    for message in messages:
        if message.role == "system":
            continue
        role = "model" if message.role == "assistant" else "user"
        parts: list[UpstreamPart] = []
        if message.is_tool_result:
            parts.append(
                FunctionResponsePart(
                    name=message.name or UNKNOWN_FUNCTION_NAME,
                    response={"result": _tool_result_payload(message.content)},
                )
            )
        else:
            parts.extend(_content_parts(message.content))

        for tool_call in message.tool_calls or []:
            decoded = decode_tool_arguments(
                tool_call.function.name, tool_call.function.arguments
            )
            if decoded.error is not None:
                raise decoded.error
            parts.append(
                FunctionCallPart(name=tool_call.function.name, args=decoded.value)
            )

        if parts:
            contents.append(UpstreamContent(role=role, parts=parts))
    return contents


def _content_parts(content: Any) -> list[UpstreamPart]:
    if content is None:
        return []
    if isinstance(content, str):
        return [TextPart(text=content)]

    parts: list[UpstreamPart] = []
    for item in content:
        if isinstance(item, TextContentPart):
            parts.append(TextPart(text=item.text))
        elif isinstance(item, ImageContentPart):
            parts.append(
                InlineDataPart(
                    mime_type=INLINE_IMAGE_MIME_TYPE,
                    data=extract_inline_image_data(item.image_url.url),
                )
            )
        elif isinstance(item, OtherContentPart):
            continue
    return parts


def _tool_result_payload(content: Any) -> Any:
    if isinstance(content, list):
        return "".join(
            item.text for item in content if isinstance(item, TextContentPart)
        )
    return content


def _system_instruction_parts(message: ChatMessage) -> list[TextPart]:
    if isinstance(message.content, list):
        return [
            TextPart(text=item.text)
            for item in message.content
            if isinstance(item, TextContentPart)
        ]
    return [TextPart(text=message.content or "")]


def _convert_generation_config(
    request: ChatRequest, version: VersionTag
) -> dict[str, Any]:
    config: dict[str, Any] = {}
    if request.temperature is not None:
        config["temperature"] = request.temperature
    if request.max_tokens is not None:
        key = "max_output_tokens" if version is VersionTag.V3 else "maxOutputTokens"
        config[key] = request.max_tokens
    if request.top_p is not None:
        config["topP"] = request.top_p
    if request.top_k is not None:
        config["topK"] = request.top_k
    if request.stop:
        config["stopSequences"] = (
            list(request.stop) if isinstance(request.stop, list) else [request.stop]
        )
    return config


def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    declarations: list[dict[str, Any]] = []
    for tool in tools:
        function = tool.function
        if tool.type != "function" or function is None:
            continue
        declaration: dict[str, Any] = {"name": function.name}
        if function.description is not None:
            declaration["description"] = function.description
        if function.parameters is not None:
            declaration["parameters"] = function.parameters
        declarations.append(declaration)
    return declarations


def from_upstream(response: dict[str, Any], model: str) -> ChatResponse:
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise NoResponseCandidateError(
            "No response from Gemini API",
            details=_prompt_feedback(response),
        )
    candidate = candidates[0] if isinstance(candidates[0], dict) else {}

    message = AssistantMessage(content="")
    content = candidate.get("content")
    raw_parts = content.get("parts") if isinstance(content, dict) else None
    if isinstance(raw_parts, list):
        text_parts: list[dict[str, str]] = []
        tool_calls: list[dict[str, Any]] = []
        for part in raw_parts:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            function_call = part.get("functionCall")
            if isinstance(text, str) and text:
                text_parts.append({"type": "text", "text": text})
            elif isinstance(function_call, dict):
                tool_calls.append(_tool_call_from_upstream(function_call))

        if tool_calls:
            message.content = text_parts or None
            message.tool_calls = tool_calls
        elif len(text_parts) == 1:
            message.content = text_parts[0]["text"]
        else:
            message.content = text_parts

    usage_metadata = response.get("usageMetadata")
    if not isinstance(usage_metadata, dict):
        usage_metadata = {}
    return ChatResponse(
        id=f"chatcmpl-{uuid4().hex}",
        created=int(time.time()),
        model=model,
        message=message,
        finish_reason=map_finish_reason(candidate.get("finishReason")),
        usage=TokenUsage(
            prompt_tokens=int(usage_metadata.get("promptTokenCount") or 0),
            completion_tokens=int(usage_metadata.get("candidatesTokenCount") or 0),
            total_tokens=int(usage_metadata.get("totalTokenCount") or 0),
        ),
    )


def _tool_call_from_upstream(function_call: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": f"call_{uuid4().hex[:24]}",
        "type": "function",
        "function": {
            "name": str(function_call.get("name") or ""),
            "arguments": json.dumps(function_call.get("args") or {}),
        },
    }


def _prompt_feedback(response: dict[str, Any]) -> dict[str, Any] | None:
    feedback = response.get("promptFeedback")
    if isinstance(feedback, dict) and feedback:
        return {"prompt_feedback": feedback}
    return None
