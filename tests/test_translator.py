from __future__ import annotations

import json

import pytest

from gemini_relay.errors import NoResponseCandidateError, TranslationError
from gemini_relay.schemas import ChatRequest, VersionTag
from gemini_relay.translator import (
    decode_tool_arguments,
    extract_inline_image_data,
    from_upstream,
    map_finish_reason,
    to_upstream,
)


def _request(**fields) -> ChatRequest:
    payload = {"model": "gemini-1.5-flash", **fields}
    return ChatRequest.model_validate(payload)


def test_single_system_message_becomes_system_instruction() -> None:
    request = _request(
        messages=[
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
        ]
    )

    payload = to_upstream(request, VersionTag.V1).to_payload()

    assert payload["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert payload["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]


def test_no_system_message_omits_system_instruction() -> None:
    request = _request(messages=[{"role": "user", "content": "hi"}])

    payload = to_upstream(request, VersionTag.V1).to_payload()

    assert "systemInstruction" not in payload
    assert "tools" not in payload
    assert payload["generationConfig"] == {}


def test_roles_map_to_user_and_model() -> None:
    request = _request(
        messages=[
            {"role": "user", "content": "ping"},
            {"role": "assistant", "content": "pong"},
            {"role": "user", "content": "again"},
        ]
    )

    contents = to_upstream(request, VersionTag.V1).to_payload()["contents"]

    assert [content["role"] for content in contents] == ["user", "model", "user"]
    assert contents[1]["parts"] == [{"text": "pong"}]


def test_image_parts_become_inline_data() -> None:
    request = _request(
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "what is this"},
                    {
                        "type": "image_url",
                        "image_url": {"url": "data:image/png;base64,QUJD"},
                    },
                    {
                        "type": "image_url",
                        "image_url": {"url": "https://example.test/cat.jpg"},
                    },
                ],
            }
        ]
    )

    parts = to_upstream(request, VersionTag.V1).to_payload()["contents"][0]["parts"]

    assert parts == [
        {"text": "what is this"},
        {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}},
        {"inlineData": {"mimeType": "image/jpeg", "data": "https://example.test/cat.jpg"}},
    ]


def test_extract_inline_image_data_passes_plain_urls_through() -> None:
    assert extract_inline_image_data("data:image/jpeg;base64,AAAA") == "AAAA"
    assert extract_inline_image_data("https://x.test/a.png") == "https://x.test/a.png"


def test_tool_calls_and_results_translate_to_function_parts() -> None:
    request = _request(
        messages=[
            {"role": "user", "content": "weather?"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {
                            "name": "get_weather",
                            "arguments": '{"city": "Oslo"}',
                        },
                    }
                ],
            },
            {
                "role": "tool",
                "tool_call_id": "call_1",
                "name": "get_weather",
                "content": "sunny",
            },
        ],
        tools=[
            {
                "type": "function",
                "function": {
                    "name": "get_weather",
                    "description": "Look up weather",
                    "parameters": {"type": "object", "properties": {}},
                },
            }
        ],
    )

    payload = to_upstream(request, VersionTag.V1).to_payload()

    assert payload["contents"][1] == {
        "role": "model",
        "parts": [{"functionCall": {"name": "get_weather", "args": {"city": "Oslo"}}}],
    }
    assert payload["contents"][2] == {
        "role": "user",
        "parts": [
            {
                "functionResponse": {
                    "name": "get_weather",
                    "response": {"result": "sunny"},
                }
            }
        ],
    }
    assert payload["tools"] == [
        {
            "functionDeclarations": [
                {
                    "name": "get_weather",
                    "description": "Look up weather",
                    "parameters": {"type": "object", "properties": {}},
                }
            ]
        }
    ]


def test_tool_result_without_name_uses_unknown() -> None:
    request = _request(
        messages=[{"role": "tool", "tool_call_id": "call_9", "content": "42"}]
    )

    parts = to_upstream(request, VersionTag.V1).to_payload()["contents"][0]["parts"]

    assert parts == [
        {"functionResponse": {"name": "unknown", "response": {"result": "42"}}}
    ]


def test_malformed_tool_arguments_raise_translation_error() -> None:
    request = _request(
        messages=[
            {
                "role": "assistant",
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "broken", "arguments": "{not json"},
                    }
                ],
            }
        ]
    )

    with pytest.raises(TranslationError) as exc_info:
        to_upstream(request, VersionTag.V1)

    assert exc_info.value.http_status == 400
    assert exc_info.value.details["tool"] == "broken"


def test_decode_tool_arguments_rejects_blank_arguments() -> None:
    decoded = decode_tool_arguments("noop", "   ")

    assert not decoded.ok
    assert isinstance(decoded.error, TranslationError)
    assert decoded.error.http_status == 400
    assert decoded.error.details == {"tool": "noop", "arguments": "   "}


def test_empty_tool_arguments_raise_translation_error() -> None:
    request = _request(
        messages=[
            {
                "role": "assistant",
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "noop", "arguments": ""},
                    }
                ],
            }
        ]
    )

    with pytest.raises(TranslationError):
        to_upstream(request, VersionTag.V1)


def test_unknown_content_parts_are_skipped() -> None:
    request = _request(
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "hi"},
                    {"type": "input_audio", "input_audio": {"data": "AAAA"}},
                ],
            },
            {"role": "user", "content": [{"type": "file", "file": {"id": "f-1"}}]},
        ]
    )

    payload = to_upstream(request, VersionTag.V1).to_payload()

    assert payload["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]


def test_non_function_tools_are_skipped() -> None:
    request = _request(
        messages=[{"role": "user", "content": "hi"}],
        tools=[
            {"type": "web_search"},
            {"type": "function", "function": {"name": "lookup"}},
        ],
    )

    payload = to_upstream(request, VersionTag.V1).to_payload()

    assert payload["tools"] == [{"functionDeclarations": [{"name": "lookup"}]}]


def test_only_non_function_tools_omit_tools_field() -> None:
    request = _request(
        messages=[{"role": "user", "content": "hi"}],
        tools=[{"type": "web_search"}],
    )

    assert "tools" not in to_upstream(request, VersionTag.V1).to_payload()


def test_generation_config_v1_uses_camel_case_fields() -> None:
    request = _request(
        messages=[{"role": "user", "content": "hi"}],
        temperature=0.3,
        max_tokens=128,
        top_p=0.9,
        top_k=40,
        stop="END",
    )

    config = to_upstream(request, VersionTag.V1).generation_config

    assert config == {
        "temperature": 0.3,
        "maxOutputTokens": 128,
        "topP": 0.9,
        "topK": 40,
        "stopSequences": ["END"],
    }


def test_generation_config_v2_defaults_plain_text_mime_type() -> None:
    request = _request(messages=[{"role": "user", "content": "hi"}], max_tokens=64)

    config = to_upstream(request, VersionTag.V2).generation_config

    assert config["maxOutputTokens"] == 64
    assert config["response_mime_type"] == "text/plain"


def test_generation_config_v3_uses_snake_case_token_limit() -> None:
    request = ChatRequest.model_validate(
        {
            "model": "gemini-3-flash-preview",
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 0.2,
            "max_tokens": 256,
        }
    )

    config = to_upstream(request, VersionTag.V3).generation_config

    assert config == {
        "temperature": 0.2,
        "max_output_tokens": 256,
        "response_mime_type": "text/plain",
    }


def test_thinking_model_forces_temperature_one() -> None:
    request = ChatRequest.model_validate(
        {
            "model": "gemini-3-flash-thinking",
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 0.1,
        }
    )

    config = to_upstream(request, VersionTag.V3).generation_config

    assert config["temperature"] == 1.0
    assert config["response_mime_type"] == "text/plain"


def test_thinking_override_matches_lowercase_marker_only() -> None:
    request = ChatRequest.model_validate(
        {
            "model": "Gemini-3-Flash-THINKING",
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 0.1,
        }
    )

    config = to_upstream(request, VersionTag.V3).generation_config

    assert config["temperature"] == 0.1
    assert config["response_mime_type"] == "text/plain"


@pytest.mark.parametrize(
    ("reason", "expected"),
    [
        ("FINISH_REASON_UNSPECIFIED", "stop"),
        ("STOP", "stop"),
        ("OTHER", "stop"),
        ("MAX_TOKENS", "length"),
        ("SAFETY", "content_filter"),
        ("RECITATION", "content_filter"),
        ("SOMETHING_NEW", "stop"),
        (None, "stop"),
    ],
)
def test_map_finish_reason(reason: str | None, expected: str) -> None:
    assert map_finish_reason(reason) == expected


def test_from_upstream_single_text_part_is_plain_string() -> None:
    response = from_upstream(
        {
            "candidates": [
                {
                    "content": {"role": "model", "parts": [{"text": "hello there"}]},
                    "finishReason": "STOP",
                }
            ],
            "usageMetadata": {
                "promptTokenCount": 3,
                "candidatesTokenCount": 2,
                "totalTokenCount": 5,
            },
        },
        "gemini-1.5-flash",
    )

    body = response.to_dict()
    assert body["object"] == "chat.completion"
    assert body["id"].startswith("chatcmpl-")
    assert body["model"] == "gemini-1.5-flash"
    assert body["choices"] == [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "hello there"},
            "finish_reason": "stop",
        }
    ]
    assert body["usage"] == {
        "prompt_tokens": 3,
        "completion_tokens": 2,
        "total_tokens": 5,
    }


def test_from_upstream_safety_maps_to_content_filter_and_zero_usage() -> None:
    response = from_upstream(
        {"candidates": [{"content": {"parts": []}, "finishReason": "SAFETY"}]},
        "gemini-1.5-pro",
    )

    assert response.finish_reason == "content_filter"
    assert response.usage.to_dict() == {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
    }


def test_from_upstream_multiple_text_parts_keep_list_shape() -> None:
    response = from_upstream(
        {"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]},
        "gemini-1.5-flash",
    )

    assert response.message.content == [
        {"type": "text", "text": "a"},
        {"type": "text", "text": "b"},
    ]


def test_from_upstream_missing_parts_yields_empty_content() -> None:
    response = from_upstream(
        {"candidates": [{"finishReason": "MAX_TOKENS"}]}, "gemini-1.5-flash"
    )

    assert response.message.content == ""
    assert response.finish_reason == "length"


def test_from_upstream_function_call_becomes_tool_call() -> None:
    response = from_upstream(
        {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {
                                "functionCall": {
                                    "name": "get_weather",
                                    "args": {"city": "Oslo"},
                                }
                            }
                        ]
                    },
                    "finishReason": "STOP",
                }
            ]
        },
        "gemini-1.5-flash",
    )

    message = response.message.to_dict()
    assert message["content"] is None
    [tool_call] = message["tool_calls"]
    assert tool_call["id"].startswith("call_")
    assert tool_call["type"] == "function"
    assert tool_call["function"]["name"] == "get_weather"
    assert json.loads(tool_call["function"]["arguments"]) == {"city": "Oslo"}


def test_from_upstream_without_candidates_raises() -> None:
    with pytest.raises(NoResponseCandidateError) as exc_info:
        from_upstream(
            {"promptFeedback": {"blockReason": "SAFETY"}}, "gemini-1.5-flash"
        )

    assert exc_info.value.details == {"prompt_feedback": {"blockReason": "SAFETY"}}


def test_echoed_text_survives_round_trip() -> None:
    request = _request(messages=[{"role": "user", "content": "round trip me"}])
    payload = to_upstream(request, VersionTag.V1).to_payload()

    echoed = {
        "candidates": [
            {
                "content": {"role": "model", "parts": payload["contents"][-1]["parts"]},
                "finishReason": "STOP",
            }
        ]
    }
    response = from_upstream(echoed, "gemini-1.5-flash")

    assert response.message.content == "round trip me"
