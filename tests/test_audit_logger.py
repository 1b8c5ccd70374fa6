from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from gemini_relay.gateway.audit import JsonlAuditLogger
from tests.client_test_utils import build_test_client


def _read_events(log_path: Path) -> list[dict[str, Any]]:
    return [
        json.loads(line)
        for line in log_path.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]


def test_audit_logger_writes_records_and_masks_urls(tmp_path: Path) -> None:
    log_path = tmp_path / "relay_events.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    logger.log(
        {
            "event": "dispatch_attempt",
            "request_id": "req-1",
            "url": "http://gemini.test/v1beta/models?key=AIzaSySECRETVALUE",
        }
    )
    logger.close()

    [payload] = _read_events(log_path)
    assert payload["event"] == "dispatch_attempt"
    assert payload["request_id"] == "req-1"
    assert payload["url"].endswith("key=AIzaSySECR...")
    assert "ts" in payload


def test_disabled_audit_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "relay_events.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)
    logger.log({"event": "dispatch_attempt"})
    logger.close()

    assert not log_path.exists()


def test_chat_request_emits_dispatch_and_terminal_events(
    monkeypatch: Any, tmp_path: Path
) -> None:
    log_path = tmp_path / "logs" / "relay_events.jsonl"
    with build_test_client(
        monkeypatch,
        tmp_path,
        RELAY_AUDIT_LOG_ENABLED="true",
        RELAY_AUDIT_LOG_PATH=str(log_path),
    ) as client:
        response = client.post(
            "/v1/chat/completions",
            headers={"x-request-id": "req-42"},
            json={"model": "gemini-1.5-flash", "messages": [{"role": "user", "content": "hi"}]},
        )
        assert response.status_code == 200

    events = _read_events(log_path)
    assert [event["event"] for event in events] == [
        "dispatch_attempt",
        "dispatch_success",
        "chat_completion",
    ]
    assert all(event["request_id"] == "req-42" for event in events)
    assert events[-1]["outcome"] == "success"
    assert events[-1]["total_tokens"] == 8
