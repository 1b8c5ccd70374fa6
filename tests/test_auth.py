from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from gemini_relay.gateway.auth import AuthConfigurationError, Authenticator
from gemini_relay.settings import Settings
from tests.client_test_utils import build_test_client


def test_v1_models_allows_when_auth_disabled(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch, tmp_path, INGRESS_AUTH_REQUIRED="false"
    ) as client:
        response = client.get("/v1/models")
        assert response.status_code == 200


def test_v1_models_rejects_without_key_when_auth_required(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="relay-key-1",
    ) as client:
        response = client.get("/v1/models")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["error"]["type"] == "authentication_error"


def test_v1_models_accepts_bearer_key(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="relay-key-1,relay-key-2",
    ) as client:
        response = client.get(
            "/v1/models", headers={"Authorization": "Bearer relay-key-2"}
        )
        assert response.status_code == 200


def test_admin_accepts_x_api_key_and_rejects_wrong_key(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="relay-key-1",
    ) as client:
        accepted = client.post("/admin/reset-keys", headers={"x-api-key": "relay-key-1"})
        rejected = client.post(
            "/admin/reset-keys", headers={"Authorization": "Bearer wrong"}
        )
        assert accepted.status_code == 200
        assert rejected.status_code == 401
        assert rejected.json()["error"]["message"] == "Invalid API key."


def test_health_is_public_when_auth_required(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="relay-key-1",
    ) as client:
        assert client.get("/health").status_code == 200
        assert client.get("/status").status_code == 200


def test_authenticator_requires_keys_when_enabled() -> None:
    with pytest.raises(AuthConfigurationError):
        Authenticator(Settings(ingress_auth_required=True, ingress_api_keys=""))


def test_cors_preflight_skips_ingress_auth(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="relay-key-1",
    ) as client:
        preflight = client.options(
            "/v1/chat/completions",
            headers={
                "Origin": "http://example.test",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization,content-type",
            },
        )
        models = client.get(
            "/v1/models",
            headers={
                "Origin": "http://example.test",
                "Authorization": "Bearer relay-key-1",
            },
        )

    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == "*"
    assert "POST" in preflight.headers["access-control-allow-methods"]
    assert models.status_code == 200
    assert models.headers["access-control-allow-origin"] == "*"


def test_startup_fails_when_auth_required_without_keys(
    monkeypatch: Any, tmp_path: Path
) -> None:
    client = build_test_client(
        monkeypatch, tmp_path, INGRESS_AUTH_REQUIRED="true", INGRESS_API_KEYS=""
    )
    with pytest.raises(AuthConfigurationError):
        with client:
            pass
