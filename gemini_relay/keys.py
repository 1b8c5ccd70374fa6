from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from gemini_relay.errors import CredentialFileError
from gemini_relay.settings import Settings

YAML_SUFFIXES = {".yaml", ".yml"}

logger = logging.getLogger("uvicorn.error")


def parse_key_lines(lines: Iterable[str]) -> list[str]:
    keys: list[str] = []
    for line in lines:
        key = line.strip()
        if not key or key.startswith("#"):
            continue
        keys.append(key)
    return keys


def read_keys_file(path: str | Path) -> list[str]:
    resolved = Path(path)
    if resolved.suffix.lower() in YAML_SUFFIXES:
        with resolved.open("r", encoding="utf-8") as handle:
            payload: Any = yaml.safe_load(handle) or {}
        raw_keys = payload.get("keys") if isinstance(payload, dict) else payload
        if not isinstance(raw_keys, list):
            raise CredentialFileError(
                f"Expected a 'keys' list in credential file '{resolved}'."
            )
        return parse_key_lines(str(item) for item in raw_keys if item is not None)

    with resolved.open("r", encoding="utf-8") as handle:
        return parse_key_lines(handle)


def load_api_keys(settings: Settings) -> list[str]:
    keys_path = Path(settings.gemini_keys_file)
    env_keys = settings.gemini_api_keys_list

    file_keys: list[str] = []
    if keys_path.is_file():
        file_keys = read_keys_file(keys_path)
    elif not env_keys:
        raise CredentialFileError(
            f"Credential file '{keys_path}' does not exist. Create it with one "
            "Gemini API key per line, or set GEMINI_API_KEYS."
        )

    seen: set[str] = set()
    keys: list[str] = []
    for key in [*file_keys, *env_keys]:
        if key in seen:
            continue
        seen.add(key)
        keys.append(key)

    if not keys:
        raise CredentialFileError(
            f"No usable API key found in '{keys_path}' or GEMINI_API_KEYS."
        )
    logger.info(
        "credentials_loaded keys=%d from_file=%d from_env=%d",
        len(keys),
        len(file_keys),
        len(env_keys),
    )
    return keys
