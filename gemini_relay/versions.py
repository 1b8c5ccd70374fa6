from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Sequence

import httpx

from gemini_relay.errors import ErrorKind
from gemini_relay.schemas import VersionTag
from gemini_relay.utils.redaction import mask_credential

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-1.5-flash"
CATALOG_CACHE_TTL_SECONDS = 300.0
CATALOG_TIMEOUT_SECONDS = 10.0
CATALOG_OWNER = "google"

DEFAULT_CATALOG_MODEL_IDS: tuple[str, ...] = (
    "gemini-3-flash-preview",
    "gemini-3-flash-thinking",
    "gemini-2.5-pro-preview-0514",
    "gemini-2.5-flash-preview-0514",
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.0-flash-exp",
    "gemini-1.5-pro",
    "gemini-1.5-flash",
    "gemini-1.5-flash-8b",
)

logger = logging.getLogger("uvicorn.error")


def resolve_version(model_id: str | None) -> VersionTag:
    if not model_id:
        return VersionTag.V1
    model = model_id.lower()
    # Precedence matters: the broad v3 markers win over any later match.
    if "gemini-3" in model or "thinking-" in model:
        return VersionTag.V3
    if "2.0-flash" in model:
        return VersionTag.V2
    return VersionTag.V1


def build_endpoint(
    credential: str,
    model_id: str | None,
    *,
    base_url: str = DEFAULT_BASE_URL,
    default_model: str = DEFAULT_MODEL,
) -> str:
    model = model_id or default_model
    return (
        f"{base_url.rstrip('/')}/v1beta/models/{model}:generateContent"
        f"?key={credential}"
    )


def build_models_url(credential: str, *, base_url: str = DEFAULT_BASE_URL) -> str:
    return f"{base_url.rstrip('/')}/v1beta/models?key={credential}"


@dataclass(frozen=True, slots=True)
class ModelCatalogEntry:
    id: str
    created: int
    owned_by: str = CATALOG_OWNER

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "object": "model",
            "created": self.created,
            "owned_by": self.owned_by,
        }


@dataclass(slots=True)
class CatalogResult:
    entries: list[ModelCatalogEntry]
    source: Literal["cache", "live", "fallback"]
    error_kind: ErrorKind | None = None
    error: str | None = None


def default_catalog(created: int) -> list[ModelCatalogEntry]:
    return [
        ModelCatalogEntry(id=model_id, created=created)
        for model_id in DEFAULT_CATALOG_MODEL_IDS
    ]


def _supports_generation(model: dict[str, Any]) -> bool:
    name = model.get("name")
    if not isinstance(name, str) or "gemini" not in name:
        return False
    methods = model.get("supportedGenerationMethods")
    if isinstance(methods, list) and "generateContent" in methods:
        return True
    return "generateContent" in name


class VersionResolver:
    def __init__(
        self,
        *,
        credential_source: Callable[[], Sequence[str]],
        client: httpx.AsyncClient,
        base_url: str = DEFAULT_BASE_URL,
        default_model: str = DEFAULT_MODEL,
        cache_ttl_seconds: float = CATALOG_CACHE_TTL_SECONDS,
        timeout_seconds: float = CATALOG_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credential_source = credential_source
        self._client = client
        self.base_url = base_url
        self.default_model = default_model
        self._cache_ttl_seconds = max(0.0, float(cache_ttl_seconds))
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._cached: list[ModelCatalogEntry] | None = None
        self._expires_at: float | None = None
        self._refresh_lock = asyncio.Lock()

    def resolve_version(self, model_id: str | None) -> VersionTag:
        return resolve_version(model_id)

    def build_endpoint(self, credential: str, model_id: str | None) -> str:
        return build_endpoint(
            credential,
            model_id,
            base_url=self.base_url,
            default_model=self.default_model,
        )

    def _cache_is_fresh(self) -> bool:
        return (
            self._cached is not None
            and self._expires_at is not None
            and self._clock() < self._expires_at
        )

    async def list_models(self) -> list[ModelCatalogEntry]:
        result = await self.fetch_catalog()
        return result.entries

    async def fetch_catalog(self) -> CatalogResult:
        if self._cache_is_fresh():
            return CatalogResult(entries=list(self._cached or []), source="cache")

        async with self._refresh_lock:
            if self._cache_is_fresh():
                return CatalogResult(entries=list(self._cached or []), source="cache")

            last_error: str | None = None
            for credential in list(self._credential_source()):
                try:
                    entries = await self._fetch_live(credential)
                except (httpx.HTTPError, ValueError) as exc:
                    last_error = str(exc) or exc.__class__.__name__
                    logger.info(
                        "catalog_fetch_failed credential=%s error=%s",
                        mask_credential(credential),
                        last_error,
                    )
                    continue

                self._cached = entries
                self._expires_at = self._clock() + self._cache_ttl_seconds
                logger.info("catalog_fetch_complete models=%d", len(entries))
                return CatalogResult(entries=list(entries), source="live")

        logger.warning(
            "catalog_fetch_fallback reason=%s", last_error or "no_credentials"
        )
        return CatalogResult(
            entries=default_catalog(int(time.time())),
            source="fallback",
            error_kind=ErrorKind.UPSTREAM_TRANSIENT,
            error=last_error,
        )

    async def _fetch_live(self, credential: str) -> list[ModelCatalogEntry]:
        response = await self._client.get(
            build_models_url(credential, base_url=self.base_url),
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()
        body = response.json()
        models = body.get("models") if isinstance(body, dict) else None
        if not isinstance(models, list):
            raise ValueError("Invalid models response: missing 'models' list.")

        created = int(time.time())
        return [
            ModelCatalogEntry(
                id=str(model["name"]).removeprefix("models/"),
                created=created,
            )
            for model in models
            if isinstance(model, dict) and _supports_generation(model)
        ]

    def invalidate_cache(self) -> None:
        self._cached = None
        self._expires_at = None
        logger.info("catalog_cache_cleared")
