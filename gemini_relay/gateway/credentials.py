from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from gemini_relay.errors import (
    AllCredentialsExhaustedError,
    CredentialError,
    ErrorKind,
    RelayError,
    UpstreamTransientError,
)
from gemini_relay.utils.redaction import mask_credential, redact_url

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_SECONDS = 60.0
QUOTA_MARKERS = ("quota", "limit")

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class Credential:
    key: str
    failure_count: int = 0
    available: bool = True
    last_used_at: float | None = None

    @property
    def masked(self) -> str:
        return mask_credential(self.key)

    def reset(self) -> None:
        self.failure_count = 0
        self.available = True
        self.last_used_at = None


class CredentialPool:
    """Fixed set of upstream keys with a round-robin cursor.

    Membership never changes after construction; a reload builds a new pool.
    All state mutations happen under a single lock so concurrent requests do
    not lose cursor advances or failure counts.
    """

    def __init__(
        self,
        keys: Sequence[str],
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not keys:
            raise ValueError("Credential pool requires at least one key.")
        self.failure_threshold = max(1, int(failure_threshold))
        self._credentials = tuple(Credential(key=key) for key in keys)
        self._by_key = {credential.key: credential for credential in self._credentials}
        self._cursor = 0
        self._clock = clock
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def cursor(self) -> int:
        return self._cursor

    def keys(self) -> list[str]:
        return [credential.key for credential in self._credentials]

    def find(self, key: str) -> Credential | None:
        return self._by_key.get(key)

    def _advance(self) -> None:
        self._cursor = (self._cursor + 1) % len(self._credentials)

    def select_next(self) -> Credential:
        with self._lock:
            for _ in range(len(self._credentials)):
                credential = self._credentials[self._cursor]
                if credential.available:
                    return credential
                self._advance()
        raise AllCredentialsExhaustedError(
            "All API keys are unavailable.",
            details={"total_keys": len(self._credentials)},
        )

    def record_success(self, credential: Credential) -> None:
        with self._lock:
            credential.failure_count = 0
            credential.available = True
            credential.last_used_at = self._clock()
            self._advance()
        logger.info("credential_success credential=%s", credential.masked)

    def record_failure(self, credential: Credential, error_kind: ErrorKind) -> bool:
        with self._lock:
            credential.failure_count += 1
            blocked_now = (
                credential.available
                and credential.failure_count >= self.failure_threshold
            )
            if blocked_now:
                credential.available = False
            self._advance()
            failure_count = credential.failure_count
        logger.warning(
            "credential_failure credential=%s kind=%s failures=%d/%d",
            credential.masked,
            error_kind.value,
            failure_count,
            self.failure_threshold,
        )
        if blocked_now:
            logger.warning("credential_blocked credential=%s", credential.masked)
        return blocked_now

    def reset_all(self) -> None:
        with self._lock:
            for credential in self._credentials:
                credential.reset()
        logger.info("credential_pool_reset keys=%d", len(self._credentials))

    def available_count(self) -> int:
        with self._lock:
            return sum(1 for credential in self._credentials if credential.available)

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "index": index,
                    "key": credential.masked,
                    "failureCount": credential.failure_count,
                    "isAvailable": credential.available,
                    "lastUsed": _format_last_used(credential.last_used_at),
                }
                for index, credential in enumerate(self._credentials)
            ]


def _format_last_used(value: float | None) -> str:
    if value is None:
        return "never"
    return datetime.fromtimestamp(value, tz=UTC).isoformat().replace("+00:00", "Z")


def with_credential(url: str, credential: str) -> str:
    parts = urlsplit(url)
    query = [(name, value) for name, value in parse_qsl(parts.query) if name != "key"]
    query.append(("key", credential))
    return urlunsplit(parts._replace(query=urlencode(query, safe=":")))


def credential_from_url(url: str) -> str | None:
    for name, value in parse_qsl(urlsplit(url).query):
        if name == "key" and value:
            return value
    return None


def upstream_error_message(response: httpx.Response) -> tuple[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip(), error.get("status")
    text = response.text.strip()
    return text or f"Upstream returned HTTP {response.status_code}", None


def classify_status(status_code: int, message: str) -> ErrorKind:
    if status_code in (401, 403):
        return ErrorKind.CREDENTIAL
    if status_code == 429:
        lowered = message.lower()
        if any(marker in lowered for marker in QUOTA_MARKERS):
            return ErrorKind.CREDENTIAL
    return ErrorKind.UPSTREAM_TRANSIENT


def error_from_response(
    response: httpx.Response, credential: str | None
) -> RelayError:
    message, upstream_status = upstream_error_message(response)
    details = {"upstream_status": upstream_status} if upstream_status else None
    if classify_status(response.status_code, message) is ErrorKind.CREDENTIAL:
        return CredentialError(
            message,
            credential=credential,
            status_code=response.status_code,
            details=details,
        )
    return UpstreamTransientError(
        message, status_code=response.status_code, details=details
    )


class CredentialDispatcher:
    def __init__(
        self,
        pool: CredentialPool,
        *,
        client: httpx.AsyncClient,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._pool = pool
        self.client = client
        self.timeout_seconds = float(timeout_seconds)
        self.max_attempts = max(1, int(max_attempts))
        self._audit_hook = audit_hook

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    def replace_pool(self, keys: Sequence[str]) -> CredentialPool:
        pool = CredentialPool(keys, failure_threshold=self._pool.failure_threshold)
        self._pool = pool
        logger.info("credential_pool_replaced keys=%d", len(pool))
        return pool

    def select_next(self) -> Credential:
        return self._pool.select_next()

    def record_success(self, credential: Credential) -> None:
        self._pool.record_success(credential)

    def record_failure(self, credential: Credential, error_kind: ErrorKind) -> bool:
        return self._pool.record_failure(credential, error_kind)

    def get_status(self) -> list[dict[str, Any]]:
        return self._pool.snapshot()

    def reset_all(self) -> None:
        self._pool.reset_all()

    def available_count(self) -> int:
        return self._pool.available_count()

    def total_count(self) -> int:
        return len(self._pool)

    def credential_keys(self) -> list[str]:
        return self._pool.keys()

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def dispatch(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        # In-flight calls keep the pool they started with across a reload.
        pool = self._pool
        last_error: CredentialError | None = None
        for attempt in range(1, self.max_attempts + 1):
            credential = pool.select_next()
            target = with_credential(url, credential.key)
            logger.info(
                "dispatch_attempt request_id=%s attempt=%d/%d credential=%s",
                request_id,
                attempt,
                self.max_attempts,
                credential.masked,
            )
            self._audit(
                "dispatch_attempt",
                request_id=request_id,
                attempt=attempt,
                max_attempts=self.max_attempts,
                credential=credential.masked,
                url=redact_url(target),
            )
            attempt_started = time.perf_counter()
            try:
                body = await self._send(target, payload)
            except CredentialError as exc:
                last_error = exc
                failed_key = credential_from_url(target)
                failed = pool.find(failed_key) if failed_key else None
                if failed is not None:
                    pool.record_failure(failed, exc.kind)
                self._audit(
                    "dispatch_credential_failure",
                    request_id=request_id,
                    attempt=attempt,
                    credential=credential.masked,
                    status=exc.status_code,
                    error=exc.message,
                )
                continue
            except RelayError as exc:
                logger.warning(
                    "dispatch_aborted request_id=%s attempt=%d kind=%s "
                    "status=%s error=%s",
                    request_id,
                    attempt,
                    exc.kind.value,
                    exc.status_code,
                    exc.message,
                )
                self._audit(
                    "dispatch_aborted",
                    request_id=request_id,
                    attempt=attempt,
                    credential=credential.masked,
                    kind=exc.kind.value,
                    status=exc.status_code,
                    error=exc.message,
                )
                raise

            pool.record_success(credential)
            self._audit(
                "dispatch_success",
                request_id=request_id,
                attempt=attempt,
                credential=credential.masked,
                latency_ms=round(
                    (time.perf_counter() - attempt_started) * 1000.0, 3
                ),
            )
            return body

        logger.error(
            "dispatch_exhausted request_id=%s attempts=%d error=%s",
            request_id,
            self.max_attempts,
            last_error.message if last_error else None,
        )
        self._audit(
            "dispatch_exhausted",
            request_id=request_id,
            attempts=self.max_attempts,
            status=last_error.status_code if last_error else None,
        )
        if last_error is None:
            raise AllCredentialsExhaustedError("Request failed on every API key.")
        raise last_error

    async def _send(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        credential = credential_from_url(url)
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError(
                f"Upstream request timed out after {self.timeout_seconds:g}s.",
                status_code=504,
                details={"error_type": exc.__class__.__name__},
            ) from exc
        except httpx.RequestError as exc:
            error_type = exc.__class__.__name__
            raise UpstreamTransientError(
                f"Could not reach upstream ({error_type}): {str(exc) or repr(exc)}",
                status_code=502,
                details={"error_type": error_type},
            ) from exc

        if response.status_code >= 400:
            raise error_from_response(response, credential)

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamTransientError(
                "Upstream returned a response body that is not JSON.",
                status_code=502,
            ) from exc
        if not isinstance(body, dict):
            raise UpstreamTransientError(
                "Upstream returned an unexpected response shape.",
                status_code=502,
            )
        return body
