from __future__ import annotations

import hmac

from fastapi import Request, status
from fastapi.responses import JSONResponse

from gemini_relay.settings import Settings

PROTECTED_PATH_PREFIXES = ("/v1", "/admin")


class AuthConfigurationError(RuntimeError):
    """Raised when ingress auth is required but no client key is configured."""


class Authenticator:
    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self.api_keys = settings.ingress_api_keys_list

        if self.required and not self.api_keys:
            raise AuthConfigurationError(
                "Ingress auth is required, but INGRESS_API_KEYS is empty.",
            )

    @staticmethod
    def protects(path: str) -> bool:
        return path.startswith(PROTECTED_PATH_PREFIXES)

    def _matches(self, presented: str) -> bool:
        return any(
            hmac.compare_digest(presented.encode(), key.encode())
            for key in self.api_keys
        )

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        presented = request.headers.get("x-api-key", "").strip()
        if not presented:
            auth_header = request.headers.get("authorization", "")
            scheme, _, token = auth_header.partition(" ")
            if scheme.lower() != "bearer" or not token.strip():
                return _unauthorized("Missing Bearer token or x-api-key header.")
            presented = token.strip()

        if not self._matches(presented):
            return _unauthorized("Invalid API key.")
        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "code": status.HTTP_401_UNAUTHORIZED,
            },
        },
    )
