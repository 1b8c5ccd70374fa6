from __future__ import annotations

import re

_KEY_QUERY_PATTERN = re.compile(r"([?&]key=)([^&]+)")


def mask_credential(credential: str, visible: int = 10) -> str:
    return f"{credential[:visible]}..."


def redact_url(url: str) -> str:
    return _KEY_QUERY_PATTERN.sub(
        lambda match: match.group(1) + mask_credential(match.group(2)), url
    )
