# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Cloud resource naming.

NAVER Cloud load balancer and target group names must start with a lowercase
letter, contain only lowercase letters, digits and hyphens, must not end with
a hyphen, and must be 3 to 30 characters long.
"""

from __future__ import annotations

import re

MAX_NAME_LENGTH = 30
MIN_NAME_LENGTH = 3
FALLBACK_PREFIX = "tg"

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def generate_valid_name(prefix: str, namespace: str, name: str, suffix: str = "") -> str:
    """Build a deterministic, cloud-valid name from its parts.

    The `default` namespace is omitted to leave more room for the service
    name. Empty parts are skipped.
    """
    parts = [prefix]
    if namespace and namespace != "default":
        parts.append(namespace)
    parts.extend([name, suffix])

    result = "-".join(p for p in parts if p).lower()
    result = _INVALID_CHARS.sub("", result)
    result = _HYPHEN_RUNS.sub("-", result).strip("-")

    if not result or not result[0].isalpha():
        result = _HYPHEN_RUNS.sub("-", f"{FALLBACK_PREFIX}-{result}").strip("-")

    result = result[:MAX_NAME_LENGTH].rstrip("-")

    if len(result) < MIN_NAME_LENGTH:
        result = f"{FALLBACK_PREFIX}-{result}"
    return result
