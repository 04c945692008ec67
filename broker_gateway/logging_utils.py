"""
Broker Gateway - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Masking helpers so credentials never reach log output.

SECURITY REQUIREMENTS:
1. NEVER log raw API keys or secrets
2. Mask sensitive headers (X-MBX-APIKEY, OK-ACCESS-KEY, ...)
3. Mask signatures and passphrases in request parameters

============================================================
"""

import re
from typing import Any, Dict


# ============================================================
# SENSITIVE DATA PATTERNS
# ============================================================

SENSITIVE_HEADERS = {
    "authorization",
    "x-api-key",
    "x-mbx-apikey",
    "ok-access-key",
    "ok-access-passphrase",
    "ok-access-sign",
    "access-key",
    "access-passphrase",
    "access-sign",
}

SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "secret_key",
    "secretkey",
    "passphrase",
    "signature",
    "sign",
}

# HMAC-SHA256 hex digests
SIGNATURE_PATTERN = re.compile(r"\b[a-f0-9]{64}\b", re.IGNORECASE)


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start

    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive request headers."""
    if not headers:
        return {}

    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Mask sensitive request parameters.

    Args:
        params: Request parameters

    Returns:
        Copy of params with sensitive values masked
    """
    if not params:
        return {}

    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        elif isinstance(value, str):
            masked[key] = SIGNATURE_PATTERN.sub("***HMAC***", value)
        else:
            masked[key] = value
    return masked
