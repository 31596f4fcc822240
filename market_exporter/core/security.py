"""
Security utilities - never log or return secrets, never trust file names.
"""

import base64
import hashlib
import hmac
import re
import secrets
from typing import Any, Dict, Optional

REDACTED = '***REDACTED***'

# Settings whose names end like this hold credentials
SENSITIVE_SUFFIXES = ('_key', '_secret', 'secret', 'password', 'token', '_access_key_id')


def _is_sensitive(key: str) -> bool:
    return key.lower().endswith(SENSITIVE_SUFFIXES)


def sanitize_dict_for_logging(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy of ``data`` with credential values masked, nested dicts included.

    Empty values are left as they are so the log still shows what is unset.
    """
    result = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = sanitize_dict_for_logging(value)
        elif value and _is_sensitive(str(key)):
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def sanitize_filename(name: str) -> str:
    """
    Reduce a user supplied file name to a bare, safe name.

    Directory components are dropped, anything outside ``[A-Za-z0-9._-]`` is
    removed and leading dots are stripped, so the result can never escape the
    output folder.

    Args:
        name: Raw file name from a request.

    Returns:
        Sanitized name, or an empty string if nothing usable remains.
    """
    if not name:
        return ''
    base = re.split(r'[\\/]', name)[-1]
    base = re.sub(r'[^A-Za-z0-9._-]', '', base)
    base = base.lstrip('.')
    if base in ('', '.', '..'):
        return ''
    return base


def compute_webhook_signature(body: bytes, secret: str) -> str:
    """WooCommerce webhook signature: base64(HMAC-SHA256(body, secret))."""
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check the X-WC-Webhook-Signature header of a WooCommerce webhook.

    Args:
        body: Raw request body.
        signature: Header value (may be None).
        secret: Shared webhook secret.

    Returns:
        True if the signature matches.
    """
    if not signature:
        return False
    expected = compute_webhook_signature(body, secret)
    return secrets.compare_digest(signature, expected)
