import base64
import hashlib
import hmac
from typing import Any, Mapping, Optional


def compute_signature(secret: str, url: str, params: Mapping[str, Any]) -> str:
    """Provider request signature: HMAC-SHA1 over the URL followed by each sorted key and value."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(secret: str, url: str, params: Mapping[str, Any], signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = compute_signature(secret, url, params)
    return hmac.compare_digest(expected, signature)
