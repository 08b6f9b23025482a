from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from typing import Any

from .config import IMAGE_KIT_ENDPOINT, IMAGE_KIT_PRIVATE_KEY, IMAGE_KIT_PUBLIC_KEY
from .errors import UpstreamUnavailable

# ImageKit rejects signatures that expire more than an hour out.
UPLOAD_TTL_S = 30 * 60


class UploadsUnavailable(UpstreamUnavailable):
    status_code = 503
    error = "Uploads unavailable"


def upload_auth_params(
    *,
    private_key: str | None = None,
    token: str | None = None,
    expire: int | None = None,
) -> dict[str, Any]:
    private_key = private_key or IMAGE_KIT_PRIVATE_KEY
    if not private_key:
        raise UploadsUnavailable("IMAGE_KIT_PRIVATE_KEY is not set")
    token = token or str(uuid.uuid4())
    expire = int(expire if expire is not None else time.time() + UPLOAD_TTL_S)
    signature = hmac.new(private_key.encode("utf-8"), f"{token}{expire}".encode("utf-8"), hashlib.sha1).hexdigest()
    return {
        "token": token,
        "expire": expire,
        "signature": signature,
        "public_key": IMAGE_KIT_PUBLIC_KEY,
        "url_endpoint": IMAGE_KIT_ENDPOINT,
    }
