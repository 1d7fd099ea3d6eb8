"""Request parameter collection for the public endpoints.

Landing pages and CRMs send the same fields as query strings, JSON or
urlencoded forms; all three are flattened into one dict here.
"""

import json
from typing import Any, Dict
from urllib.parse import parse_qsl

from fastapi import Request


async def collect_params(request: Request) -> Dict[str, Any]:
    """Query string merged with a JSON or urlencoded body; body values win."""
    params: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return params

    raw = await request.body()
    if not raw:
        return params

    content_type = request.headers.get("content-type", "")
    body: Dict[str, Any] = {}
    if "application/json" in content_type:
        try:
            decoded = json.loads(raw)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            body = decoded
    elif "application/x-www-form-urlencoded" in content_type:
        body = dict(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))

    params.update({k: v for k, v in body.items() if v not in (None, "")})
    return params


def client_ip(request: Request):
    """Caller IP (ProxyHeadersMiddleware has already applied X-Forwarded-For)."""
    return request.client.host if request.client else None
