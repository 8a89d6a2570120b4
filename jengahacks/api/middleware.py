"""Request context and security headers.

Resolves the client address (honouring proxy headers when trusted), the
optional client fingerprint, user agent and a request id, and stores them on
``request.state`` before routing. Every response gets the security headers.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from jengahacks.abuse.identifiers import resolve_client_ip

logger = logging.getLogger(__name__)

FINGERPRINT_HEADER = "x-client-fingerprint"
REQUEST_ID_HEADER = "x-request-id"

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


class ClientContextMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, *, trust_proxy: bool = True):
        super().__init__(app)
        self.trust_proxy = trust_proxy

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        peer = request.client.host if request.client else None
        request.state.client_ip = resolve_client_ip(request.headers, peer, trust_proxy=self.trust_proxy)
        request.state.client_fingerprint = self._header(request, FINGERPRINT_HEADER, 256)
        request.state.user_agent = self._header(request, "user-agent", 512)
        request.state.request_id = self._request_id(request)

        response = await call_next(request)

        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response

    @staticmethod
    def _header(request: Request, name: str, max_length: int) -> Optional[str]:
        value = request.headers.get(name)
        if value is None:
            return None
        value = value.strip()
        return value[:max_length] or None

    @staticmethod
    def _request_id(request: Request) -> str:
        # Always server-generated: the id keys violation dedupe
        return uuid.uuid4().hex


__all__ = ["ClientContextMiddleware", "SECURITY_HEADERS"]
