"""Request audit log implemented as an httpx transport decorator."""

from __future__ import annotations

import json
import logging

import httpx

from .logging import redact_payload
from .models import AuditRecord, AuditSink

logger = logging.getLogger(__name__)

NO_CONTENT = "No content"


def log_sink(record: AuditRecord) -> None:
    body = record.body
    try:
        body = json.dumps(redact_payload(json.loads(body)))
    except ValueError:
        pass
    logger.info("Constructed URI: %s - %s - %s", record.method, record.url, body)


class AuditTransport(httpx.AsyncBaseTransport):
    """Wraps another async transport and reports every outgoing request to ``sink``.

    The request is forwarded unchanged. Failures inside the sink are logged and
    dropped so that auditing never affects the outcome of an invocation.
    """

    def __init__(self, inner: httpx.AsyncBaseTransport, sink: AuditSink = log_sink) -> None:
        self.inner = inner
        self.sink = sink

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self._record(request, await request.aread())
        return await self.inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self.inner.aclose()

    def _record(self, request: httpx.Request, content: bytes) -> None:
        try:
            body = content.decode("utf-8", errors="replace") if content else NO_CONTENT
            self.sink(AuditRecord(method=request.method, url=str(request.url), body=body))
        except Exception:
            logger.debug("Audit sink failed for %s %s", request.method, request.url, exc_info=True)
