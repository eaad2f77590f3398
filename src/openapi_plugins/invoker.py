"""Execution layer for imported OpenAPI operations."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx

from .audit import AuditTransport
from .auth import CredentialInjector
from .catalog import is_json_media_type
from .logging import redact_payload
from .models import (
    Failure,
    FailureKind,
    InvocationResult,
    OperationDescriptor,
    ParameterLocation,
    Success,
    TransportConfig,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


class InvocationErrorKind(str, Enum):
    MISSING_ARGUMENT = "MissingArgument"
    UNRESOLVED_PATH_PARAMETER = "UnresolvedPathParameter"
    UNSUPPORTED_CONTENT_TYPE = "UnsupportedContentType"


class InvocationError(Exception):
    def __init__(self, kind: InvocationErrorKind, message: str, name: Optional[str] = None) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.name = name


class OperationInvoker:
    """Issues one HTTP request per invocation through a pooled ``httpx.AsyncClient``."""

    def __init__(self, config: Optional[TransportConfig] = None) -> None:
        self.config = config or TransportConfig()
        self.injector = CredentialInjector(self.config.auth, self.config.credentials)
        if not self.config.verify_tls:
            logger.warning("TLS certificate verification is disabled for this invoker")
        self.client = httpx.AsyncClient(
            transport=self._build_transport(),
            headers=self.config.headers,
            timeout=self.config.timeout,
        )
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    async def __aenter__(self) -> "OperationInvoker":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the pooled client once every in-flight invocation has returned."""
        await self._idle.wait()
        await self.client.aclose()

    async def invoke(
        self,
        descriptor: OperationDescriptor,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InvocationResult:
        self._in_flight += 1
        self._idle.clear()
        try:
            request = await self.build_request(descriptor, arguments or {})
            logger.info("Invoking %s: %s %s", descriptor.operation_id, request.method, request.url)
            return await self._send(descriptor, request, deadline, cancel_event)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def build_request(
        self, descriptor: OperationDescriptor, arguments: Mapping[str, Any]
    ) -> httpx.Request:
        payload = {key: value for key, value in arguments.items() if value is not None}
        self._validate(descriptor, payload)

        path = self._build_path(descriptor.path_template, payload)
        auth_headers, auth_query = await self.injector.resolve()
        query = self._build_query(descriptor, payload, auth_query)

        headers: Dict[str, str] = {"Accept": "application/json"}
        headers.update(self._extract_header_params(descriptor, payload))
        headers.update(auth_headers)

        content: Optional[bytes] = None
        if descriptor.request_body_schema is not None and descriptor.method.accepts_body:
            body = self._select_body(descriptor, payload)
            if body is not None:
                content_type = descriptor.request_body_content_type
                if not is_json_media_type(content_type):
                    raise InvocationError(
                        InvocationErrorKind.UNSUPPORTED_CONTENT_TYPE,
                        f"{descriptor.operation_id} declares unsupported request content type {content_type!r}",
                    )
                headers["Content-Type"] = "application/json" if "*" in content_type else content_type
                content = json.dumps(body).encode("utf-8")

        base_url = self.config.base_url_override or descriptor.server_base_url
        url = base_url.rstrip("/") + path
        if query:
            url = f"{url}?{query}"
        return self.client.build_request(descriptor.method.value, url, headers=headers, content=content)

    async def _send(
        self,
        descriptor: OperationDescriptor,
        request: httpx.Request,
        deadline: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> InvocationResult:
        if cancel_event is not None and cancel_event.is_set():
            return Failure(FailureKind.CANCELLED, "invocation cancelled before it was sent")
        if self.client.is_closed:
            return Failure(FailureKind.TRANSPORT_ERROR, f"{descriptor.operation_id}: client is closed")

        send_task = asyncio.ensure_future(self.client.send(request))
        cancel_task = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        waiters = {send_task} if cancel_task is None else {send_task, cancel_task}
        try:
            done, _ = await asyncio.wait(waiters, timeout=deadline, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
            if not send_task.done():
                await _abort(send_task)

        if send_task.cancelled():
            reason = "cancelled by caller" if cancel_task in done else f"deadline of {deadline}s exceeded"
            logger.warning("Invocation of %s %s", descriptor.operation_id, reason)
            return Failure(FailureKind.CANCELLED, f"{descriptor.operation_id} {reason}")

        try:
            response = send_task.result()
        except httpx.TimeoutException as exc:
            logger.error("Request timed out: %s %s (%s)", request.method, request.url, exc)
            return Failure(FailureKind.TRANSPORT_ERROR, f"request timed out: {exc}")
        except httpx.HTTPError as exc:
            logger.error("Request failed: %s %s (%s)", request.method, request.url, exc)
            return Failure(FailureKind.TRANSPORT_ERROR, str(exc) or exc.__class__.__name__)

        if response.status_code >= 400:
            logger.warning(
                "%s returned HTTP %s", descriptor.operation_id, response.status_code
            )
            return Failure(FailureKind.REMOTE_ERROR, response.text, status_code=response.status_code)

        return Success(status_code=response.status_code, body=response.text)

    def _validate(self, descriptor: OperationDescriptor, payload: Mapping[str, Any]) -> None:
        for parameter in descriptor.parameters:
            if parameter.required and parameter.name not in payload:
                raise InvocationError(
                    InvocationErrorKind.MISSING_ARGUMENT,
                    f"{descriptor.operation_id} requires argument {parameter.name!r}",
                    name=parameter.name,
                )
        if (
            descriptor.request_body_required
            and descriptor.method.accepts_body
            and self._select_body(descriptor, payload) is None
        ):
            raise InvocationError(
                InvocationErrorKind.MISSING_ARGUMENT,
                f"{descriptor.operation_id} requires a request body",
                name="body",
            )

    def _build_path(self, template: str, payload: Mapping[str, Any]) -> str:
        def replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name not in payload:
                raise InvocationError(
                    InvocationErrorKind.UNRESOLVED_PATH_PARAMETER,
                    f"no argument for path placeholder {{{name}}} in {template}",
                    name=name,
                )
            return quote(_render(payload[name]), safe="")

        return _PLACEHOLDER.sub(replace, template)

    def _build_query(
        self,
        descriptor: OperationDescriptor,
        payload: Mapping[str, Any],
        auth_query: Dict[str, str],
    ) -> str:
        pairs: List[Tuple[str, Any]] = []
        for parameter in descriptor.parameters_in(ParameterLocation.QUERY):
            if parameter.name not in payload:
                continue
            value = payload[parameter.name]
            values = value if isinstance(value, (list, tuple)) else [value]
            pairs.extend((parameter.name, item) for item in values)
        pairs.extend(auth_query.items())
        return "&".join(
            f"{quote(name, safe='')}={quote(_render(value), safe='')}" for name, value in pairs
        )

    def _extract_header_params(
        self, descriptor: OperationDescriptor, payload: Mapping[str, Any]
    ) -> Dict[str, str]:
        return {
            parameter.name: _render(payload[parameter.name])
            for parameter in descriptor.parameters_in(ParameterLocation.HEADER)
            if parameter.name in payload
        }

    def _select_body(self, descriptor: OperationDescriptor, payload: Mapping[str, Any]) -> Any:
        declared = {parameter.name for parameter in descriptor.parameters}
        if "body" in payload and "body" not in declared:
            return payload["body"]
        residual = [
            value
            for key, value in payload.items()
            if key not in declared and isinstance(value, (dict, list))
        ]
        if len(residual) == 1:
            return residual[0]
        if len(residual) > 1:
            logger.debug(
                "Ambiguous body for %s: %s", descriptor.operation_id, redact_payload(dict(payload))
            )
        return None

    def _build_transport(self) -> httpx.AsyncBaseTransport:
        transport = self.config.transport or httpx.AsyncHTTPTransport(verify=self.config.verify_tls)
        if self.config.audit_sink is not None:
            transport = AuditTransport(transport, self.config.audit_sink)
        return transport


async def _abort(task: "asyncio.Future[Any]") -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, httpx.HTTPError):
        await task


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
