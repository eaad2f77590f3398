"""Internal models for imported operations and invocation outcomes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

import httpx
from pydantic import BaseModel


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"

    @property
    def accepts_body(self) -> bool:
        return self in {HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH}


class ParameterLocation(str, Enum):
    PATH = "path"
    QUERY = "query"
    HEADER = "header"


@dataclass(frozen=True)
class ParameterDescriptor:
    name: str
    location: ParameterLocation
    required: bool = False
    type: str = "string"
    description: str = ""


@dataclass(frozen=True)
class OperationDescriptor:
    operation_id: str
    method: HttpMethod
    path_template: str
    server_base_url: str
    input_model: Type[BaseModel]
    parameters: Tuple[ParameterDescriptor, ...] = ()
    request_body_schema: Optional[Dict[str, Any]] = None
    request_body_content_type: Optional[str] = None
    request_body_required: bool = False
    summary: str = ""
    description: str = ""

    def parameters_in(self, location: ParameterLocation) -> Tuple[ParameterDescriptor, ...]:
        return tuple(p for p in self.parameters if p.location == location)


class FailureKind(str, Enum):
    TRANSPORT_ERROR = "TransportError"
    REMOTE_ERROR = "RemoteError"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class Success:
    status_code: int
    body: str

    ok = True

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    status_code: Optional[int] = None

    ok = False


InvocationResult = Union[Success, Failure]


@dataclass(frozen=True)
class AuditRecord:
    method: str
    url: str
    body: str


AuditSink = Callable[[AuditRecord], None]
CredentialSupplier = Callable[[], Union[Optional[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]]


@dataclass(frozen=True)
class TransportConfig:
    """Per-plugin transport settings.

    ``auth`` describes how supplied credentials are attached, e.g.
    ``{"type": "bearer"}`` or ``{"type": "api_key", "name": "X-API-Key", "in": "header"}``.
    ``credentials`` is called once per request and returns the raw credential values.
    """

    base_url_override: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    verify_tls: bool = True
    auth: Dict[str, Any] = field(default_factory=dict)
    credentials: Optional[CredentialSupplier] = None
    audit_sink: Optional[AuditSink] = None
    transport: Optional[httpx.AsyncBaseTransport] = None
