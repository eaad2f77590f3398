"""OpenAPI document loader and operation catalog."""

from __future__ import annotations

import json
import logging
import re
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, create_model

from .models import HttpMethod, OperationDescriptor, ParameterDescriptor, ParameterLocation


logger = logging.getLogger(__name__)

DocumentSource = Union[str, Path, Mapping[str, Any]]

_HTTP_METHODS = {method.value.lower(): method for method in HttpMethod}
_LOCATIONS = {location.value: location for location in ParameterLocation}
_PRIMITIVE_TYPES = {"string", "integer", "number", "boolean"}
_SERVER_VARIABLE = re.compile(r"\{([^{}]+)\}")


class SchemaParseErrorKind(str, Enum):
    MISSING_OPERATION_ID = "MissingOperationId"
    DUPLICATE_OPERATION_ID = "DuplicateOperationId"
    NO_SERVER_URL = "NoServerUrl"
    MALFORMED_DOCUMENT = "MalformedDocument"
    DOCUMENT_UNAVAILABLE = "DocumentUnavailable"


class SchemaParseError(Exception):
    def __init__(self, kind: SchemaParseErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.detail = message


def is_json_media_type(media_type: Optional[str]) -> bool:
    if not media_type:
        return False
    base = media_type.split(";", 1)[0].strip().lower()
    return base in {"application/json", "text/json"} or base.endswith("+json")


class SchemaCatalog:
    """Read-only set of operations parsed from one OpenAPI document."""

    def __init__(
        self,
        operations: Iterable[OperationDescriptor],
        server_base_url: str,
        title: str = "",
        version: str = "",
        source: Optional[str] = None,
    ) -> None:
        self.server_base_url = server_base_url
        self.title = title
        self.version = version
        self.source = source
        self._operations: Dict[str, OperationDescriptor] = {}
        for operation in operations:
            if operation.operation_id in self._operations:
                raise SchemaParseError(
                    SchemaParseErrorKind.DUPLICATE_OPERATION_ID,
                    f"operationId {operation.operation_id!r} is declared more than once",
                )
            self._operations[operation.operation_id] = operation

    @classmethod
    def from_document(
        cls,
        document: Any,
        server_url_override: Optional[str] = None,
        source: Optional[str] = None,
    ) -> "SchemaCatalog":
        return DocumentParser(document, source).parse(server_url_override)

    @property
    def operations(self) -> Tuple[OperationDescriptor, ...]:
        return tuple(self._operations.values())

    def get(self, operation_id: str) -> Optional[OperationDescriptor]:
        return self._operations.get(operation_id)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._operations

    def __iter__(self) -> Iterator[OperationDescriptor]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self._operations)

    def __repr__(self) -> str:
        return f"SchemaCatalog(title={self.title!r}, server_base_url={self.server_base_url!r}, operations={len(self)})"


class DocumentParser:
    def __init__(self, document: Any, source: Optional[str] = None) -> None:
        if not isinstance(document, Mapping):
            raise SchemaParseError(
                SchemaParseErrorKind.MALFORMED_DOCUMENT, "document root must be a JSON object"
            )
        self.document = document
        self.source = source

    def parse(self, server_url_override: Optional[str] = None) -> SchemaCatalog:
        base_url = self._server_url(server_url_override)
        info = _object_or_empty(self.document.get("info"), "info")
        return SchemaCatalog(
            self.extract_operations(base_url),
            server_base_url=base_url,
            title=str(info.get("title") or ""),
            version=str(info.get("version") or ""),
            source=self.source,
        )

    def extract_operations(self, base_url: str) -> List[OperationDescriptor]:
        operations: List[OperationDescriptor] = []
        seen: set[str] = set()
        paths = self.document.get("paths")
        if not isinstance(paths, Mapping):
            raise SchemaParseError(
                SchemaParseErrorKind.MALFORMED_DOCUMENT, "document has no 'paths' object"
            )

        for path, methods in paths.items():
            methods = self._expand(methods)
            if not isinstance(methods, Mapping):
                raise SchemaParseError(
                    SchemaParseErrorKind.MALFORMED_DOCUMENT, f"path item {path!r} is not an object"
                )
            shared_parameters = methods.get("parameters") or []
            for method_name, operation in methods.items():
                method = _HTTP_METHODS.get(str(method_name).lower())
                if method is None:
                    continue
                if not isinstance(operation, Mapping):
                    raise SchemaParseError(
                        SchemaParseErrorKind.MALFORMED_DOCUMENT,
                        f"operation {method.value} {path} is not an object",
                    )

                operation_id = operation.get("operationId")
                if not operation_id or not isinstance(operation_id, str):
                    raise SchemaParseError(
                        SchemaParseErrorKind.MISSING_OPERATION_ID,
                        f"operation {method.value} {path} has no operationId",
                    )
                if operation_id in seen:
                    raise SchemaParseError(
                        SchemaParseErrorKind.DUPLICATE_OPERATION_ID,
                        f"operationId {operation_id!r} is declared more than once",
                    )
                seen.add(operation_id)

                parameters = self._parameters(
                    shared_parameters, operation.get("parameters") or [], operation_id
                )
                body_schema, content_type, body_required = self._request_body(
                    operation.get("requestBody")
                )
                input_model = build_input_model(
                    operation_id, parameters, body_schema is not None, body_required
                )

                operations.append(
                    OperationDescriptor(
                        operation_id=operation_id,
                        method=method,
                        path_template=str(path),
                        server_base_url=base_url,
                        input_model=input_model,
                        parameters=parameters,
                        request_body_schema=body_schema,
                        request_body_content_type=content_type,
                        request_body_required=body_required,
                        summary=operation.get("summary") or "",
                        description=operation.get("description") or operation.get("summary") or "",
                    )
                )

        return operations

    def _parameters(
        self, shared: Any, own: Any, operation_id: str
    ) -> Tuple[ParameterDescriptor, ...]:
        if not isinstance(shared, list) or not isinstance(own, list):
            raise SchemaParseError(
                SchemaParseErrorKind.MALFORMED_DOCUMENT,
                f"parameters of {operation_id!r} must be a list",
            )

        merged: Dict[Tuple[str, str], ParameterDescriptor] = {}
        for raw in [*shared, *own]:
            parameter = self._expand(raw)
            if not isinstance(parameter, Mapping) or not parameter.get("name") or not parameter.get("in"):
                raise SchemaParseError(
                    SchemaParseErrorKind.MALFORMED_DOCUMENT,
                    f"parameter of {operation_id!r} needs 'name' and 'in'",
                )
            name = str(parameter["name"])
            where = str(parameter["in"])
            if where == "cookie":
                logger.debug("Ignoring cookie parameter %s of %s", name, operation_id)
                continue
            location = _LOCATIONS.get(where)
            if location is None:
                raise SchemaParseError(
                    SchemaParseErrorKind.MALFORMED_DOCUMENT,
                    f"parameter {name!r} of {operation_id!r} has unknown location {where!r}",
                )

            merged[(name, where)] = ParameterDescriptor(
                name=name,
                location=location,
                required=location == ParameterLocation.PATH or bool(parameter.get("required", False)),
                type=self._primitive_type(
                    _object_or_empty(parameter.get("schema"), f"schema of parameter {name!r}")
                ),
                description=parameter.get("description") or "",
            )

        return tuple(merged.values())

    def _request_body(
        self, request_body: Any
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str], bool]:
        request_body = self._expand(request_body)
        if not request_body:
            return None, None, False
        content = request_body.get("content") if isinstance(request_body, Mapping) else None
        if not isinstance(content, Mapping) or not content:
            return None, None, False

        media_type = "application/json" if "application/json" in content else None
        if media_type is None:
            media_type = next((m for m in content if is_json_media_type(m)), next(iter(content)))
        media = content.get(media_type) or {}
        schema = media.get("schema") if isinstance(media, Mapping) else None
        if not isinstance(schema, Mapping):
            schema = {}
        return dict(schema), media_type, bool(request_body.get("required", False))

    def _primitive_type(self, schema: Mapping[str, Any]) -> str:
        schema_type = schema.get("type")
        if isinstance(schema_type, list):
            schema_type = next((t for t in schema_type if t != "null"), None)
        if schema_type in _PRIMITIVE_TYPES:
            return schema_type
        return "string"

    def _server_url(self, override: Optional[str]) -> str:
        if override:
            return override

        servers = self.document.get("servers") or []
        server = servers[0] if isinstance(servers, list) and servers else None
        if not isinstance(server, Mapping) or not server.get("url"):
            raise SchemaParseError(
                SchemaParseErrorKind.NO_SERVER_URL, "no server URL override and no servers[0].url"
            )

        variables = _object_or_empty(server.get("variables"), "servers[0].variables")
        url = self._apply_variables(str(server["url"]), variables)
        if urlsplit(url).scheme:
            return url
        if self.source and urlsplit(self.source).scheme in {"http", "https"}:
            return urljoin(self.source, url)
        raise SchemaParseError(
            SchemaParseErrorKind.NO_SERVER_URL,
            f"server URL {url!r} is relative and the document has no base location",
        )

    def _apply_variables(self, url: str, variables: Mapping[str, Any]) -> str:
        def replace(match: "re.Match[str]") -> str:
            variable = variables.get(match.group(1)) or {}
            default = variable.get("default") if isinstance(variable, Mapping) else None
            return str(default) if default is not None else match.group(0)

        return _SERVER_VARIABLE.sub(replace, url)

    def _expand(self, node: Any, seen: frozenset = frozenset()) -> Any:
        if isinstance(node, list):
            return [self._expand(item, seen) for item in node]
        if not isinstance(node, Mapping):
            return node
        ref = node.get("$ref")
        if isinstance(ref, str):
            # recursive schemas are cut at the first repetition
            if ref in seen:
                return {}
            return self._expand(self._lookup(ref), seen | {ref})
        return {key: self._expand(value, seen) for key, value in node.items()}

    def _lookup(self, ref: str) -> Any:
        if not ref.startswith("#/"):
            raise SchemaParseError(
                SchemaParseErrorKind.MALFORMED_DOCUMENT, f"only local references are supported: {ref}"
            )
        node: Any = self.document
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(node, Mapping) or part not in node:
                raise SchemaParseError(
                    SchemaParseErrorKind.MALFORMED_DOCUMENT, f"unresolvable reference {ref}"
                )
            node = node[part]
        return node


def build_input_model(
    operation_id: str,
    parameters: Iterable[ParameterDescriptor],
    has_body: bool,
    body_required: bool = False,
) -> type[BaseModel]:
    fields: Dict[str, Tuple[Any, Any]] = {}

    for parameter in parameters:
        field_type = _schema_to_type(parameter.type)
        if not parameter.required:
            field_type = Optional[field_type]
        default = ... if parameter.required else None
        field_name = parameter.name
        if not field_name.isidentifier() or field_name.startswith("_") or hasattr(BaseModel, field_name):
            field_name = f"p_{_sanitize_name(field_name)}"
        fields[field_name] = (
            field_type,
            Field(default, alias=parameter.name, description=parameter.description or None),
        )

    if has_body:
        fields["body"] = (Any, Field(... if body_required else None, description="Request body"))

    model_config = ConfigDict(extra="allow", populate_by_name=True)
    model_name = f"{_sanitize_name(operation_id)}Input"
    return create_model(model_name, __config__=model_config, **fields)


def function_definition(operation: OperationDescriptor, name: Optional[str] = None) -> Dict[str, Any]:
    """Describe ``operation`` as a chat-completions style function definition."""
    schema = operation.input_model.model_json_schema(by_alias=True)
    schema.pop("title", None)
    properties = schema.setdefault("properties", {})
    for prop in properties.values():
        prop.pop("title", None)
    if operation.request_body_schema is not None and "body" in properties:
        properties["body"] = {"description": "Request body", **operation.request_body_schema}
    return {
        "name": name or operation.operation_id,
        "description": operation.description or operation.summary,
        "parameters": schema,
    }


def _schema_to_type(schema_type: str) -> Any:
    if schema_type == "integer":
        return int
    if schema_type == "number":
        return float
    if schema_type == "boolean":
        return bool
    return str


def _object_or_empty(value: Any, what: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SchemaParseError(SchemaParseErrorKind.MALFORMED_DOCUMENT, f"{what} must be an object")
    return value


def _sanitize_name(name: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in name)


class OpenAPILoader:
    def __init__(
        self,
        cache_seconds: int = 3600,
        timeout: float = 30,
        verify_tls: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cache_seconds = cache_seconds
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.transport = transport
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        if not verify_tls:
            logger.warning("TLS certificate verification is disabled for document fetches")

    async def load(
        self, source: DocumentSource, server_url_override: Optional[str] = None
    ) -> SchemaCatalog:
        if isinstance(source, Mapping):
            return SchemaCatalog.from_document(source, server_url_override)
        document = await self.load_spec(source)
        catalog = SchemaCatalog.from_document(document, server_url_override, source=str(source))
        logger.info(
            "Loaded %s operations from %s (server=%s)", len(catalog), source, catalog.server_base_url
        )
        return catalog

    async def load_spec(self, source: Union[str, Path]) -> Dict[str, Any]:
        if isinstance(source, Path) or urlsplit(source).scheme not in {"http", "https"}:
            return self._read_file(Path(source))

        url = source
        cached = self._cache.get(url)
        if cached and time.time() - cached[0] < self.cache_seconds:
            return cached[1]

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, verify=self.verify_tls, transport=self.transport
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise SchemaParseError(
                SchemaParseErrorKind.DOCUMENT_UNAVAILABLE, f"failed to fetch {url}: {exc}"
            ) from exc
        if response.status_code != 200:
            logger.warning("Failed to fetch OpenAPI spec: %s (%s)", url, response.status_code)
            raise SchemaParseError(
                SchemaParseErrorKind.DOCUMENT_UNAVAILABLE,
                f"failed to fetch {url}: HTTP {response.status_code}",
            )

        data = _decode(response.text, url)
        self._cache[url] = (time.time(), data)
        return data

    def _read_file(self, path: Path) -> Dict[str, Any]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SchemaParseError(
                SchemaParseErrorKind.DOCUMENT_UNAVAILABLE, f"failed to read {path}: {exc}"
            ) from exc
        return _decode(text, str(path))


def _decode(text: str, origin: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise SchemaParseError(
            SchemaParseErrorKind.MALFORMED_DOCUMENT, f"{origin} is not valid JSON: {exc}"
        ) from exc
    if not isinstance(data, dict):
        raise SchemaParseError(
            SchemaParseErrorKind.MALFORMED_DOCUMENT, f"{origin} does not contain a JSON object"
        )
    return data
