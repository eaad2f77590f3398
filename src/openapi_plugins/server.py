"""MCP server exposing registered plugin operations as tools."""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastmcp import FastMCP

from .catalog import SchemaParseError
from .config import Settings
from .invoker import InvocationError
from .models import InvocationResult, OperationDescriptor, Success
from .registry import PluginRegistry, RegistryError

logger = logging.getLogger(__name__)


def build_server(registry: PluginRegistry, settings: Settings) -> FastMCP:
    mcp = FastMCP(settings.service_name, instructions=_instructions())

    for name in registry.names():
        plugin = registry.get(name)
        for operation in plugin.catalog:
            tool_name = plugin.function_name(operation)
            handler = _tool_handler(registry, plugin.name, operation)
            mcp.tool(name=tool_name, description=operation.description or None)(handler)
            logger.info("Registered tool: %s", tool_name)

    return mcp


def _tool_handler(
    registry: PluginRegistry, plugin_name: str, operation: OperationDescriptor
) -> Callable[[Any], Awaitable[Dict[str, Any]]]:
    async def handler(payload: operation.input_model) -> Dict[str, Any]:
        arguments = payload.model_dump(by_alias=True, exclude_none=True)
        try:
            result = await registry.invoke(plugin_name, operation.operation_id, arguments)
        except (InvocationError, RegistryError, SchemaParseError) as exc:
            logger.error("Tool execution failed: %s", exc)
            return _format_error(str(exc))
        return format_result(result)

    handler.__name__ = f"{plugin_name}_{operation.operation_id}"
    return handler


def format_result(result: InvocationResult) -> Dict[str, Any]:
    if isinstance(result, Success):
        try:
            data = result.json()
        except ValueError:
            return {"content": [{"type": "text", "text": result.body}], "status_code": result.status_code}
        return {"content": [{"type": "json", "json": data}], "status_code": result.status_code}
    return _format_error(f"{result.kind.value}: {result.message}", result.status_code)


def _format_error(message: str, status_code: Optional[int] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"content": [{"type": "text", "text": message}], "is_error": True}
    if status_code is not None:
        error["status_code"] = status_code
    return error


def _instructions() -> str:
    return (
        "OpenAPI plugin bridge. "
        "Each tool is named <plugin>-<operationId> and forwards its arguments to the remote API."
    )
