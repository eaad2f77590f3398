"""Plugin registry for imported OpenAPI documents."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .catalog import DocumentSource, OpenAPILoader, SchemaCatalog, function_definition
from .invoker import OperationInvoker
from .models import InvocationResult, OperationDescriptor, TransportConfig


logger = logging.getLogger(__name__)

_PLUGIN_NAME = re.compile(r"^[A-Za-z0-9_]+$")
FUNCTION_SEPARATOR = "-"


class RegistryErrorKind(str, Enum):
    DUPLICATE_NAME = "DuplicateName"
    INVALID_NAME = "InvalidName"
    UNKNOWN_PLUGIN = "UnknownPlugin"
    UNKNOWN_OPERATION = "UnknownOperation"


class RegistryError(Exception):
    def __init__(self, kind: RegistryErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind


@dataclass(frozen=True)
class Plugin:
    name: str
    catalog: SchemaCatalog
    config: TransportConfig
    invoker: OperationInvoker

    def function_name(self, operation: OperationDescriptor) -> str:
        return f"{self.name}{FUNCTION_SEPARATOR}{operation.operation_id}"


class PluginRegistry:
    """Maps plugin names to a catalog and the invoker that executes its operations.

    The mapping is guarded by a lock that is only held for lookups and
    mutations, never while a request is in flight.
    """

    def __init__(self, loader: Optional[OpenAPILoader] = None) -> None:
        self.loader = loader or OpenAPILoader()
        self._plugins: Dict[str, Plugin] = {}
        self._lock = threading.Lock()

    async def __aenter__(self) -> "PluginRegistry":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def register(
        self, name: str, catalog: SchemaCatalog, config: Optional[TransportConfig] = None
    ) -> Plugin:
        if not _PLUGIN_NAME.match(name or ""):
            raise RegistryError(
                RegistryErrorKind.INVALID_NAME,
                f"plugin name {name!r} may only contain letters, digits and underscores",
            )
        with self._lock:
            if name in self._plugins:
                raise RegistryError(
                    RegistryErrorKind.DUPLICATE_NAME, f"plugin {name!r} is already registered"
                )
            config = config or TransportConfig()
            plugin = Plugin(name=name, catalog=catalog, config=config, invoker=OperationInvoker(config))
            self._plugins[name] = plugin

        logger.info("Registered plugin: %s (%s operations)", name, len(catalog))
        return plugin

    async def import_plugin(
        self, name: str, source: DocumentSource, config: Optional[TransportConfig] = None
    ) -> Plugin:
        if name in self.names():
            raise RegistryError(
                RegistryErrorKind.DUPLICATE_NAME, f"plugin {name!r} is already registered"
            )
        override = config.base_url_override if config else None
        catalog = await self.loader.load(source, server_url_override=override)
        return self.register(name, catalog, config)

    async def unregister(self, name: str) -> None:
        with self._lock:
            plugin = self._plugins.pop(name, None)
        if plugin is None:
            raise RegistryError(RegistryErrorKind.UNKNOWN_PLUGIN, f"plugin {name!r} is not registered")
        await plugin.invoker.aclose()
        logger.info("Unregistered plugin: %s", name)

    def get(self, name: str) -> Plugin:
        with self._lock:
            plugin = self._plugins.get(name)
        if plugin is None:
            raise RegistryError(RegistryErrorKind.UNKNOWN_PLUGIN, f"plugin {name!r} is not registered")
        return plugin

    def names(self) -> List[str]:
        with self._lock:
            return list(self._plugins)

    def resolve(self, name: str, operation_id: str) -> tuple[Plugin, OperationDescriptor]:
        plugin = self.get(name)
        operation = plugin.catalog.get(operation_id)
        if operation is None:
            raise RegistryError(
                RegistryErrorKind.UNKNOWN_OPERATION,
                f"plugin {name!r} has no operation {operation_id!r}",
            )
        return plugin, operation

    async def invoke(
        self,
        name: str,
        operation_id: str,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InvocationResult:
        plugin, operation = self.resolve(name, operation_id)
        return await plugin.invoker.invoke(
            operation, arguments, deadline=deadline, cancel_event=cancel_event
        )

    async def invoke_function(
        self,
        function_name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InvocationResult:
        name, _, operation_id = function_name.partition(FUNCTION_SEPARATOR)
        return await self.invoke(
            name, operation_id, arguments, deadline=deadline, cancel_event=cancel_event
        )

    def function_definitions(self) -> List[Dict[str, Any]]:
        with self._lock:
            plugins = list(self._plugins.values())
        return [
            function_definition(operation, plugin.function_name(operation))
            for plugin in plugins
            for operation in plugin.catalog
        ]

    async def aclose(self) -> None:
        with self._lock:
            plugins = list(self._plugins.values())
            self._plugins.clear()
        for plugin in plugins:
            await plugin.invoker.aclose()
