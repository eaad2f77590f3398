"""
Tests for PluginRegistry

Verifies two-stage resolution, registration rules, unregistering and safe
concurrent use of the registry.
"""
import asyncio
import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from openapi_plugins.catalog import SchemaParseError, SchemaParseErrorKind
from openapi_plugins.models import Success, TransportConfig
from openapi_plugins.registry import PluginRegistry, RegistryError, RegistryErrorKind


@pytest.fixture
def registry():
    registry = PluginRegistry()
    yield registry
    asyncio.run(registry.aclose())


class TestRegister:
    """Registering catalogs under plugin names."""

    @pytest.mark.asyncio
    async def test_register_then_invoke(self, registry, orders_catalog, recorder):
        recorder.body = '[{"id":1},{"id":2}]'
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))

        result = await registry.invoke("OrderService", "GetAllOrders", {})

        assert result == Success(status_code=200, body='[{"id":1},{"id":2}]')
        assert recorder.requests[0].method == "GET"
        assert str(recorder.requests[0].url) == "http://localhost:5275/api/orders"
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_create_order_through_registry(self, registry, orders_catalog, recorder):
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))
        order = {"Id": 12, "Product": "Widget1", "Quantity": 10}

        await registry.invoke("OrderService", "CreateOrder", {"body": order})

        assert recorder.requests[0].method == "POST"
        assert json.loads(recorder.requests[0].content) == order
        await registry.aclose()

    def test_duplicate_name(self, registry, orders_catalog):
        first = registry.register("OrderService", orders_catalog)
        with pytest.raises(RegistryError) as exc_info:
            registry.register("OrderService", orders_catalog)

        assert exc_info.value.kind == RegistryErrorKind.DUPLICATE_NAME
        assert registry.get("OrderService") is first

    @pytest.mark.parametrize("name", ["", "Order Service", "orders-api", "orders.v1"])
    def test_invalid_name(self, registry, orders_catalog, name):
        with pytest.raises(RegistryError) as exc_info:
            registry.register(name, orders_catalog)
        assert exc_info.value.kind == RegistryErrorKind.INVALID_NAME
        assert registry.names() == []


class TestResolution:
    """Plugin name first, then operation id."""

    @pytest.mark.asyncio
    async def test_unknown_plugin_never_reaches_transport(self, registry, orders_catalog, recorder):
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))

        with pytest.raises(RegistryError) as exc_info:
            await registry.invoke("Billing", "GetAllOrders", {})

        assert exc_info.value.kind == RegistryErrorKind.UNKNOWN_PLUGIN
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_unknown_operation(self, registry, orders_catalog, recorder):
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))

        with pytest.raises(RegistryError) as exc_info:
            await registry.invoke("OrderService", "DeleteOrder", {"id": 1})

        assert exc_info.value.kind == RegistryErrorKind.UNKNOWN_OPERATION
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_unregister(self, registry, orders_catalog, recorder):
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))
        await registry.unregister("OrderService")

        with pytest.raises(RegistryError) as exc_info:
            await registry.invoke("OrderService", "GetAllOrders", {})
        assert exc_info.value.kind == RegistryErrorKind.UNKNOWN_PLUGIN

        with pytest.raises(RegistryError) as exc_info:
            await registry.unregister("OrderService")
        assert exc_info.value.kind == RegistryErrorKind.UNKNOWN_PLUGIN

    @pytest.mark.asyncio
    async def test_name_can_be_reused_after_unregister(self, registry, orders_catalog, recorder):
        registry.register("OrderService", orders_catalog)
        await registry.unregister("OrderService")
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))

        result = await registry.invoke("OrderService", "GetOrderById", {"id": 3})

        assert result.ok
        assert recorder.requests[0].url.path == "/api/orders/3"
        await registry.aclose()


class TestImportPlugin:
    """Loading and registering in one step."""

    @pytest.mark.asyncio
    async def test_import_from_path_with_override(self, registry, orders_path, recorder):
        config = TransportConfig(base_url_override="http://localhost:6000/", transport=recorder.transport())
        plugin = await registry.import_plugin("OrderService", orders_path, config)

        assert plugin.catalog.server_base_url == "http://localhost:6000/"
        await registry.invoke("OrderService", "GetAllOrders")
        assert str(recorder.requests[0].url) == "http://localhost:6000/api/orders"
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_failed_import_leaves_registry_intact(self, registry, orders_catalog, orders_document, tmp_path):
        registry.register("OrderService", orders_catalog)
        del orders_document["paths"]["/api/orders"]["get"]["operationId"]
        broken = tmp_path / "broken.json"
        broken.write_text(json.dumps(orders_document), encoding="utf-8")

        with pytest.raises(SchemaParseError) as exc_info:
            await registry.import_plugin("Broken", broken)

        assert exc_info.value.kind == SchemaParseErrorKind.MISSING_OPERATION_ID
        assert registry.names() == ["OrderService"]
        assert len(registry.get("OrderService").catalog) == 3
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_import_under_taken_name(self, registry, orders_catalog, orders_path):
        registry.register("OrderService", orders_catalog)
        with pytest.raises(RegistryError) as exc_info:
            await registry.import_plugin("OrderService", orders_path)
        assert exc_info.value.kind == RegistryErrorKind.DUPLICATE_NAME
        await registry.aclose()


class TestFunctions:
    """Qualified function names exposed to an agent loop."""

    def test_function_definitions(self, registry, orders_catalog):
        registry.register("OrderService", orders_catalog)

        names = [definition["name"] for definition in registry.function_definitions()]

        assert names == ["OrderService-GetAllOrders", "OrderService-CreateOrder", "OrderService-GetOrderById"]

    @pytest.mark.asyncio
    async def test_invoke_function(self, registry, orders_catalog, recorder):
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))

        result = await registry.invoke_function("OrderService-GetOrderById", {"id": 5})

        assert result.ok
        assert recorder.requests[0].url.path == "/api/orders/5"
        await registry.aclose()


class TestConcurrency:
    """Concurrent invocations and registrations."""

    @pytest.mark.asyncio
    async def test_concurrent_invocations(self, registry, orders_catalog, recorder):
        registry.register("OrderService", orders_catalog, TransportConfig(transport=recorder.transport()))

        results = await asyncio.gather(
            *(registry.invoke("OrderService", "GetOrderById", {"id": i}) for i in range(20))
        )

        assert all(result.ok for result in results)
        assert sorted(r.url.path for r in recorder.requests) == sorted(f"/api/orders/{i}" for i in range(20))
        await registry.aclose()

    def test_concurrent_registration_of_same_name(self, registry, orders_catalog):
        def attempt(_):
            try:
                registry.register("OrderService", orders_catalog)
                return True
            except RegistryError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(16)))

        assert outcomes.count(True) == 1
        assert registry.names() == ["OrderService"]

    def test_concurrent_registration_of_distinct_names(self, registry, orders_catalog):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: registry.register(f"Plugin_{i}", orders_catalog), range(16)))

        assert sorted(registry.names()) == sorted(f"Plugin_{i}" for i in range(16))

    @pytest.mark.asyncio
    async def test_unregister_waits_for_in_flight_invoke(self, registry, orders_catalog, recorder):
        """An invocation that already resolved its plugin completes before the client closes."""
        gate = asyncio.Event()

        async def credentials():
            await gate.wait()
            return {"access_token": "t0k"}

        config = TransportConfig(
            auth={"type": "bearer"}, credentials=credentials, transport=recorder.transport()
        )
        registry.register("OrderService", orders_catalog, config)

        invocation = asyncio.ensure_future(registry.invoke("OrderService", "GetOrderById", {"id": 7}))
        await asyncio.sleep(0)
        removal = asyncio.ensure_future(registry.unregister("OrderService"))
        await asyncio.sleep(0)

        assert registry.names() == []
        assert not removal.done()

        gate.set()
        result = await invocation
        await removal

        assert result.ok
        assert recorder.requests[0].url.path == "/api/orders/7"
        assert recorder.requests[0].headers["Authorization"] == "Bearer t0k"
