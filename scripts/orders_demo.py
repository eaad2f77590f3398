"""Import the Orders API as the OrderService plugin and exercise it."""

from __future__ import annotations

import argparse
import asyncio
import json
import os

from pydantic import BaseModel, Field

from openapi_plugins.audit import log_sink
from openapi_plugins.config import get_settings
from openapi_plugins.logging import configure_logging
from openapi_plugins.models import Success
from openapi_plugins.registry import PluginRegistry


class Order(BaseModel):
    id: int = Field(..., alias="Id")
    product: str = Field(..., alias="Product", max_length=100)
    quantity: int = Field(..., alias="Quantity", ge=1, le=1000)


def _print_result(label: str, result: object) -> None:
    if isinstance(result, Success):
        print(f"{label}: {result.status_code} {result.body}")
    else:
        print(f"{label}: {result}")


async def _run(openapi_url: str, server_url: str) -> None:
    settings = get_settings()
    async with PluginRegistry() as registry:
        config = settings.transport_config(base_url_override=server_url, audit_sink=log_sink)
        await registry.import_plugin("OrderService", openapi_url, config)
        print(json.dumps(registry.function_definitions(), indent=2))

        _print_result("GetAllOrders", await registry.invoke("OrderService", "GetAllOrders"))

        order = Order(Id=12, Product="Widget1", Quantity=10)
        result = await registry.invoke(
            "OrderService", "CreateOrder", {"body": order.model_dump(by_alias=True)}
        )
        _print_result("CreateOrder", result)

        _print_result("GetOrderById", await registry.invoke("OrderService", "GetOrderById", {"id": 12}))


def main() -> None:
    parser = argparse.ArgumentParser(description="Drive the Orders API through its OpenAPI document")
    parser.add_argument(
        "--openapi-url",
        default=os.getenv("ORDERS_OPENAPI_URL", "http://localhost:5275/swagger/v1/swagger.json"),
        help="URL of the Orders API swagger.json",
    )
    parser.add_argument(
        "--server-url",
        default=os.getenv("ORDERS_SERVER_URL", "http://localhost:5275/"),
        help="Base URL requests are sent to",
    )
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    asyncio.run(_run(args.openapi_url, args.server_url))


if __name__ == "__main__":
    main()
