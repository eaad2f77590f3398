import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from openapi_plugins.catalog import SchemaCatalog


FIXTURES = Path(__file__).parent / "fixtures"


class Recorder:
    """Mock upstream that remembers every request it receives."""

    def __init__(self, status_code: int = 200, body: str = "[]") -> None:
        self.status_code = status_code
        self.body = body
        self.requests: List[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            self.status_code, text=self.body, headers={"Content-Type": "application/json"}
        )


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def orders_path():
    return FIXTURES / "orders_openapi.json"


@pytest.fixture
def orders_document(orders_path):
    return json.loads(orders_path.read_text(encoding="utf-8"))


@pytest.fixture
def orders_catalog(orders_document):
    return SchemaCatalog.from_document(orders_document)


@pytest.fixture
def make_catalog():
    """Build a catalog from a ``paths`` object served at http://api.test."""

    def factory(
        paths: Dict[str, Any],
        servers: Optional[List[Dict[str, Any]]] = None,
        **extra: Any,
    ) -> SchemaCatalog:
        document = {
            "openapi": "3.0.1",
            "info": {"title": "Test API", "version": "1"},
            "servers": servers if servers is not None else [{"url": "http://api.test"}],
            "paths": copy.deepcopy(paths),
            **extra,
        }
        return SchemaCatalog.from_document(document)

    return factory
