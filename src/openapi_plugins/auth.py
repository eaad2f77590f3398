"""Credential injection for outgoing plugin requests."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import CredentialSupplier

logger = logging.getLogger(__name__)

AuthParts = Tuple[Dict[str, str], Dict[str, str]]

_SCHEMES = ("bearer", "api_key")


class CredentialInjector:
    """Turns supplied credentials into auth headers or query parameters.

    Supported ``auth`` descriptors::

        {"type": "bearer"}
        {"type": "api_key", "name": "X-API-Key", "in": "header"}
        {"type": "api_key", "name": "code", "in": "query", "value_template": "{key}"}

    The supplier is called once per request so rotated secrets are picked up.
    """

    def __init__(
        self, auth: Optional[Dict[str, Any]] = None, supplier: Optional[CredentialSupplier] = None
    ) -> None:
        self.auth = auth or {}
        self.scheme = self.auth.get("type", "bearer")
        self.supplier = supplier
        if self.scheme not in _SCHEMES:
            logger.warning("Unsupported auth type %r; credentials will not be attached", self.scheme)

    async def resolve(self) -> AuthParts:
        if self.supplier is None:
            return {}, {}
        credentials = self.supplier()
        if inspect.isawaitable(credentials):
            credentials = await credentials
        return self.build_auth(credentials)

    def build_auth(self, credentials: Optional[Mapping[str, Any]]) -> AuthParts:
        if not credentials:
            return {}, {}
        if self.scheme == "bearer":
            token = credentials.get("access_token") or _first_value(credentials)
            return ({"Authorization": f"Bearer {token}"} if token else {}), {}
        if self.scheme == "api_key":
            return self._api_key(credentials)
        return {}, {}

    def _api_key(self, credentials: Mapping[str, Any]) -> AuthParts:
        template = self.auth.get("value_template")
        value = template.format(**credentials) if template else _first_value(credentials)
        if value is None:
            return {}, {}
        parameter = {self.auth.get("name", "Authorization"): str(value)}
        if self.auth.get("in", "header") == "query":
            return {}, parameter
        return parameter, {}


def _first_value(credentials: Mapping[str, Any]) -> Optional[str]:
    return next((str(value) for value in credentials.values() if value), None)
