"""CLI entry point for importing and invoking OpenAPI plugins."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from .catalog import OpenAPILoader, SchemaParseError
from .config import Settings, get_settings
from .invoker import InvocationError
from .logging import configure_logging
from .models import Success, TransportConfig
from .registry import PluginRegistry, RegistryError
from .server import build_server


def _header(text: str) -> Tuple[str, str]:
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    return key, value


def _key_value(text: str) -> Tuple[str, Any]:
    key, raw = _header(text)
    try:
        value: Any = json.loads(raw)
    except ValueError:
        value = raw
    return key, value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openapi-plugins", description="Import OpenAPI documents as callable plugins"
    )
    parser.add_argument("--plugin", default="api", help="Plugin name to register the document under")
    parser.add_argument("--server-url", help="Override the document's server URL")
    parser.add_argument(
        "--header", action="append", type=_header, default=[], help="Default header KEY=VALUE"
    )
    parser.add_argument("--bearer-token", help="Send Authorization: Bearer <token>")
    parser.add_argument("--timeout", type=float, help="Request timeout in seconds")
    parser.add_argument(
        "--insecure", action="store_true", help="Disable TLS certificate verification"
    )
    parser.add_argument("--log-level", help="Logging level (default from settings)")

    commands = parser.add_subparsers(dest="command", required=True)

    operations = commands.add_parser("operations", help="List the operations of a document")
    operations.add_argument("source", help="OpenAPI document URL or path")

    functions = commands.add_parser("functions", help="Print function definitions as JSON")
    functions.add_argument("source", help="OpenAPI document URL or path")

    invoke = commands.add_parser("invoke", help="Invoke one operation")
    invoke.add_argument("source", help="OpenAPI document URL or path")
    invoke.add_argument("operation_id")
    invoke.add_argument(
        "--arg", dest="arguments", action="append", type=_key_value, default=[],
        help="Argument KEY=VALUE (VALUE is parsed as JSON when possible)",
    )
    invoke.add_argument("--body", type=json.loads, help="JSON request body")
    invoke.add_argument("--deadline", type=float, help="Cancel the call after this many seconds")

    serve = commands.add_parser("serve", help="Expose the operations as MCP tools over stdio")
    serve.add_argument("source", help="OpenAPI document URL or path")

    return parser


def transport_config(args: argparse.Namespace, settings: Settings) -> TransportConfig:
    auth: Optional[Dict[str, Any]] = None
    credentials = None
    if args.bearer_token:
        token = args.bearer_token
        auth = {"type": "bearer"}
        credentials = lambda: {"access_token": token}  # noqa: E731
    return settings.transport_config(
        base_url_override=args.server_url,
        headers=dict(args.header) or None,
        timeout=args.timeout,
        verify_tls=False if args.insecure else None,
        auth=auth,
        credentials=credentials,
    )


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    loader = OpenAPILoader(
        cache_seconds=settings.openapi_cache_seconds,
        timeout=settings.openapi_fetch_timeout_seconds,
        verify_tls=settings.verify_tls and not args.insecure,
    )
    async with PluginRegistry(loader) as registry:
        plugin = await registry.import_plugin(args.plugin, args.source, transport_config(args, settings))

        if args.command == "operations":
            for operation in plugin.catalog:
                params = ", ".join(
                    f"{p.name}{'' if p.required else '?'}:{p.type}" for p in operation.parameters
                )
                body = " +body" if operation.request_body_schema is not None else ""
                print(
                    f"{operation.operation_id:<30} {operation.method.value:<6} "
                    f"{operation.path_template} ({params}){body}"
                )
            return 0

        if args.command == "functions":
            print(json.dumps(registry.function_definitions(), indent=2))
            return 0

        if args.command == "serve":
            mcp = build_server(registry, settings)
            await mcp.run_stdio_async()
            return 0

        arguments: Dict[str, Any] = dict(args.arguments)
        if args.body is not None:
            arguments["body"] = args.body
        result = await registry.invoke(
            args.plugin, args.operation_id, arguments, deadline=args.deadline
        )
        if isinstance(result, Success):
            print(result.status_code)
            print(result.body)
            return 0
        status = f" ({result.status_code})" if result.status_code is not None else ""
        print(f"{result.kind.value}{status}: {result.message}", file=sys.stderr)
        return 1


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    try:
        code = asyncio.run(_run(args, settings))
    except (SchemaParseError, InvocationError, RegistryError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
