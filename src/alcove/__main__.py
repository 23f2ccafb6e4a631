"""CLI entry point for the alcove command."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from .config import AppConfig, _get_config_path, load_config


def _print_setup_guide(config_path: Path) -> None:
    print(
        f"\nTo get started, create {config_path} with:\n\n"
        "ai:\n"
        '  default_model: "gpt-4o-mini"\n'
        '  system_prompt: "You are a helpful assistant."\n'
        "providers:\n"
        '  - id: "openai"\n'
        '    base_url: "https://api.openai.com/v1"\n'
        '    api_key_env: "OPENAI_API_KEY"\n'
        '    models: ["gpt-4o-mini"]\n'
        "mcp_servers:\n"
        '  - name: "tools"\n'
        '    url: "https://your-mcp-server.example"\n'
        "\nOr set environment variables:\n"
        "  ALCOVE_MODEL=gpt-4o-mini\n"
        "  OPENAI_API_KEY=your-api-key\n",
        file=sys.stderr,
    )


def _load_config_or_exit() -> tuple[Path, AppConfig]:
    config_path = _get_config_path()
    if not config_path.exists():
        print(f"No configuration file found at {config_path}", file=sys.stderr)
        _print_setup_guide(config_path)
        sys.exit(1)
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        _print_setup_guide(config_path)
        sys.exit(1)
    return config_path, config


def _build_ai_service(config: AppConfig):
    from .services.ai_service import AIService
    from .services.mcp_manager import McpManager
    from .services.tool_executor import ToolExecutor
    from .services.tool_store import McpToolStore
    from .tools import ToolRegistry, register_default_tools

    registry = ToolRegistry()
    register_default_tools(registry)
    executor = ToolExecutor(McpManager(config.mcp_servers, McpToolStore()), registry)
    return AIService(config, executor)


async def _validate_ai_connection(config: AppConfig) -> None:
    ai_service = _build_ai_service(config)
    valid, message, models = await ai_service.validate_connection(config.ai.default_model)
    if valid:
        print(f"AI connection: OK ({config.ai.default_model})")
        if models:
            print(f"  Available models: {', '.join(models[:5])}")
    else:
        print(f"AI connection: WARNING - {message}", file=sys.stderr)
        print("  The app will start, but chat may not work until the AI service is reachable.", file=sys.stderr)


async def _test_connection(config: AppConfig) -> None:
    ai_service = _build_ai_service(config)
    model = config.ai.default_model
    provider = config.provider_for_model(model)

    print("Config:")
    print(f"  Provider: {provider.id if provider else '(none)'}")
    print(f"  Endpoint: {provider.base_url if provider else '(none)'}")
    print(f"  Model:    {model or '(none)'}")

    print("\n1. Listing models...")
    valid, message, models = await ai_service.validate_connection(model)
    if not valid:
        print(f"   FAILED - {message}")
        sys.exit(1)
    print(f"   OK - {len(models)} model(s) available")
    for m in models[:10]:
        print(f"     - {m}")

    print(f"\n2. Sending test prompt to {model}...")
    try:
        response = await ai_service.get_client(model).chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": "Say hello in one sentence."}],
            max_tokens=50,
        )
        reply = response.choices[0].message.content or "(empty response)"
        print(f"   OK - Response: {reply.strip()}")
    except Exception as e:
        print(f"   FAILED - {e}")
        sys.exit(1)

    print("\nAll checks passed.")


async def _verify_mcp(config: AppConfig, name: str) -> None:
    from .services.mcp_verifier import McpServerStatus, verify_mcp_server_extended

    server = next((s for s in config.mcp_servers if s.name == name), None)
    if server is None:
        print(f"Unknown MCP server '{name}'. Configured: {', '.join(config.mcp_server_names()) or '(none)'}")
        sys.exit(1)

    print(f"Verifying MCP server '{name}' at {server.url}...")
    result = await verify_mcp_server_extended(server.url, server.auth_token)
    if result.status is not McpServerStatus.SUCCESS:
        print(f"   FAILED - {result.status.value}")
        sys.exit(1)

    info = result.server_info or {}
    print(f"   OK - {info.get('name', 'unknown server')} {info.get('version', '')}".rstrip())
    definitions = result.definitions
    if definitions is not None:
        print(f"   Tools: {len(definitions.tools)}")
        for tool in definitions.tools:
            print(f"     - {tool.name}")
        print(f"   Resources: {len(definitions.resources)}, prompts: {len(definitions.prompts)}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="alcove", description="Alcove - streaming chat with MCP tools")
    parser.add_argument("--test", action="store_true", help="Test connection settings and exit")
    parser.add_argument("--verify-mcp", metavar="NAME", help="Check a configured MCP server and list its tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config_path, config = _load_config_or_exit()

    if args.test:
        asyncio.run(_test_connection(config))
        return
    if args.verify_mcp:
        asyncio.run(_verify_mcp(config, args.verify_mcp))
        return

    print(f"Config loaded from {config_path}")
    print(f"  Model: {config.ai.default_model or '(none)'}")
    print(f"  Data dir: {config.app.data_dir}")
    if config.mcp_servers:
        print(f"  MCP servers: {', '.join(config.mcp_server_names())}")

    try:
        asyncio.run(_validate_ai_connection(config))
    except Exception:
        print("AI connection: Could not validate (will try on first request)", file=sys.stderr)

    from .app import create_app

    app = create_app(config)

    url = f"http://{config.app.host}:{config.app.port}"
    print(f"\nStarting Alcove at {url}")

    if config.app.host in ("0.0.0.0", "::"):
        print("  WARNING: Binding to all interfaces. The app is accessible from the network.", file=sys.stderr)

    uvicorn.run(app, host=config.app.host, port=config.app.port, log_level="debug" if args.verbose else "info")


if __name__ == "__main__":
    main()
