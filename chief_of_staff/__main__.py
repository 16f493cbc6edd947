"""Command-line front end for the agent engine.

Usage:
    python -m chief_of_staff run agents/business-health.md
    python -m chief_of_staff run agents/a.md agents/b.md --param folder="Week 1"
    python -m chief_of_staff run agents/1-1.md --param email=a@b.com --format json
    python -m chief_of_staff run agents/x.md --mcp-config mcp.json --context-file context.md

    python -m chief_of_staff tools                       # connect and list tools
    python -m chief_of_staff tools --mcp-config mcp.yaml --format json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any


def _parse_params(raw: list[str] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in raw or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            print(f"Invalid --param {item!r}; expected key=value", file=sys.stderr)
            sys.exit(1)
        params[key.strip()] = value
    return params


def _load_servers(path: str | None) -> list[Any]:
    from chief_of_staff.config import load_server_configs

    try:
        return load_server_configs(path)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Cannot load tool server config: {exc}", file=sys.stderr)
        sys.exit(1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# run subcommand
# ---------------------------------------------------------------------------


async def _run_agents(args: argparse.Namespace) -> list[Any]:
    from chief_of_staff.config import EngineConfig
    from chief_of_staff.rate_limit import RateLimiter
    from chief_of_staff.runner import arun_agent

    params = _parse_params(args.param)
    config = EngineConfig.from_env()
    if args.model:
        from dataclasses import replace

        config = replace(config, model=args.model)
    server_configs = _load_servers(args.mcp_config)
    context = Path(args.context_file).read_text() if args.context_file else ""
    limiter = RateLimiter(config.rate_limit)

    results = []
    for agent_file in args.agents:
        path = Path(agent_file)
        if not path.is_file():
            print(f"Agent file not found: {path}", file=sys.stderr)
            sys.exit(1)
        results.append(await arun_agent(
            path.read_text(),
            params,
            agent_name=path.stem,
            server_configs=server_configs,
            config=config,
            context=context,
            rate_limiter=limiter,
        ))
    return results


def cmd_run(args: argparse.Namespace) -> None:
    results = asyncio.run(_run_agents(args))

    if args.format == "json":
        print(json.dumps([r.to_dict() for r in results], indent=2, default=str))
    else:
        for r in results:
            print("=" * 80)
            status = "OK" if r.success else f"FAILED ({r.error_type})"
            print(f"{r.agent_name}: {status}  {r.duration_s:.1f}s  {r.turns} turns  "
                  f"{r.usage.get('total_tokens', 0)} tokens  {len(r.tool_calls)} tool calls")
            if r.server_failures:
                print(f"Unavailable tool servers: {', '.join(r.server_failures)}")
            print("=" * 80)
            print(r.output if r.success else r.error)
            print()

    if not all(r.success for r in results):
        sys.exit(2)


# ---------------------------------------------------------------------------
# tools subcommand
# ---------------------------------------------------------------------------


async def _list_tools(args: argparse.Namespace) -> dict[str, Any]:
    from chief_of_staff.config import EngineConfig
    from chief_of_staff.connections import ConnectionManager

    config = EngineConfig.from_env()
    async with ConnectionManager(config.connection) as manager:
        outcome = await manager.initialize(_load_servers(args.mcp_config))
        tools = [
            {"name": t["name"], "server": t["server"], "description": t["descriptor"].description}
            for t in outcome.registry.available_tools()
        ]
        return {
            "succeeded": outcome.succeeded,
            "failed": outcome.failed,
            "failures": [{"name": f.name, "error": f.error, "type": f.error_type} for f in outcome.failures],
            "collisions": [c.tool for c in outcome.registry.collisions],
            "tools": tools,
        }


def cmd_tools(args: argparse.Namespace) -> None:
    report = asyncio.run(_list_tools(args))
    if args.format == "json":
        print(json.dumps(report, indent=2))
        return
    print(f"Connected: {report['succeeded']}  Failed: {report['failed']}")
    for failure in report["failures"]:
        print(f"  ! {failure['name']}: [{failure['type']}] {failure['error']}")
    if report["collisions"]:
        print(f"Duplicate tool names skipped: {', '.join(report['collisions'])}")
    print(f"\n{'Server':<24} Tool")
    print("-" * 60)
    for tool in sorted(report["tools"], key=lambda t: (t["server"], t["name"])):
        print(f"{tool['server']:<24} {tool['name']}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="chief_of_staff",
        description="Run natural-language agents against an LLM with MCP tool servers",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # run
    run_p = sub.add_parser("run", help="Run one or more agent instruction files in sequence")
    run_p.add_argument("agents", nargs="+", help="Agent instruction files (markdown)")
    run_p.add_argument("--param", action="append", metavar="KEY=VALUE", help="Run parameter (repeatable)")
    run_p.add_argument("--mcp-config", help="Tool server config (.json/.yaml); defaults to $MCP_CONFIG_PATH")
    run_p.add_argument("--context-file", help="File whose text is sent as system context")
    run_p.add_argument("--model", help="Override the model (litellm model string)")
    run_p.add_argument("--format", choices=["text", "json"], default="text", help="Output format")

    # tools
    tools_p = sub.add_parser("tools", help="Connect to tool servers and list their tools")
    tools_p.add_argument("--mcp-config", help="Tool server config (.json/.yaml); defaults to $MCP_CONFIG_PATH")
    tools_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.verbose)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "tools":
        cmd_tools(args)


if __name__ == "__main__":
    main()
