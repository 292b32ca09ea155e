"""MCP server for issuerisk.

Exposes stored risk profiles to AI coding agents via the Model Context Protocol,
so an agent can check how risky similar work has been before touching an issue.
The server is read-only: profiles are computed by `issuerisk analyze`.

Usage:
    uv run python -m issuerisk.mcp_server [--db /path/to/issuerisk.db]

Configure in Claude Code (.mcp.json, written by `issuerisk init`):
    {
      "mcpServers": {
        "issuerisk": {
          "command": "issuerisk",
          "args": ["serve"]
        }
      }
    }
"""

from __future__ import annotations

import json
import os
import sys
import time
from dataclasses import asdict
from pathlib import Path

import mcp.server.stdio
import mcp.types as types
from mcp.server import Server

from issuerisk.config import Config
from issuerisk.query.similarity import SimilarityMatcher
from issuerisk.storage.repository import RiskStore
from issuerisk.telemetry import EventLog


def _resolve_db_path() -> Path:
    """Find the database, checking CLI args, env var, then current directory."""
    for i, arg in enumerate(sys.argv):
        if arg == "--db" and i + 1 < len(sys.argv):
            return Path(sys.argv[i + 1])

    env_db = os.getenv("ISSUERISK_DB_PATH")
    if env_db:
        return Path(env_db)

    return Path("issuerisk.db")


DB_PATH = _resolve_db_path()

server = Server("issuerisk")
event_log = EventLog()


def _get_store() -> RiskStore:
    if not DB_PATH.exists():
        raise FileNotFoundError(
            f"Database not found at {DB_PATH}. "
            "Run 'issuerisk analyze' first, or set ISSUERISK_DB_PATH."
        )
    store = RiskStore(DB_PATH)
    store.initialize()
    return store


def _resolve_repository(arguments: dict) -> str:
    repository = arguments.get("repository") or Config.load().repo
    if not repository:
        raise ValueError("No repository given and ISSUERISK_REPO is not set.")
    return repository


_REPOSITORY_PROPERTY = {
    "type": "string",
    "description": "Repository as owner/repo (defaults to ISSUERISK_REPO)",
}


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        types.Tool(
            name="get_risk_profile",
            description=(
                "Get the historical risk profile of a GitHub issue: risk level and score, "
                "the metrics behind it (linked PRs, files touched, lines changed, review friction), "
                "human-readable drivers, evidence links, hot files and keywords. "
                "Call this before starting work on an issue to gauge its blast radius."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "issue_number": {"type": "integer", "description": "Issue number"},
                    "repository": _REPOSITORY_PROPERTY,
                },
                "required": ["issue_number"],
            },
        ),
        types.Tool(
            name="find_similar_issues",
            description=(
                "Find past issues whose keywords overlap with an issue (or with a list of "
                "keywords), ranked by Jaccard similarity. Use this to learn how risky "
                "comparable work turned out to be and which files it touched."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "issue_number": {
                        "type": "integer",
                        "description": "Use this issue's stored keywords as the query",
                    },
                    "keywords": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Keywords to match when no issue number is given",
                    },
                    "limit": {"type": "integer", "description": "Max results (default 5)"},
                    "repository": _REPOSITORY_PROPERTY,
                },
            },
        ),
        types.Tool(
            name="search_risk_keywords",
            description=(
                "List stored risk profiles tagged with any of the given keywords, "
                "most shared keywords first. Example: ['auth', 'session', 'migration']"
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "keywords": {"type": "array", "items": {"type": "string"}},
                    "limit": {"type": "integer", "description": "Max results (default 10)"},
                    "repository": _REPOSITORY_PROPERTY,
                },
                "required": ["keywords"],
            },
        ),
        types.Tool(
            name="keyword_coverage",
            description="Show how many stored risk profiles carry keywords for similarity search.",
            inputSchema={
                "type": "object",
                "properties": {"repository": _REPOSITORY_PROPERTY},
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
    start = time.time()
    result: list[types.TextContent] = []
    error: str | None = None
    try:
        result = _dispatch_tool(name, arguments or {})
        return result
    except FileNotFoundError as e:
        error = str(e)
        result = [types.TextContent(type="text", text=f"Setup required: {e}")]
        return result
    except Exception as e:
        error = str(e)
        result = [types.TextContent(type="text", text=f"Error: {e}")]
        return result
    finally:
        duration_ms = int((time.time() - start) * 1000)
        properties = {"tool": name, "arguments": json.dumps(arguments, default=str)[:500]}
        if error:
            properties["error"] = error
        event_log.track_event("mcp.toolCall", properties, {"durationMs": float(duration_ms)})


def _dispatch_tool(name: str, arguments: dict) -> list[types.TextContent]:
    """Route a tool call to the appropriate handler."""
    if name == "get_risk_profile":
        return _handle_get_profile(_resolve_repository(arguments), int(arguments["issue_number"]))
    elif name == "find_similar_issues":
        return _handle_find_similar(
            _resolve_repository(arguments),
            arguments.get("issue_number"),
            arguments.get("keywords") or [],
            int(arguments.get("limit") or 5),
        )
    elif name == "search_risk_keywords":
        return _handle_search(
            _resolve_repository(arguments),
            arguments.get("keywords") or [],
            int(arguments.get("limit") or 10),
        )
    elif name == "keyword_coverage":
        return _handle_coverage(_resolve_repository(arguments))
    else:
        return [types.TextContent(type="text", text=f"Unknown tool: {name}")]


def _json_result(payload) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


def _handle_get_profile(repository: str, issue_number: int) -> list[types.TextContent]:
    store = _get_store()
    try:
        profile = store.get_profile(repository, issue_number)
    finally:
        store.dispose()
    if profile is None:
        return [types.TextContent(
            type="text",
            text=f"No risk profile stored for {repository}#{issue_number}. Run 'issuerisk analyze'.",
        )]
    return _json_result(profile.to_dict())


def _handle_find_similar(
    repository: str, issue_number: int | None, keywords: list[str], limit: int
) -> list[types.TextContent]:
    store = _get_store()
    try:
        if issue_number is not None:
            profile = store.get_profile(repository, int(issue_number))
            if profile is None or not profile.keywords:
                return [types.TextContent(type="text", text=f"No keywords stored for #{issue_number}.")]
            keywords = profile.keywords
        matches = SimilarityMatcher(store).find_similar(
            repository,
            keywords,
            exclude_issue_number=int(issue_number) if issue_number is not None else None,
            limit=limit,
        )
    finally:
        store.dispose()

    if not matches:
        return [types.TextContent(type="text", text="No similar issues found.")]
    return _json_result({
        "query_keywords": keywords,
        "count": len(matches),
        "similar_issues": [asdict(match) for match in matches],
    })


def _handle_search(repository: str, keywords: list[str], limit: int) -> list[types.TextContent]:
    store = _get_store()
    try:
        profiles = store.search_by_keywords(repository, keywords, limit=limit)
    finally:
        store.dispose()

    if not profiles:
        return [types.TextContent(type="text", text="No matching profiles.")]
    return _json_result({
        "keywords": keywords,
        "count": len(profiles),
        "profiles": [
            {
                "issue_number": p.issue_number,
                "issue_title": p.issue_title,
                "risk_level": p.risk_level,
                "risk_score": p.risk_score,
                "keywords": p.keywords,
                "drivers": p.drivers,
            }
            for p in profiles
        ],
    })


def _handle_coverage(repository: str) -> list[types.TextContent]:
    store = _get_store()
    try:
        stats = store.get_keyword_coverage(repository)
    finally:
        store.dispose()
    return _json_result({"repository": repository, **asdict(stats)})


async def main() -> None:
    async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


if __name__ == "__main__":
    import asyncio
    asyncio.run(main())
