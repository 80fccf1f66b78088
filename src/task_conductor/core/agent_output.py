"""Parsing of agent stdout lines (stream-json or free text) into typed items."""

import json
import re
from dataclasses import dataclass

BASH_PREVIEW_LENGTH = 80
_LINE_NUMBERED = re.compile(r"^\s*\d+\s+")


@dataclass
class AssistantText:
    text: str
    kind = "text"

    @property
    def content(self) -> str:
        return self.text


@dataclass
class ToolUse:
    name: str
    summary: str
    kind = "tool"

    @property
    def content(self) -> str:
        return self.summary


@dataclass
class SessionInit:
    session_id: str | None = None
    model: str | None = None
    kind = "init"

    @property
    def content(self) -> str:
        return f"Started session ({self.model})" if self.model else "Started session"


@dataclass
class ToolResult:
    text: str
    kind = "tool_result"

    @property
    def content(self) -> str:
        return self.text


@dataclass
class Unrecognized:
    raw: str
    kind = "raw"

    @property
    def content(self) -> str:
        return self.raw


AgentOutput = AssistantText | ToolUse | SessionInit | ToolResult | Unrecognized


def describe_tool(name: str, tool_input: dict | None) -> str:
    """Short human-readable summary of a tool invocation."""
    args = tool_input or {}
    path = args.get("path")

    if name == "Read" and args.get("file_path"):
        summary = f"Reading: {args['file_path']}"
        if args.get("offset") or args.get("limit"):
            start = args.get("offset") or 0
            end = start + args["limit"] if args.get("limit") else "end"
            summary += f" (lines {start}-{end})"
        return summary
    if name == "Edit" and args.get("file_path"):
        return f"Editing: {args['file_path']}"
    if name == "MultiEdit" and args.get("file_path"):
        return f"Multi-edit: {args['file_path']} ({len(args.get('edits') or [])} changes)"
    if name == "Write" and args.get("file_path"):
        return f"Writing: {args['file_path']}"
    if name == "Grep" and args.get("pattern"):
        summary = f'Searching: "{args["pattern"]}"'
        return f"{summary} in {path}" if path else summary
    if name == "Glob" and args.get("pattern"):
        summary = f"Finding: {args['pattern']}"
        return f"{summary} in {path}" if path else summary
    if name == "Bash" and args.get("command"):
        command = args["command"]
        suffix = "..." if len(command) > BASH_PREVIEW_LENGTH else ""
        return f"Running: {command[:BASH_PREVIEW_LENGTH]}{suffix}"
    if name == "LS" and path:
        return f"Listing: {path}"
    return f"Tool: {name}"


def parse_line(line: str) -> list[AgentOutput]:
    """Parse one stdout line. Returns an empty list for lines that are not shown."""
    stripped = line.strip()
    if not stripped:
        return []

    try:
        message = json.loads(stripped)
    except ValueError:
        return [Unrecognized(raw=line.rstrip("\n"))]
    if not isinstance(message, dict):
        return [Unrecognized(raw=line.rstrip("\n"))]

    kind = message.get("type")
    if kind == "assistant":
        return _parse_blocks((message.get("message") or {}).get("content") or [])
    if kind == "tool_use":
        name = message.get("name", "")
        return [ToolUse(name=name, summary=describe_tool(name, message.get("input")))]
    if kind == "system" and message.get("subtype") == "init":
        return [SessionInit(session_id=message.get("session_id"), model=message.get("model"))]
    if kind == "tool_result":
        content = message.get("content")
        if isinstance(content, str) and "\n" in content and _LINE_NUMBERED.match(content):
            return [ToolResult(text=content)]
        return []
    # user echoes, result summaries and other stream-json bookkeeping
    return []


def _parse_blocks(blocks: list) -> list[AgentOutput]:
    items: list[AgentOutput] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and block.get("text"):
            items.append(AssistantText(text=block["text"]))
        elif block.get("type") == "tool_use":
            name = block.get("name", "")
            items.append(ToolUse(name=name, summary=describe_tool(name, block.get("input"))))
    return items
