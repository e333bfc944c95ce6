"""Chat text-command parser and help table."""

from __future__ import annotations

from dataclasses import dataclass

# Commands taking no argument; anything after them makes the text a prompt.
_BARE_COMMANDS = frozenset({"help", "projects", "status", "stop", "clear"})
# Commands whose argument is optional or required.
_ARG_COMMANDS = frozenset({"project", "session", "retry"})


@dataclass
class ParsedCommand:
    """A recognised chat command."""

    name: str
    arg: str
    raw: str


def parse_command(text: str) -> ParsedCommand | None:
    """Parse a chat command, with or without a leading '/'.

    Matching is case-insensitive on the command word; the argument
    keeps its original case (project names, session ids). Returns None
    when the text should be treated as a prompt.
    """
    stripped = text.strip()
    body = stripped[1:] if stripped.startswith("/") else stripped
    word, _, rest = body.partition(" ")
    name = word.lower()
    arg = rest.strip()

    if name in _BARE_COMMANDS and not arg:
        return ParsedCommand(name=name, arg="", raw=stripped)
    if name == "project":
        return ParsedCommand(name=name, arg=arg, raw=stripped)
    if name in _ARG_COMMANDS and arg:
        return ParsedCommand(name=name, arg=arg, raw=stripped)
    return None


COMMAND_HELP: dict[str, str] = {
    "projects": "List Claude Code projects",
    "project": "project [NAME|PATH]: pick a project (no argument shows the selector)",
    "session": "session ID|new: resume a session by id prefix, or start fresh",
    "status": "Show the current project, session and run state",
    "stop": "Stop the running Claude task",
    "clear": "Clear the session and start a new conversation",
    "retry": "retry RETRY_ID: re-run a blocked request with full permissions",
    "help": "Show this help message",
}


def format_help() -> str:
    lines = ["Claude Code bridge commands:", ""]
    for name, text in COMMAND_HELP.items():
        lines.append(f"  {name:<10} {text}")
    lines.append("")
    lines.append("Anything else is sent to Claude as a prompt.")
    return "\n".join(lines)
