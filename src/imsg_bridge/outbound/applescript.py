"""AppleScript snippets for driving Messages.app through ``osascript``."""
from __future__ import annotations

from typing import List, Optional

from ..process import CommandRunner, run_command

OSASCRIPT = "/usr/bin/osascript"
CHAT_SCRIPT_TIMEOUT = 15.0
SERVICE_SCRIPT_TIMEOUT = 30.0
GENERIC_SCRIPT_TIMEOUT = 15.0

SERVICE_TYPES = {"imessage": "iMessage", "sms": "SMS"}


def escape_applescript_string(value: Optional[str]) -> str:
    if not value:
        return ""
    return (
        str(value)
        .replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def service_preference(service: Optional[str]) -> List[str]:
    key = (service or "auto").strip().lower()
    if key in SERVICE_TYPES:
        return [SERVICE_TYPES[key]]
    return ["iMessage", "SMS"]


def _payload_lines(recipient: str, text: str, file_path: Optional[str], *, delay: bool = False) -> List[str]:
    lines: List[str] = []
    if text:
        lines.append(f'send "{escape_applescript_string(text)}" to {recipient}')
    if file_path:
        if delay:
            lines.append("delay 0.1")
        # attachments must be coerced to an alias before sending
        lines.append(f'set theAttachment to POSIX file "{escape_applescript_string(file_path)}" as alias')
        lines.append(f"send theAttachment to {recipient}")
    return lines


def _tell(lines: List[str]) -> str:
    return "\n".join(['tell application "Messages"', *lines, "end tell"])


def chat_script(chat_id: str, text: str, file_path: Optional[str]) -> str:
    """Send into an existing conversation addressed by its chat id."""
    lines = [f'set theChat to chat id "{escape_applescript_string(chat_id)}"']
    lines.extend(_payload_lines("theChat", text, file_path))
    return _tell(lines)


def new_chat_script(service_type: str, handle: str, text: str, file_path: Optional[str]) -> str:
    """Create a fresh text chat with ``handle`` on one service and send into it."""
    lines = [
        f"set targetService to 1st service whose service type is {service_type}",
        f'set targetBuddy to buddy "{escape_applescript_string(handle)}" of targetService',
        "set theChat to make new text chat with properties {participants:{targetBuddy}}",
        "delay 0.1",
    ]
    lines.extend(_payload_lines("theChat", text, file_path, delay=True))
    return _tell(lines)


def service_buddy_script(service_type: str, handle: str, text: str, file_path: Optional[str]) -> str:
    lines = [
        f"set targetService to 1st service whose service type is {service_type}",
        f'set targetBuddy to buddy "{escape_applescript_string(handle)}" of targetService',
    ]
    lines.extend(_payload_lines("targetBuddy", text, file_path))
    return _tell(lines)


def generic_buddy_script(handle: str, text: str, file_path: Optional[str]) -> str:
    recipient = f'buddy "{escape_applescript_string(handle)}"'
    return _tell(_payload_lines(recipient, text, file_path))


async def run_applescript(script: str, timeout: float, runner: CommandRunner = run_command) -> str:
    return await runner([OSASCRIPT, "-e", script], timeout)


__all__ = [
    "CHAT_SCRIPT_TIMEOUT",
    "GENERIC_SCRIPT_TIMEOUT",
    "SERVICE_SCRIPT_TIMEOUT",
    "chat_script",
    "escape_applescript_string",
    "generic_buddy_script",
    "new_chat_script",
    "run_applescript",
    "service_buddy_script",
    "service_preference",
]
