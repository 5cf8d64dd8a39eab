"""Recover output field values from agent transcripts.

Agents are asked to finish with a JSON object holding the task's output
values, usually inside a ```json fence. Messages can be cut off mid-object,
so when strict parsing fails every complete ``"key": value`` pair is still
recovered.
"""

import json
import logging
import re
from typing import Any

from tasksync.models.agent import AgentMessage
from tasksync.models.task import OutputFieldRecord, OutputFieldType

logger = logging.getLogger(__name__)

JSON_BLOCK_RE = re.compile(r"```json\s*\n?([\s\S]*?)\n?\s*```")
ANY_BLOCK_RE = re.compile(r"```[\w-]*\s*\n?([\s\S]*?)\n?\s*```")
# A truncated message leaves its last fence open
OPEN_BLOCK_RE = re.compile(r"```(?:json)?[ \t]*\n?([\s\S]*)$")

STRING_PAIR_RE = re.compile(r'"([^"]+)"\s*:\s*"((?:[^"\\]|\\.)*)"')
LITERAL_PAIR_RE = re.compile(r'"([^"]+)"\s*:\s*(true|false|null|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)\s*[,}\n]')

FILE_WRITE_TOOLS = {"write", "edit", "create_file"}


def _unescape(value: str) -> str:
    return value.replace("\\n", "\n").replace('\\"', '"').replace("\\\\", "\\")


def extract_partial_json(raw: str) -> dict[str, Any]:
    """Complete key/value pairs of a possibly truncated JSON object.

    Pairs cut off by the truncation are dropped.
    """
    result: dict[str, Any] = {}
    for key, value in STRING_PAIR_RE.findall(raw):
        result[key] = _unescape(value)
    for key, literal in LITERAL_PAIR_RE.findall(raw):
        result[key] = json.loads(literal)
    return result


def _find_block(text: str) -> str | None:
    """The last ```json block, else the last fenced block of any kind."""
    for pattern in (JSON_BLOCK_RE, ANY_BLOCK_RE):
        blocks = pattern.findall(text)
        if blocks:
            return blocks[-1]
    match = OPEN_BLOCK_RE.search(text)
    if match:
        return match.group(1)
    # Bare object without a fence
    start = text.find("{")
    return text[start:] if start != -1 else None


def extract_json_block(text: str) -> dict[str, Any] | None:
    """Parse the answer block of a message, falling back to partial extraction."""
    raw = _find_block(text)
    if raw is None:
        return None
    raw = raw.strip()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return extract_partial_json(raw)
    return parsed if isinstance(parsed, dict) else None


def collect_written_files(messages: list[AgentMessage]) -> list[str]:
    """Paths touched by completed file write/edit tool calls, in order."""
    files: list[str] = []
    for message in messages:
        for part in message.parts:
            if part.type != "tool" or part.state is None or part.state.status != "completed":
                continue
            if (part.tool or "").lower() not in FILE_WRITE_TOOLS:
                continue
            params = part.state.input
            path = params.get("file_path") or params.get("path") or params.get("filename")
            if path:
                files.append(str(path))
    return files


def extract_output_from_messages(
    messages: list[AgentMessage], fields: list[OutputFieldRecord]
) -> list[OutputFieldRecord] | None:
    """Fill output fields from an agent transcript.

    Assistant messages are scanned newest-first and the first one yielding
    any key wins; values are never merged across messages. Keys match a
    field by exact id, then by case-insensitive name. File fields without a
    value default to the written file path(s).

    Returns:
        Updated copies of ``fields``, or None when nothing was found
    """
    assistant = [m for m in messages if m.role == "assistant"]
    if not assistant:
        return None

    written_files = collect_written_files(assistant)
    values: dict[str, Any] = {}
    for message in reversed(assistant):
        text = "\n".join(p.text for p in message.parts if p.type == "text" and p.text)
        if not text:
            continue
        extracted = extract_json_block(text)
        if extracted:
            values = extracted
            break

    if not values and not written_files:
        return None

    by_name = {key.lower(): value for key, value in values.items()}
    updated_fields = []
    for field in fields:
        updated = field.model_copy()
        if field.id in values:
            updated.value = values[field.id]
        elif field.name.lower() in by_name:
            updated.value = by_name[field.name.lower()]

        if field.type == OutputFieldType.FILE and not updated.value and written_files:
            updated.value = list(written_files) if field.multiple else written_files[0]
        updated_fields.append(updated)

    logger.debug(
        f"Extracted {len(values)} value(s) and {len(written_files)} file(s) for {len(fields)} output field(s)"
    )
    return updated_fields
