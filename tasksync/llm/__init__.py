"""Extraction of structured values from agent-generated text."""

from tasksync.llm.output_extraction import (
    collect_written_files,
    extract_json_block,
    extract_output_from_messages,
    extract_partial_json,
)

__all__ = [
    "collect_written_files",
    "extract_json_block",
    "extract_output_from_messages",
    "extract_partial_json",
]
