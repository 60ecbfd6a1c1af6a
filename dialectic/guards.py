"""
Dialectic Core — Response Shape Guards

Model output is checked against the shape the recipe step asked for
before anything is persisted. A wrong shape is a validation failure on
the job, never an exception escaping the worker.
"""

from __future__ import annotations

import json
from typing import Any

from dialectic.errors import ModelResponseValidationError
from scheduler.types import OutputType

HEADER_CONTEXT_KEYS = frozenset({
    "system_materials",
    "header_context_artifact",
    "context_for_documents",
})


def parse_json_object(content: str) -> dict[str, Any] | None:
    """Parse a JSON object, tolerating a ```json fenced block. None if not an object."""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    try:
        value = json.loads(text)
    except (ValueError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def is_header_context(value: Any) -> bool:
    """Exactly the three header-context keys, and no file manifest."""
    if not isinstance(value, dict):
        return False
    if "files_to_generate" in value:
        return False
    return set(value.keys()) == HEADER_CONTEXT_KEYS


def is_markdown_document(content: Any) -> bool:
    if not isinstance(content, str) or not content.strip():
        return False
    # A JSON object is not a document even when it arrives as text.
    return parse_json_object(content) is None


def validate_response(output_type: OutputType, content: Any) -> Any:
    """
    Return the validated value for `output_type` (the parsed object for
    header_context, the text for markdown_document). Raises
    ModelResponseValidationError on a shape mismatch.
    """
    if output_type == OutputType.HEADER_CONTEXT:
        value = parse_json_object(content) if isinstance(content, str) else content
        if value is None:
            raise ModelResponseValidationError(
                "Expected a header_context JSON object, got unparseable output",
                details={"output_type": output_type.value},
            )
        if not is_header_context(value):
            raise ModelResponseValidationError(
                "header_context object has the wrong keys",
                details={
                    "output_type": output_type.value,
                    "keys": sorted(value.keys()),
                    "expected": sorted(HEADER_CONTEXT_KEYS),
                },
            )
        return value

    if output_type == OutputType.MARKDOWN_DOCUMENT:
        if not is_markdown_document(content):
            raise ModelResponseValidationError(
                "Expected a non-empty markdown document",
                details={"output_type": output_type.value},
            )
        return content

    raise ModelResponseValidationError(f"Unknown output type '{output_type}'")


def should_enqueue_render(output_type: OutputType) -> tuple[bool, str]:
    """JSON artifacts are kept as-is; documents get a RENDER job."""
    if output_type == OutputType.HEADER_CONTEXT:
        return False, "is_json"
    return True, "is_markdown"
