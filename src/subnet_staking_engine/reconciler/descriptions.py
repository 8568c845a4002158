"""Structured subnet descriptions.

Some subnets publish their description as a JSON document of the form
`{"metadata_": {"description": ..., "endpointUrl": ..., "type": "Agent", ...}}`
instead of plain text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

SUBNET_TYPES = ("Agent", "API", "MCP")


@dataclass(frozen=True)
class StructuredDescription:
    """Machine-readable subnet details carried in a JSON description."""

    endpoint_url: str | None = None
    author: str | None = None
    input_type: str | None = None
    output_type: str | None = None
    skills: tuple[str, ...] = ()
    subnet_type: str | None = None
    category: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StructuredDescription:
        def text(key: str) -> str | None:
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                return None
            return value.strip()

        skills = data.get("skills")
        subnet_type = text("type")
        return cls(
            endpoint_url=text("endpointUrl"),
            author=text("author"),
            input_type=text("inputType"),
            output_type=text("outputType"),
            skills=tuple(str(s) for s in skills) if isinstance(skills, list) else (),
            subnet_type=subnet_type if subnet_type in SUBNET_TYPES else None,
            category=text("category"),
        )


def parse_structured_description(
    description: str | None,
) -> tuple[str | None, StructuredDescription | None]:
    """Split a possibly-structured description into text and details.

    Returns the plain description and, when the input is a JSON document
    with a `metadata_` object whose `description` is a string, the parsed
    details. Anything else is returned verbatim with no details.

    Example:
        >>> parse_structured_description('{"metadata_": {"description": "Hi", "type": "MCP"}}')
        ('Hi', StructuredDescription(..., subnet_type='MCP', ...))
        >>> parse_structured_description("plain text")
        ('plain text', None)
    """
    if not description:
        return None, None
    text = description.strip()
    if not text.startswith("{"):
        return description, None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return description, None

    meta = parsed.get("metadata_") if isinstance(parsed, dict) else None
    if not isinstance(meta, dict) or not isinstance(meta.get("description", ""), str):
        return description, None
    return (meta.get("description") or None), StructuredDescription.from_dict(meta)
