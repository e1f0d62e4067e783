"""Render fetched messages according to a rule's output projection."""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import yaml

from .assembler import DomainMessage, MimePart
from .exceptions import OutputConfigError
from .rules import OUTPUT_FORMATS, ContentField, OutputField, OutputProjection

logger = logging.getLogger(__name__)


def _limit_length(content: str, config: ContentField) -> Optional[str]:
    """Apply min/max length; None means the content is too short to show."""
    if config.min_length and len(content) < config.min_length:
        return None
    if config.max_length and len(content) > config.max_length:
        return content[:config.max_length]
    return content


def _body_value(message: DomainMessage, config: ContentField) -> str:
    matcher = ContentField(mode="filter", types=(config.type or "text/plain",))
    for part in message.mime_parts:
        if matcher.should_include(part.media_type):
            return _limit_length(part.content, config) or ""
    return ""


def _mime_part_value(part: MimePart, config: ContentField) -> Optional[Dict[str, Any]]:
    value: Dict[str, Any] = {}
    if config.show_types:
        value["type"] = part.media_type
    if part.filename:
        value["filename"] = part.filename
    value["size"] = part.size
    if config.show_content:
        content = _limit_length(part.content, config)
        if content is None:
            return None
        value["content"] = content
    elif config.min_length and len(part.content) < config.min_length:
        return None
    return value


def _mime_parts_value(message: DomainMessage, config: ContentField) -> List[Dict[str, Any]]:
    if config.mode == "text_only":
        parts = [part for part in message.mime_parts if part.media_type == "text/plain"][:1]
    else:
        parts = [part for part in message.mime_parts if config.should_include(part.media_type)]

    values = []
    for part in parts:
        value = _mime_part_value(part, config)
        if value is not None:
            values.append(value)
    return values


def _field_value(message: DomainMessage, field: OutputField) -> Any:
    name = field.name
    if name == "seq":
        return message.seq_num
    if name == "uid":
        return message.uid
    if name == "subject":
        return message.subject
    if name in ("from", "to", "cc", "bcc"):
        addresses = message.from_ if name == "from" else getattr(message, name)
        return ", ".join(addresses)
    if name == "date":
        return message.date.isoformat() if message.date else ""
    if name == "flags":
        return sorted(message.flags)
    if name == "size":
        return message.size
    if name == "total_count":
        return message.total_count
    if name == "body":
        return _body_value(message, field.content or ContentField(type="text/plain"))
    if name == "mime_parts":
        return _mime_parts_value(message, field.content or ContentField(mode="full", show_types=True))
    raise OutputConfigError(f"unknown output field: {name}")


def project_message(message: DomainMessage, projection: OutputProjection) -> Dict[str, Any]:
    """Select the projected fields of a message, in projection order."""
    return {field.name: _field_value(message, field) for field in projection.fields}


def _flatten(value: Any) -> Any:
    """Make a projected value fit in one table or csv cell."""
    if isinstance(value, list):
        items = []
        for item in value:
            if isinstance(item, dict):
                label = item.get("type") or item.get("filename") or "part"
                items.append(item["content"] if "content" in item else f"{label} ({item['size']} bytes)")
            else:
                items.append(str(item))
        return "; ".join(items) if value and isinstance(value[0], dict) else ", ".join(items)
    return value


def _render_text(rows: List[Dict[str, Any]]) -> str:
    blocks = []
    for row in rows:
        lines = []
        for name, value in row.items():
            if name == "mime_parts":
                lines.append(f"{name}:")
                for part in value:
                    header = ", ".join(f"{k}={v}" for k, v in part.items() if k != "content")
                    lines.append(f"  - {header}")
                    if "content" in part:
                        lines.extend(f"      {line}" for line in part["content"].splitlines())
            elif name == "body":
                lines.append(f"{name}:")
                lines.extend(f"  {line}" for line in str(value).splitlines())
            else:
                lines.append(f"{name}: {_flatten(value)}")
        blocks.append("\n".join(lines))
    return ("\n" + "-" * 40 + "\n").join(blocks)


def render_messages(
    messages: Sequence[DomainMessage],
    projection: OutputProjection,
    format: Optional[str] = None,
) -> str:
    """Render messages as table, text, json, yaml or csv.

    Args:
        messages: Messages to render, in display order
        projection: Fields and default format
        format: Overrides the projection's format when given

    Returns:
        The rendered output, without a trailing newline
    """
    output_format = format or projection.format
    if output_format not in OUTPUT_FORMATS:
        raise OutputConfigError(f"invalid format: {output_format}")

    rows = [project_message(message, projection) for message in messages]
    logger.debug(f"Rendering {len(rows)} messages as {output_format}")

    if output_format == "json":
        return json.dumps(rows, indent=2, ensure_ascii=False, default=str)
    if output_format == "yaml":
        return yaml.safe_dump(rows, allow_unicode=True, sort_keys=False).rstrip("\n")
    if output_format == "text":
        return _render_text(rows) if rows else "No messages found."

    df = pd.DataFrame(
        [{name: _flatten(value) for name, value in row.items()} for row in rows],
        columns=projection.field_names,
    )
    if output_format == "csv":
        return df.to_csv(index=False).rstrip("\n")
    if df.empty:
        return "No messages found."
    return df.to_string(index=False)
