"""Rule definitions and YAML rule-file loading.

A rule file holds one or more YAML documents. Each rule document has a
name, a search predicate, an output projection and an optional actions
block::

    name: "Recent reports"
    search:
      operator: and
      conditions:
        - subject_contains: "report"
        - within_days: 7
    output:
      format: table
      limit: 10
      fields:
        - uid
        - subject
        - body:
            type: text/plain
            max_length: 200
    actions:
      flags:
        add: [seen]
      move_to: Archive
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from .exceptions import ActionConfigError, OutputConfigError, RuleValidationError
from .predicates import SearchPredicate, describe_predicate, is_valid_flag, parse_predicate, validate_predicate

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("table", "text", "json", "yaml", "csv")

SIMPLE_FIELDS = ("seq", "uid", "subject", "from", "to", "cc", "bcc", "date", "flags", "size", "total_count")
CONTENT_FIELDS = ("body", "mime_parts")

MIME_MODES = ("text_only", "full", "filter")

EXPORT_FORMATS = ("eml", "mbox")


@dataclass(frozen=True)
class PaginationSpec:
    """Limit/offset window plus an optional exclusive UID range.

    Attributes:
        limit: Maximum number of messages to return, 0 for no limit
        offset: Number of most recent matches to skip
        after_uid: Only messages with a UID greater than this (0 = unset)
        before_uid: Only messages with a UID less than this (0 = unset)
    """
    limit: int = 0
    offset: int = 0
    after_uid: int = 0
    before_uid: int = 0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Validate the pagination values.

        Raises:
            OutputConfigError: If a value is negative or the UID range is empty
        """
        for name in ("limit", "offset", "after_uid", "before_uid"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise OutputConfigError(f"{name} must be an integer, got: {value!r}")
            if value < 0:
                raise OutputConfigError(f"{name} cannot be negative")

        if self.before_uid == 1:
            raise OutputConfigError("before_uid 1 leaves no UID to match")
        if self.after_uid and self.before_uid and self.after_uid + 1 > self.before_uid - 1:
            raise OutputConfigError(
                f"UID range after {self.after_uid} and before {self.before_uid} is empty"
            )


@dataclass(frozen=True)
class ContentField:
    """Configuration of a body or mime_parts output field."""
    type: str = ""
    max_length: int = 0
    min_length: int = 0
    mode: str = ""
    types: Tuple[str, ...] = ()
    show_types: bool = False
    show_content: bool = False

    def should_include(self, media_type: str) -> bool:
        """Decide whether a part of the given media type is selected by this field."""
        media_type = media_type.lower()
        if self.mode == "text_only":
            return media_type.startswith("text/plain")
        if self.mode == "filter":
            if not self.types:
                return True
            for allowed in self.types:
                allowed = allowed.lower()
                if allowed.endswith("/*"):
                    if media_type.startswith(allowed[:-1]):
                        return True
                elif media_type == allowed:
                    return True
            return False
        return True


@dataclass(frozen=True)
class OutputField:
    """A projected output field; content is set for body and mime_parts."""
    name: str
    content: Optional[ContentField] = None


@dataclass(frozen=True)
class OutputProjection:
    """Which fields to render, in which format, over which window."""
    fields: Tuple[OutputField, ...]
    format: str = "table"
    pagination: PaginationSpec = field(default_factory=PaginationSpec)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.format not in OUTPUT_FORMATS:
            raise OutputConfigError(
                f"invalid format: {self.format} (must be one of {', '.join(OUTPUT_FORMATS)})"
            )
        if not self.fields:
            raise OutputConfigError("at least one output field is required")

        for output_field in self.fields:
            if output_field.name in SIMPLE_FIELDS:
                continue
            if output_field.name not in CONTENT_FIELDS:
                raise OutputConfigError(f"unknown output field: {output_field.name}")
            content = output_field.content
            if content is None:
                continue
            if content.max_length < 0 or content.min_length < 0:
                raise OutputConfigError(f"{output_field.name} lengths cannot be negative")
            if output_field.name == "mime_parts":
                if content.mode not in MIME_MODES:
                    raise OutputConfigError(
                        f"invalid mime_parts mode: {content.mode} (must be 'text_only', 'full', or 'filter')"
                    )
                if content.mode == "filter" and not content.types:
                    raise OutputConfigError("mime_parts types must be specified when mode is 'filter'")

    def get_field(self, name: str) -> Optional[OutputField]:
        for output_field in self.fields:
            if output_field.name == name:
                return output_field
        return None

    @property
    def field_names(self) -> List[str]:
        return [output_field.name for output_field in self.fields]

    @property
    def wants_content(self) -> bool:
        return any(output_field.name in CONTENT_FIELDS for output_field in self.fields)

    def with_format(self, format: Optional[str]) -> "OutputProjection":
        if not format:
            return self
        return OutputProjection(fields=self.fields, format=format, pagination=self.pagination)


@dataclass(frozen=True)
class PermanentDelete:
    """Mark matched messages \\Deleted and expunge them."""
    pass


@dataclass(frozen=True)
class MoveToTrash:
    """Move matched messages to the trash mailbox."""
    pass


DeleteConfig = Union[PermanentDelete, MoveToTrash]


@dataclass(frozen=True)
class ExportConfig:
    """Export matched messages to disk as .eml files or a single mbox."""
    format: str = "eml"
    directory: str = "."
    filename_template: str = ""

    def __post_init__(self) -> None:
        if self.format not in EXPORT_FORMATS:
            raise ActionConfigError(f"invalid export format: {self.format} (must be 'eml' or 'mbox')")


@dataclass(frozen=True)
class ActionConfig:
    """Post-match actions; everything unset means no action."""
    flags_add: Tuple[str, ...] = ()
    flags_remove: Tuple[str, ...] = ()
    move_to: str = ""
    copy_to: str = ""
    delete: Optional[DeleteConfig] = None
    export: Optional[ExportConfig] = None

    def __post_init__(self) -> None:
        for flag in self.flags_add:
            if not is_valid_flag(flag):
                raise ActionConfigError(f"invalid flag in 'add' list: {flag}")
        for flag in self.flags_remove:
            if not is_valid_flag(flag):
                raise ActionConfigError(f"invalid flag in 'remove' list: {flag}")

    def is_empty(self) -> bool:
        return not (
            self.flags_add or self.flags_remove or self.move_to or self.copy_to
            or self.delete is not None or self.export is not None
        )


@dataclass(frozen=True)
class Rule:
    """A named search with its output projection and actions."""
    name: str
    search: SearchPredicate
    output: OutputProjection
    actions: ActionConfig = field(default_factory=ActionConfig)
    description: str = ""

    @property
    def pagination(self) -> PaginationSpec:
        return self.output.pagination


# Parsing

_RULE_KEYS = {"name", "description", "search", "output", "actions"}
_OUTPUT_KEYS = {"format", "limit", "offset", "after_uid", "before_uid", "fields"}
_BODY_KEYS = {"type", "max_length", "min_length"}
_MIME_PARTS_KEYS = {"mode", "type", "types", "show_types", "show_content", "max_length", "min_length"}
_ACTION_KEYS = {"flags", "move_to", "copy_to", "delete", "export"}
_EXPORT_KEYS = {"format", "directory", "filename_template"}


def _check_keys(data: Mapping[str, Any], allowed: Iterable[str], where: str, error=RuleValidationError) -> None:
    unknown = set(data) - set(allowed)
    if unknown:
        raise error(f"unknown keys in {where}: {', '.join(sorted(str(k) for k in unknown))}")


def _int_value(data: Mapping[str, Any], key: str, where: str, error=OutputConfigError) -> int:
    value = data.get(key) or 0
    if not isinstance(value, int) or isinstance(value, bool):
        raise error(f"{where}.{key} must be an integer, got: {value!r}")
    return value


def _string_list(value: Any, where: str, error=RuleValidationError) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise error(f"{where} must be a list of strings")


def parse_content_field(name: str, data: Optional[Mapping[str, Any]]) -> ContentField:
    """Build the ContentField of a body or mime_parts output field."""
    data = data or {}
    if not isinstance(data, Mapping):
        raise OutputConfigError(f"output field {name} must be a mapping")

    if name == "body":
        _check_keys(data, _BODY_KEYS, "body", OutputConfigError)
        return ContentField(
            type=str(data.get("type") or "text/plain"),
            max_length=_int_value(data, "max_length", "body"),
            min_length=_int_value(data, "min_length", "body"),
            show_content=True,
        )

    _check_keys(data, _MIME_PARTS_KEYS, "mime_parts", OutputConfigError)
    show_types = data.get("show_types", True)
    show_content = data.get("show_content", False)
    if not isinstance(show_types, bool) or not isinstance(show_content, bool):
        raise OutputConfigError("mime_parts show_types and show_content must be booleans")
    return ContentField(
        type=str(data.get("type") or ""),
        max_length=_int_value(data, "max_length", "mime_parts"),
        min_length=_int_value(data, "min_length", "mime_parts"),
        mode=str(data.get("mode") or "full"),
        types=_string_list(data.get("types"), "mime_parts.types", OutputConfigError),
        show_types=show_types,
        show_content=show_content,
    )


def parse_output(data: Optional[Mapping[str, Any]]) -> OutputProjection:
    """Build an OutputProjection from the "output" mapping of a rule.

    Fields are either plain names (``- subject``) or single-key mappings
    configuring a content field (``- body: {type: text/plain}``).
    """
    if not isinstance(data, Mapping):
        raise OutputConfigError("output section is required")
    _check_keys(data, _OUTPUT_KEYS, "output", OutputConfigError)

    raw_fields = data.get("fields") or []
    if not isinstance(raw_fields, list):
        raise OutputConfigError("output.fields must be a list")

    output_fields = []
    for raw in raw_fields:
        if isinstance(raw, str):
            if raw in CONTENT_FIELDS:
                output_fields.append(OutputField(raw, parse_content_field(raw, None)))
            else:
                output_fields.append(OutputField(raw))
        elif isinstance(raw, Mapping) and len(raw) == 1:
            name, config = next(iter(raw.items()))
            if name not in CONTENT_FIELDS:
                raise OutputConfigError(f"only body and mime_parts take configuration, got: {name}")
            output_fields.append(OutputField(name, parse_content_field(name, config)))
        else:
            raise OutputConfigError(f"invalid output field: {raw!r}")

    pagination = PaginationSpec(
        limit=_int_value(data, "limit", "output"),
        offset=_int_value(data, "offset", "output"),
        after_uid=_int_value(data, "after_uid", "output"),
        before_uid=_int_value(data, "before_uid", "output"),
    )
    return OutputProjection(
        fields=tuple(output_fields),
        format=str(data.get("format") or "table"),
        pagination=pagination,
    )


def parse_delete(value: Any) -> Optional[DeleteConfig]:
    """Decide the delete variant: true/{trash: false} delete permanently, {trash: true} moves to trash."""
    if value is None or value is False:
        return None
    if value is True:
        return PermanentDelete()
    if isinstance(value, Mapping):
        if "trash" not in value:
            raise ActionConfigError("delete config must have a 'trash' field")
        _check_keys(value, {"trash"}, "actions.delete", ActionConfigError)
        if not isinstance(value["trash"], bool):
            raise ActionConfigError("delete.trash must be a boolean")
        return MoveToTrash() if value["trash"] else PermanentDelete()
    raise ActionConfigError("delete config must be a boolean or an object with a 'trash' field")


def parse_actions(data: Optional[Mapping[str, Any]]) -> ActionConfig:
    """Build an ActionConfig from the "actions" mapping of a rule."""
    if data is None:
        return ActionConfig()
    if not isinstance(data, Mapping):
        raise ActionConfigError("actions must be a mapping")
    _check_keys(data, _ACTION_KEYS, "actions", ActionConfigError)

    flags = data.get("flags") or {}
    if not isinstance(flags, Mapping):
        raise ActionConfigError("actions.flags must be a mapping with 'add' and/or 'remove'")
    _check_keys(flags, {"add", "remove"}, "actions.flags", ActionConfigError)

    export = None
    if data.get("export") is not None:
        export_data = data["export"]
        if not isinstance(export_data, Mapping):
            raise ActionConfigError("actions.export must be a mapping")
        _check_keys(export_data, _EXPORT_KEYS, "actions.export", ActionConfigError)
        export = ExportConfig(
            format=str(export_data.get("format") or "eml"),
            directory=str(export_data.get("directory") or "."),
            filename_template=str(export_data.get("filename_template") or ""),
        )

    for key in ("move_to", "copy_to"):
        if data.get(key) is not None and not isinstance(data[key], str):
            raise ActionConfigError(f"actions.{key} must be a mailbox name")

    return ActionConfig(
        flags_add=_string_list(flags.get("add"), "actions.flags.add", ActionConfigError),
        flags_remove=_string_list(flags.get("remove"), "actions.flags.remove", ActionConfigError),
        move_to=data.get("move_to") or "",
        copy_to=data.get("copy_to") or "",
        delete=parse_delete(data.get("delete")),
        export=export,
    )


def parse_rule(data: Mapping[str, Any]) -> Rule:
    """Build and validate a Rule from one parsed YAML document.

    Raises:
        RuleValidationError: Or one of its subclasses, naming the problem
    """
    if not isinstance(data, Mapping):
        raise RuleValidationError(f"rule must be a mapping, got {type(data).__name__}")
    _check_keys(data, _RULE_KEYS, "rule")

    name = data.get("name")
    if not name or not isinstance(name, str):
        raise RuleValidationError("rule name is required")

    search = parse_predicate(data.get("search"))
    validate_predicate(search)

    return Rule(
        name=name,
        description=str(data.get("description") or ""),
        search=search,
        output=parse_output(data.get("output")),
        actions=parse_actions(data.get("actions")),
    )


def _is_header_document(document: Mapping[str, Any]) -> bool:
    return isinstance(document, Mapping) and not ({"search", "output"} & set(document))


def load_rules_from_string(text: str) -> List[Rule]:
    """Parse every rule document in a YAML string.

    Empty documents are skipped. A leading document with neither a search
    nor an output section is treated as a file header and skipped.
    """
    try:
        documents = [document for document in yaml.safe_load_all(text) if document is not None]
    except yaml.YAMLError as e:
        raise RuleValidationError(f"invalid YAML: {e!s}") from e

    if len(documents) > 1 and _is_header_document(documents[0]):
        logger.debug(f"Skipping rule file header: {documents[0]}")
        documents = documents[1:]

    if not documents:
        raise RuleValidationError("rule file contains no rules")

    rules = []
    for index, document in enumerate(documents):
        try:
            rules.append(parse_rule(document))
        except RuleValidationError as e:
            if len(documents) > 1:
                e.args = (f"rule document {index + 1}: {e}",) + e.args[1:]
            raise
    return rules


def load_rules(path: Union[str, Path]) -> List[Rule]:
    """Read and parse a rule file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RuleValidationError(f"cannot read rule file {path}: {e!s}") from e
    rules = load_rules_from_string(text)
    logger.info(f"Loaded {len(rules)} rule(s) from {path}")
    return rules


def describe_rule(rule: Rule) -> Dict[str, Any]:
    """Summarise a rule as plain data for logging and the validate command."""
    return {
        "name": rule.name,
        "search": describe_predicate(rule.search),
        "format": rule.output.format,
        "fields": rule.output.field_names,
        "limit": rule.pagination.limit,
        "offset": rule.pagination.offset,
        "actions": not rule.actions.is_empty(),
    }
