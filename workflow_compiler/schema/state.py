"""
State schema: the set of named, typed fields a workflow reads and writes.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import Field

from workflow_compiler.errors import CompileError
from workflow_compiler.schema.models import FieldType, StrictModel

_TYPE_ALIASES: Dict[str, FieldType] = {
    "str": FieldType.string,
    "text": FieldType.string,
    "int": FieldType.integer,
    "float": FieldType.number,
    "bool": FieldType.boolean,
    "dict": FieldType.object,
    "list": FieldType.array,
    "json": FieldType.object,
}

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

INTERNAL_STATE_PREFIX = "__"


def coerce_field_type(value: Any) -> FieldType:
    if isinstance(value, FieldType):
        return value
    if value is None or value == "":
        return FieldType.any
    text = str(value).strip().lower()
    if text in _TYPE_ALIASES:
        return _TYPE_ALIASES[text]
    try:
        return FieldType(text)
    except ValueError as exc:
        raise ValueError(f"Unknown field type '{value}'") from exc


def parse_field_declarations(raw: Any) -> Dict[str, FieldType]:
    """
    Normalize a node's `inputs` / `outputs` property into {name: FieldType}.

    Accepted shapes:
      - "raw_input, summary: string"
      - '{"summary": "string"}' (JSON text)
      - ["raw_input", "summary"]
      - {"summary": "string", "count": "int"}
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith(("{", "[")):
            try:
                return parse_field_declarations(json.loads(stripped))
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid field declaration JSON: {exc}") from exc
        pairs = [_split_pair(part) for part in stripped.split(",") if part.strip()]
    elif isinstance(raw, Mapping):
        pairs = [(str(name).strip(), value) for name, value in raw.items()]
    elif isinstance(raw, (list, tuple)):
        pairs = [_split_pair(str(item)) for item in raw]
    else:
        raise ValueError(f"Unsupported field declaration {raw!r}")

    fields: Dict[str, FieldType] = {}
    for name, type_name in pairs:
        if not _FIELD_NAME.match(name) or name.startswith(INTERNAL_STATE_PREFIX):
            raise ValueError(f"Invalid state field name '{name}'")
        fields[name] = coerce_field_type(type_name)
    return fields


def _split_pair(text: str) -> Tuple[str, Optional[str]]:
    name, _, type_name = text.partition(":")
    return name.strip(), type_name.strip() or None


def merge_field_types(left: FieldType, right: FieldType) -> Optional[FieldType]:
    """Return the unified type, or None when the two declarations conflict."""
    if left == right:
        return left
    if left == FieldType.any:
        return right
    if right == FieldType.any:
        return left
    if {left, right} == {FieldType.integer, FieldType.number}:
        return FieldType.number
    return None


class StateField(StrictModel):
    name: str
    type: FieldType = FieldType.any
    declared_by: Tuple[str, ...] = Field(default_factory=tuple)


class StateSchema(StrictModel):
    """Immutable mapping of field name to field declaration, ordered by name."""

    entries: Dict[str, StateField] = Field(default_factory=dict)

    def names(self) -> Tuple[str, ...]:
        return tuple(self.entries)

    def type_of(self, name: str) -> Optional[FieldType]:
        field = self.entries.get(name)
        return field.type if field else None

    def with_fields(self, declarations: Mapping[str, FieldType], *, owner: str) -> "StateSchema":
        """Return a new schema including `declarations`; raises CompileError on type conflicts."""
        merged = dict(self.entries)
        for name, field_type in declarations.items():
            existing = merged.get(name)
            if existing is None:
                merged[name] = StateField(name=name, type=field_type, declared_by=(owner,))
                continue
            unified = merge_field_types(existing.type, field_type)
            if unified is None:
                raise CompileError(
                    f"State field '{name}' declared as '{existing.type.value}' by "
                    f"{', '.join(existing.declared_by)} but as '{field_type.value}' by {owner}"
                )
            owners = existing.declared_by if owner in existing.declared_by else existing.declared_by + (owner,)
            merged[name] = StateField(name=name, type=unified, declared_by=owners)
        return StateSchema(entries={name: merged[name] for name in sorted(merged)})

    def describe(self) -> Dict[str, str]:
        """Compact {name: type} view used in generation prompts and API payloads."""
        return {name: field.type.value for name, field in self.entries.items()}

    @classmethod
    def from_declarations(
        cls, declarations: Iterable[Tuple[str, Mapping[str, FieldType]]]
    ) -> "StateSchema":
        schema = cls()
        for owner, fields in declarations:
            schema = schema.with_fields(fields, owner=owner)
        return schema


__all__ = [
    "INTERNAL_STATE_PREFIX",
    "StateField",
    "StateSchema",
    "coerce_field_type",
    "merge_field_types",
    "parse_field_declarations",
]
