"""Block contract models — definitions, expansion records and instances.

A field schema is kept as the raw JSON mapping shipped in a block's
``definition.json`` (``{"title": {"type": "text"}, ...}``) because block
authors attach free-form hints (descriptions, sample values) that the content
prompt passes through untouched.
"""
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from models.usage import Usage

FieldType = Literal["text", "image", "link", "anchor", "anchors", "array", "nav", "block"]


def field_type(spec: Any) -> str:
    """Return the declared type of a field spec, defaulting to ``text``."""
    if isinstance(spec, dict):
        return spec.get("type") or "text"
    return "text"


def array_item_schema(spec: dict) -> dict[str, dict]:
    """Item schema of an ``array`` field.

    Accepts both ``{"items": {...}}`` and the legacy sample form
    ``{"values": [{...}, ...]}`` where the first sample doubles as the schema.
    """
    items = spec.get("items")
    if isinstance(items, dict):
        return items
    values = spec.get("values")
    if isinstance(values, list) and values and isinstance(values[0], dict):
        return {k: v for k, v in values[0].items() if isinstance(v, dict) and v.get("type")}
    return {}


class BlockDefinition(BaseModel):
    """A block package as fetched from the block store. Immutable per run."""

    model_config = ConfigDict(frozen=True)

    block_id: str | None = None
    category: str
    markup_template: str = ""
    style_template: str = ""
    field_schema: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def block_fields(self) -> list[tuple[str, dict[str, Any]]]:
        return [(k, v) for k, v in self.field_schema.items() if field_type(v) == "block"]

    def plain_fields(self) -> list[tuple[str, dict[str, Any]]]:
        return [(k, v) for k, v in self.field_schema.items() if field_type(v) != "block"]

    def fields_of_type(self, *types: str) -> list[str]:
        return [k for k, v in self.field_schema.items() if field_type(v) in types]


class FlatKey(BaseModel):
    """Structured name of a hoisted nested-block field.

    The string form ``{field}{root_key}{key}{level}`` only exists at the
    serialization boundary (the content prompt and the generated values).
    """

    model_config = ConfigDict(frozen=True)

    field: str
    root_key: str
    key: str
    level: int
    record: int  # index into Expansion.records

    @property
    def suffix(self) -> str:
        return f"{self.root_key}{self.key}{self.level}"

    def serialize(self) -> str:
        return f"{self.field}{self.suffix}"


class ExpansionRecord(BaseModel):
    """One discovered nested ``block`` field and the package that fills it.

    ``parent`` is an index into the owning Expansion's ``records`` list; root
    slots (level 0) have no parent.
    """

    level: int
    key: str
    root_key: str
    parent: int | None = None
    block_type: str
    block_id: str | None = None
    markup_template: str = ""
    style_template: str = ""
    # First nested block field of the fetched package (only one chain is followed)
    nested: dict[str, dict[str, Any]] = Field(default_factory=dict)


class Expansion(BaseModel):
    """Result of expanding a block definition's nested ``block`` fields."""

    flat_vars: dict[str, dict[str, Any]] = Field(default_factory=dict)
    records: list[ExpansionRecord] = Field(default_factory=list)
    flat_keys: dict[str, FlatKey] = Field(default_factory=dict)

    @property
    def used_keys(self) -> list[tuple[int, str, str]]:
        return [(r.level, r.key, r.root_key) for r in self.records]

    @property
    def contents(self) -> list[tuple[int, str, str, str]]:
        return [(r.level, r.key, r.markup_template, r.style_template) for r in self.records]

    def children_of(self, index: int) -> list[int]:
        return [i for i, r in enumerate(self.records) if r.parent == index]

    def max_level(self) -> int:
        return max((r.level for r in self.records), default=-1)


class BlockInstance(BaseModel):
    """A block definition bound to generated values for one placement."""

    category: str
    generation_id: str = ""
    is_global: bool = False
    page_index: int | None = None
    slot_index: int | None = None
    definition: BlockDefinition | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    expansion: Expansion | None = None
    has_error: bool = False
    error: str | None = None
    usage: Usage = Field(default_factory=Usage)

    @property
    def block_id(self) -> str | None:
        return self.definition.block_id if self.definition else None

    def mark_failed(self, message: str) -> "BlockInstance":
        self.has_error = True
        self.error = message
        return self
