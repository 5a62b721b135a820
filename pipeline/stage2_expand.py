"""Stage 2: Block expansion — resolve nested ``block`` fields into one flat schema.

A block's field schema may contain fields of type ``block`` that reference
another category (``{"type": "block", "blockType": "card"}``). Expansion
fetches the referenced package and hoists its non-block fields into the
parent's schema under a collision-free name, so one content request fills the
whole composition:

    {field}{root_key}{key}{level}     e.g.  "title" + "features" + "features" + "0"

Each discovered nested field becomes an ExpansionRecord. Records form a tree
through ``parent`` indices; nothing aliases live dicts of the schema. After
content has been generated, ``regroup()`` turns the flat values back into the
nested ``{"type": "block", "htmlContent": ..., "variables": ...}`` objects the
parent template expects.

Rules:
  - every ``block`` field of the root definition starts its own chain
  - below the root only the *first* nested ``block`` field is followed
  - expansion stops at ``max_level``; deeper fields stay as inert stubs
  - a missing category is logged and skipped; the slot keeps an empty ``block``
"""
import copy
import logging
from collections.abc import Callable
from typing import Any

from models.block import BlockDefinition, Expansion, ExpansionRecord, FlatKey
from pipeline.errors import BlockNotFound
from utils.stores import BlockStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_LEVEL = 5

# (markup_template, instance_id, variables, category) -> rendered fragment
MarkupRenderer = Callable[[str, str, dict[str, Any], str], str]


async def expand_definition(
    definition: BlockDefinition,
    block_store: BlockStore,
    *,
    level: int = 0,
    expansion: Expansion | None = None,
    parent: int | None = None,
    max_level: int = DEFAULT_MAX_LEVEL,
    root_key: str = "",
) -> Expansion:
    """Expand ``definition`` and return the accumulated Expansion.

    At ``level >= max_level`` the accumulator is returned unchanged.
    """
    if expansion is None:
        expansion = Expansion()
    if level >= max_level:
        return expansion

    if level == 0:
        expansion.flat_vars.update(copy.deepcopy(definition.field_schema))

    block_fields = definition.block_fields()
    if level > 0:
        block_fields = block_fields[:1]

    for key, spec in block_fields:
        current_root = key if level == 0 else root_key
        block_type = spec.get("blockType") or ""
        try:
            if not block_type:
                raise BlockNotFound(key, "field has no blockType")
            child = await block_store.fetch_random_active_block(block_type)
        except BlockNotFound as exc:
            logger.warning("Nested block %r (level %d) skipped: %s", key, level, exc)
            continue

        nested = child.block_fields()[:1]
        index = len(expansion.records)
        expansion.records.append(
            ExpansionRecord(
                level=level,
                key=key,
                root_key=current_root,
                parent=parent,
                block_type=child.category,
                block_id=child.block_id,
                markup_template=child.markup_template,
                style_template=child.style_template,
                nested={k: copy.deepcopy(v) for k, v in nested},
            )
        )

        for child_key, child_spec in child.plain_fields():
            flat_key = FlatKey(
                field=child_key, root_key=current_root, key=key, level=level, record=index
            )
            name = flat_key.serialize()
            expansion.flat_vars[name] = copy.deepcopy(child_spec)
            expansion.flat_keys[name] = flat_key

        if nested:
            await expand_definition(
                child,
                block_store,
                level=level + 1,
                expansion=expansion,
                parent=index,
                max_level=max_level,
                root_key=current_root,
            )

    if level == 0:
        _attach_stubs(definition, expansion)
    return expansion


def _attach_stubs(definition: BlockDefinition, expansion: Expansion) -> None:
    """Write the nested ``block`` sub-objects of each root slot into flat_vars.

    A slot whose category could not be fetched keeps an empty ``block``.
    """
    roots = {r.key: i for i, r in enumerate(expansion.records) if r.parent is None}
    for key, _ in definition.block_fields():
        slot = expansion.flat_vars.get(key)
        if not isinstance(slot, dict):
            continue
        slot["block"] = _stub(expansion, roots[key]) if key in roots else {}


def _stub(expansion: Expansion, index: int) -> dict[str, Any]:
    record = expansion.records[index]
    children = {expansion.records[i].key: i for i in expansion.children_of(index)}
    stub: dict[str, Any] = {}
    for key, spec in record.nested.items():
        value = copy.deepcopy(spec)
        if key in children:
            value["block"] = _stub(expansion, children[key])
        stub[key] = value
    return stub


# ---------------------------------------------------------------------------
# Regrouping
# ---------------------------------------------------------------------------

def nested_instance_id(instance_id: str, record: ExpansionRecord) -> str:
    return f"{instance_id}-{record.key}{record.level}"


def regroup(
    values: dict[str, Any],
    expansion: Expansion,
    instance_id: str,
    render: MarkupRenderer,
) -> dict[str, Any]:
    """Fold flat generated values back into nested block objects.

    Nested markup is rendered deepest-first so each parent receives its
    child's fragment as ``<slot>.htmlContent``. Hoisted flat names are dropped
    from the result.
    """
    records = expansion.records
    if not records:
        return copy.deepcopy(values)

    containers: list[dict[str, Any]] = [{} for _ in records]
    for name, flat_key in expansion.flat_keys.items():
        if name in values:
            containers[flat_key.record][flat_key.field] = copy.deepcopy(values[name])
    for index, record in enumerate(records):
        for child_key in record.nested:
            containers[index].setdefault(child_key, {"type": "block"})

    rendered: dict[int, str] = {}
    for index in sorted(range(len(records)), key=lambda i: -records[i].level):
        record = records[index]
        html = render(
            record.markup_template,
            nested_instance_id(instance_id, record),
            containers[index],
            record.block_type,
        )
        rendered[index] = html
        if record.parent is not None:
            slot = containers[record.parent].get(record.key)
            if not isinstance(slot, dict):
                slot = {}
                containers[record.parent][record.key] = slot
            slot["htmlContent"] = html

    roots = {r.key: i for i, r in enumerate(records) if r.parent is None}
    result: dict[str, Any] = {}
    for name, value in values.items():
        if name not in expansion.flat_keys and name not in roots:
            result[name] = copy.deepcopy(value)
    for name, index in roots.items():
        result[name] = {
            "type": "block",
            "blockType": records[index].block_type,
            "htmlContent": rendered[index],
            "variables": containers[index],
        }
    return result


def combined_style(style_template: str, expansion: Expansion | None) -> str:
    """Parent style followed by every nested package's style, scoped together."""
    if expansion is None:
        return style_template
    parts = [style_template] + [r.style_template for r in expansion.records if r.style_template]
    return "\n".join(p for p in parts if p)
