"""Stage 3: Content — fill block schemas with generated values and images.

For each block slot:
  1. fetch a random active package of the slot's category
  2. expand nested ``block`` fields into one flat schema (Stage 2)
  3. ask the content model for values matching that schema
  4. generate every requested image, store it under ``images/`` in the site
     archive and point the field at it (keeping the inline ``preview``)

Failures of any of these steps are contained in the returned BlockInstance
(``has_error`` / ``error``); nothing here raises past the block boundary,
except a targeted regeneration (``strict=True``) whose category has no
active package, which raises BlockNotFound.

Navigation is not generated: global blocks with a ``nav`` field only ask for
translated labels, and the link list is built locally from the planned pages.
"""
import asyncio
import base64
import copy
import json
import logging
import random
from typing import Any
from urllib.parse import quote

from models.block import BlockInstance, array_item_schema, field_type
from models.site import PlannedPage, TemplatePage
from models.usage import Usage
from pipeline.errors import BlockNotFound
from pipeline.stage2_expand import expand_definition
from utils.llm_gateway import ContentGateway
from utils.site_archive import SiteArchive
from utils.stores import BlockStore

logger = logging.getLogger(__name__)

_DEFAULT_USER_PROMPT = "Create professional website content"

# Categories never used as in-page anchor targets
_CHROME_CATEGORIES = frozenset({"header", "footer"})

_EXTERNAL_PREFIXES = ("http://", "https://", "data:")

_SYSTEM_PROMPT = """\
You are a CONTENT generator for website blocks.

STRICT LOCALIZATION & CONTEXT RULES:
- Language: {language}
- Country: {country}

Your task:
- Generate content variables for the block type: {category}
- DO NOT generate navigation structure, it will be provided separately
- DO NOT generate any CSS, styles, or design tokens
- Generate NATURAL, human-readable text
{nav_instruction}
=====================
STRUCTURE TO FILL (from this block's definition)
=====================
{description}

Use exactly these variable names and structure. Format:
- text: {{"variableName": {{"value": "content"}}}}
- image: {{"variableName": {{"href": "image description for AI", "alt": "alt text"}}}}
- link: {{"variableName": {{"href": "url", "label": "text"}}}}
- anchor: {{"variableName": {{"href": "url", "label": "text"}}}}
- anchors: {{"variableName": {{"value": []}}}}
- array: {{"variableName": {{"type": "array", "values": [{{ ...each key from above list... }}, ...]}}}}

If a variable has type "block", keep the "block" object exactly as provided
in the structure below. Do not modify or expand it.

=====================
EXPECTED SHAPE (fill with real content, 3-5 items for arrays)
=====================
{shape}

Return ONLY valid JSON. All text in {language}. No empty strings.
"""

_NAV_INSTRUCTION = """
=====================
NAVIGATION LABELS
=====================
Generate translated navigation labels for these pages:
{pages}

Add to your response:
"navigationLabels": ["Translated Label 1", "Translated Label 2", ...]

Labels must be in {language}, short (1-3 words), natural for website navigation.
"""


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------

def build_variables_description(schema: dict[str, dict]) -> str:
    """Human-readable list of the fields to fill; ``nav`` fields are omitted."""
    lines = []
    for name, spec in schema.items():
        kind = field_type(spec)
        if kind == "nav":
            continue
        if kind == "array":
            items = array_item_schema(spec)
            item_keys = ", ".join(f"{k} ({field_type(v)})" for k, v in items.items())
            lines.append(f"- {name} (type: array). Each item: {item_keys}")
        else:
            desc = f" - {spec['description']}" if spec.get("description") else ""
            lines.append(f"- {name} (type: {kind}){desc}")
    return "\n".join(lines)


def _shape_for(kind: str, spec: dict) -> dict:
    if kind == "image":
        return {"href": "...", "alt": "..."}
    if kind == "link":
        return {"value": None, "href": "...", "label": "..."}
    if kind == "anchor":
        return {"href": "...", "label": "..."}
    if kind == "anchors":
        return {"value": []}
    if kind == "block":
        return {"blockType": spec.get("blockType") or "...", "block": spec.get("block", {})}
    return {"value": "..."}


def build_expected_shape(schema: dict[str, dict]) -> str:
    """JSON skeleton of the expected response, biasing the model toward the schema."""
    out: dict[str, Any] = {}
    for name, spec in schema.items():
        kind = field_type(spec)
        if kind == "nav":
            continue
        if kind == "array":
            item = {
                k: _shape_for(field_type(v), v)
                for k, v in array_item_schema(spec).items()
            }
            out[name] = {"type": "array", "values": [item, copy.deepcopy(item)]}
        else:
            out[name] = _shape_for(kind, spec)
    return json.dumps(out, indent=2, ensure_ascii=False)


def build_content_prompt(
    schema: dict[str, dict],
    category: str,
    country: str,
    language: str,
    nav_pages: list[TemplatePage] | None = None,
) -> str:
    nav_instruction = ""
    if nav_pages:
        nav_instruction = _NAV_INSTRUCTION.format(
            pages="\n".join(f'- "{p.title}"' for p in nav_pages),
            language=language,
        )
    return _SYSTEM_PROMPT.format(
        language=language,
        country=country,
        category=category,
        nav_instruction=nav_instruction,
        description=build_variables_description(schema),
        shape=build_expected_shape(schema),
    )


# ---------------------------------------------------------------------------
# Content + images
# ---------------------------------------------------------------------------

async def fill_content(
    gateway: ContentGateway,
    archive: SiteArchive,
    schema: dict[str, dict],
    category: str,
    prompt: str,
    country: str,
    language: str,
    nav_pages: list[TemplatePage] | None = None,
) -> tuple[dict[str, Any], Usage]:
    """Generate values for ``schema`` and resolve its image fields.

    Raises ContentGenerationMalformed when the reply is not one JSON object.
    When ``nav_pages`` is given the result also carries ``navigationLabels``.
    """
    system_prompt = build_content_prompt(schema, category, country, language, nav_pages)
    values, usage = await gateway.complete_json(system_prompt, prompt or _DEFAULT_USER_PROMPT)
    for name, spec in schema.items():
        if field_type(spec) == "nav":
            values.pop(name, None)
    image_cost = await process_images(gateway, archive, values, schema, category)
    return values, usage + Usage(image_cost=image_cost)


def _needs_generation(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    href = value.get("href")
    return isinstance(href, str) and bool(href.strip()) and not href.startswith(_EXTERNAL_PREFIXES)


def placeholder_image_url(description: str) -> str:
    return f"https://image.pollinations.ai/prompt/{quote(description, safe='')}?width=1024&height=1024&format=png"


async def _resolve_image(
    gateway: ContentGateway,
    archive: SiteArchive,
    field: dict[str, Any],
    fallback_description: str,
) -> float:
    description = field.get("href") or fallback_description
    try:
        image = await gateway.generate_image(description)
    except Exception as exc:
        logger.warning("Image generation failed (%s); using placeholder: %s", description[:60], exc)
        field["href"] = placeholder_image_url(description)
        return 0.0
    field["href"] = archive.add_image(image.data)
    field["preview"] = "data:image/png;base64," + base64.b64encode(image.data).decode()
    return image.cost


async def process_images(
    gateway: ContentGateway,
    archive: SiteArchive,
    values: dict[str, Any],
    schema: dict[str, dict],
    category: str,
) -> float:
    """Generate every pending image field (top-level and array items) in place.

    Returns the summed image cost. Each image either lands in the archive or
    falls back to a placeholder URL before this returns.
    """
    jobs = []
    for name, value in values.items():
        spec = schema.get(name) or {}
        kind = field_type(spec)
        if kind == "image" and _needs_generation(value):
            jobs.append(_resolve_image(gateway, archive, value, f"{category} {name}"))
        elif kind == "array" and isinstance(value, dict) and isinstance(value.get("values"), list):
            item_schema = array_item_schema(spec)
            for item in value["values"]:
                if not isinstance(item, dict):
                    continue
                for item_key, item_value in item.items():
                    if field_type(item_schema.get(item_key)) == "image" and _needs_generation(item_value):
                        jobs.append(
                            _resolve_image(gateway, archive, item_value, f"{category} {name} {item_key}")
                        )
    if not jobs:
        return 0.0
    costs = await asyncio.gather(*jobs)
    return round(sum(costs), 6)


# ---------------------------------------------------------------------------
# Block preparation
# ---------------------------------------------------------------------------

def _failed(instance: BlockInstance, exc: Exception) -> BlockInstance:
    logger.warning("  [%s] %s: FAILED: %s", instance.generation_id or "global", instance.category, exc)
    return instance.mark_failed(str(exc) or exc.__class__.__name__)


async def prepare_block(
    gateway: ContentGateway,
    block_store: BlockStore,
    archive: SiteArchive,
    slot: BlockInstance,
    prompt: str,
    country: str,
    language: str,
    max_level: int,
    nav_pages: list[TemplatePage] | None = None,
    strict: bool = False,
) -> tuple[BlockInstance, list[str] | None]:
    """Resolve one slot into a filled BlockInstance.

    Failures are recorded on the instance. With ``strict`` a category without
    an active package raises BlockNotFound instead.

    Returns the instance and, when ``nav_pages`` was requested and the block
    declares a ``nav`` field, the generated navigation labels.
    """
    instance = slot.model_copy(deep=True)
    try:
        definition = await block_store.fetch_random_active_block(slot.category)
    except BlockNotFound as exc:
        if strict:
            raise
        return _failed(instance, exc), None
    except Exception as exc:
        return _failed(instance, exc), None
    instance.definition = definition

    try:
        expansion = await expand_definition(definition, block_store, max_level=max_level)
        instance.expansion = expansion
        wants_nav = bool(nav_pages) and bool(definition.fields_of_type("nav"))
        values, usage = await fill_content(
            gateway,
            archive,
            expansion.flat_vars,
            slot.category,
            prompt,
            country,
            language,
            nav_pages if wants_nav else None,
        )
    except Exception as exc:
        return _failed(instance, exc), None

    labels = values.pop("navigationLabels", None)
    if not (isinstance(labels, list) and all(isinstance(x, str) for x in labels)):
        labels = None
    instance.variables = values
    instance.usage = usage
    logger.info(
        "  [%s] %s: %d variables, %d tokens",
        slot.generation_id or "global",
        slot.category,
        len(values),
        usage.total_tokens,
    )
    return instance, labels


async def prepare_global_blocks(
    gateway: ContentGateway,
    block_store: BlockStore,
    archive: SiteArchive,
    categories: list[str],
    template_pages: list[TemplatePage],
    prompt: str,
    country: str,
    language: str,
    max_level: int,
) -> tuple[dict[str, BlockInstance], list[str] | None]:
    """Generate each global category exactly once, concurrently.

    Returns ``category -> instance`` and the first set of navigation labels
    any global block produced.
    """
    unique = list(dict.fromkeys(categories))
    results = await asyncio.gather(*(
        prepare_block(
            gateway,
            block_store,
            archive,
            BlockInstance(category=category, is_global=True),
            prompt,
            country,
            language,
            max_level,
            nav_pages=template_pages if len(template_pages) > 1 else None,
        )
        for category in unique
    ))
    globals_map: dict[str, BlockInstance] = {}
    navigation_labels: list[str] | None = None
    for instance, labels in results:
        globals_map[instance.category] = instance
        if navigation_labels is None and labels:
            navigation_labels = labels
    return globals_map, navigation_labels


# ---------------------------------------------------------------------------
# Navigation and anchors
# ---------------------------------------------------------------------------

def build_navigation(pages: list[PlannedPage], labels: list[str] | None) -> list[dict[str, Any]]:
    """Link list for ``nav`` fields: one entry per page, empty for single-page sites."""
    if len(pages) <= 1:
        return []
    return [
        {
            "href": page.filename,
            "label": (labels[i] if labels and i < len(labels) and labels[i] else page.title),
            "active": False,
        }
        for i, page in enumerate(pages)
    ]


def attach_navigation(instance: BlockInstance, navigation: list[dict[str, Any]]) -> None:
    if instance.has_error or instance.definition is None:
        return
    for name in instance.definition.fields_of_type("nav"):
        instance.variables[name] = {"type": "nav", "value": copy.deepcopy(navigation)}


def fill_anchors(
    instances: list[BlockInstance],
    rng: random.Random,
    targets: set[str] | None = None,
) -> None:
    """Point ``anchor`` fields at other sections of the same page.

    Each anchor takes a random eligible section (not header/footer, never the
    block itself while alternatives exist), drawing without replacement and
    refilling the pool when it runs dry. Every ``anchors`` field receives the
    unique list of assigned ``{href, label}`` pairs. With ``targets`` only
    those generation ids are (re)assigned; the list still covers the page.
    """
    eligible = [i for i in instances if i.category not in _CHROME_CATEGORIES]
    pool: list[BlockInstance] = list(eligible)
    collected: dict[str, str] = {}

    for instance in instances:
        if instance.has_error or instance.definition is None:
            continue
        for name in instance.definition.fields_of_type("anchor"):
            value = instance.variables.get(name)
            if not isinstance(value, dict):
                continue
            if targets is not None and instance.generation_id not in targets:
                if value.get("href"):
                    collected.setdefault(value["href"], value.get("label", ""))
                continue
            choices = [b for b in pool if b is not instance]
            if not choices and len(eligible) > 1:
                pool = list(eligible)
                choices = [b for b in pool if b is not instance]
            if not choices:
                value["href"] = ""
                value["label"] = ""
                continue
            selected = rng.choice(choices)
            pool.remove(selected)
            href = f"#{selected.generation_id}"
            value["href"] = href
            collected.setdefault(href, value.get("label", ""))

    anchors_list = [{"href": href, "label": label} for href, label in collected.items()]
    for instance in instances:
        if instance.has_error or instance.definition is None:
            continue
        if targets is not None and instance.generation_id not in targets:
            continue
        for name in instance.definition.fields_of_type("anchors"):
            instance.variables[name] = {"value": copy.deepcopy(anchors_list)}
