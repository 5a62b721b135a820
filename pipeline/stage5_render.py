"""Stage 5: Rendering — scope each block instance and assemble page documents.

Every instance on a page is rendered under its own id (``{category}-{ordinal}``):

  Style   the template's ``#_blockId`` root selector becomes ``#<id>``, the
          result is compiled with libsass and wrapped in
          ``/*!CSS-BLOCK:<id>:START!*/ ... /*!CSS-BLOCK:<id>:END!*/``.
  Markup  the Jinja2 markup template is rendered with ``_blockId=<id>`` and
          wrapped in ``<!-- !HTML-BLOCK:<id>:START! --> ... :END! -->``.

A page is rendered twice: the archive document, and a preview in which each
generated image points at its inline ``preview`` data URI. The preview is
returned to the caller only, never written to the archive.
"""
import copy
import logging
import re
from pathlib import Path
from typing import Any

import sass
from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup, escape

from models.block import BlockInstance
from models.site import SeoMetadata, SitePage
from pipeline.errors import RenderFailure, StyleCompileFailure
from pipeline.stage2_expand import combined_style, regroup

logger = logging.getLogger(__name__)

# Path (relative to the package root) where Jinja2 looks for page templates
_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

_ROOT_SELECTOR = "#_blockId"

_block_env = Environment(autoescape=select_autoescape(default_for_string=True, default=True))


# ---------------------------------------------------------------------------
# Block scoping
# ---------------------------------------------------------------------------

def _compile_scss(source: str, instance_id: str) -> str:
    try:
        return sass.compile(string=source)
    except sass.CompileError as exc:
        raise StyleCompileFailure(f"{instance_id}: {exc}") from exc


def render_style(style_template: str, instance_id: str) -> str:
    """Scope and compile a block's SCSS. On compile errors the raw template is returned."""
    scoped = style_template.replace(_ROOT_SELECTOR, f"#{instance_id}")
    if not scoped.strip():
        return f"/*!CSS-BLOCK:{instance_id}:START!*/\n/*!CSS-BLOCK:{instance_id}:END!*/"
    try:
        css = _compile_scss(scoped, instance_id)
    except StyleCompileFailure as exc:
        logger.warning("Style compile failed, emitting unscoped source: %s", exc)
        return style_template
    return f"/*!CSS-BLOCK:{instance_id}:START!*/\n{css}/*!CSS-BLOCK:{instance_id}:END!*/"


def fallback_markup(instance_id: str, category: str) -> str:
    return (
        f'<div id="{escape(instance_id)}" class="generation-block-error">'
        f"Failed to render {escape(category)}</div>"
    )


def _render_template(markup_template: str, instance_id: str, variables: dict[str, Any]) -> str:
    try:
        return _block_env.from_string(markup_template).render({**variables, "_blockId": instance_id})
    except Exception as exc:
        raise RenderFailure(f"{instance_id}: {exc}") from exc


def _wrap_markup(instance_id: str, body: str) -> Markup:
    # Markup so a nested fragment passes through its parent's autoescaping intact
    return Markup(
        f"<!-- !HTML-BLOCK:{instance_id}:START! -->{body}<!-- !HTML-BLOCK:{instance_id}:END! -->"
    )


def render_markup_template(
    markup_template: str,
    instance_id: str,
    variables: dict[str, Any],
    category: str,
) -> Markup:
    """Render one nested markup template, wrapped in its trace comments.

    Raises RenderFailure; the owning instance falls back as a whole.
    """
    return _wrap_markup(instance_id, _render_template(markup_template, instance_id, variables))


def render_markup(instance: BlockInstance, instance_id: str, variables: dict[str, Any]) -> Markup:
    """Render an instance's markup. Errored instances (or render failures) get the fallback."""
    if instance.has_error or instance.definition is None:
        return _wrap_markup(instance_id, fallback_markup(instance_id, instance.category))
    try:
        if instance.expansion is not None and instance.expansion.records:
            variables = regroup(variables, instance.expansion, instance_id, render_markup_template)
        body = _render_template(instance.definition.markup_template, instance_id, variables)
    except Exception as exc:
        logger.warning("%s: markup render failed: %s", instance_id, exc)
        instance.mark_failed(f"Render failed: {exc}")
        body = fallback_markup(instance_id, instance.category)
    return _wrap_markup(instance_id, body)


def render_instance_style(instance: BlockInstance, instance_id: str) -> str:
    if instance.definition is None:
        return ""
    return render_style(
        combined_style(instance.definition.style_template, instance.expansion), instance_id
    )


def with_preview_images(value: Any) -> Any:
    """Deep copy of ``value`` with every ``href`` replaced by its ``preview`` rendition."""
    if isinstance(value, list):
        return [with_preview_images(v) for v in value]
    if not isinstance(value, dict):
        return value
    result = {k: with_preview_images(v) for k, v in value.items()}
    if "href" in result and result.get("preview"):
        result["href"] = result["preview"]
    return result


# ---------------------------------------------------------------------------
# Page documents
# ---------------------------------------------------------------------------

def template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATE_DIR)),
        autoescape=select_autoescape(["html.j2", "xml.j2"]),
    )


def _css_value(value: Any) -> str:
    """Theme values come from the model; keep them from closing the style element."""
    return re.sub(r"[<>{};]", "", str(value))


def css_variables(theme: dict[str, str]) -> str:
    return "\n            ".join(f"{name}: {_css_value(value)};" for name, value in theme.items())


def build_page(
    path: str,
    title: str,
    seo: SeoMetadata,
    instances: list[BlockInstance],
    theme: dict[str, str],
    language: str,
    country: str,
) -> SitePage:
    """Render every instance of a page and produce the document plus its preview."""
    fragments_html: list[str] = []
    fragments_preview: list[str] = []
    fragments_css: list[str] = []
    for instance in instances:
        instance_id = instance.generation_id
        fragments_css.append(render_instance_style(instance, instance_id))
        fragments_html.append(render_markup(instance, instance_id, instance.variables))
        fragments_preview.append(
            render_markup(instance, instance_id, with_preview_images(copy.deepcopy(instance.variables)))
        )

    template = template_env().get_template("page.html.j2")
    common = dict(
        seo=seo,
        page_title=title,
        language=language,
        country=(country or "").upper(),
        css_variables=Markup(css_variables(theme)),
        blocks_css=Markup("\n".join(fragments_css)),
    )
    html = template.render(blocks_html=Markup("\n".join(fragments_html)), **common)
    preview_html = template.render(blocks_html=Markup("\n".join(fragments_preview)), **common)
    return SitePage(
        path=path,
        title=title,
        seo=seo,
        instances=instances,
        html=html,
        preview_html=preview_html,
    )
