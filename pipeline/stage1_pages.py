"""Stage 1: Page planning — paths, titles and localized SEO metadata per page.

The site template fixes the number of pages and their layouts; the SEO model
only names them. A failed or unusable reply is not fatal: deterministic
metadata derived from the prompt is used instead.
"""
import json
import logging

from pydantic import BaseModel, ConfigDict

from models.site import PlannedPage, SeoMetadata, TemplatePage
from models.usage import Usage
from settings import Settings
from utils.llm_gateway import ContentGateway
from utils.openai_utils import strict_schema as _strict_schema
from utils.text import normalize_page_path, normalize_page_title

logger = logging.getLogger(__name__)


class _SeoSchema(BaseModel):
    model_config = ConfigDict(json_schema_extra=_strict_schema)

    title: str = ""
    description: str = ""
    keywords: str = ""
    og_title: str = ""
    og_description: str = ""


class _PageSchema(BaseModel):
    model_config = ConfigDict(json_schema_extra=_strict_schema)

    page_path: str
    page_title: str
    seo: _SeoSchema | None = None


class _PagesSchema(BaseModel):
    model_config = ConfigDict(json_schema_extra=_strict_schema)

    pages: list[_PageSchema]


_SYSTEM_PROMPT = """\
You are an SEO expert. Plan the pages of a website.

Language: {language}
Country: {country}

The site has exactly {count} pages, in this order (template titles):
{pages}

For each page return a URL path (single level, lowercase, hyphens only), a
short page title in {language}, and SEO metadata in {language}.
The first page is always the home page with path "/".
Answer only in the given JSON schema, one entry per page in the order above.
"""


def fallback_seo(prompt: str, page_title: str, country: str, language: str) -> SeoMetadata:
    """Deterministic metadata used when the SEO model is unavailable."""
    base = (prompt or "Website").strip()
    title = f"{base[:40]} - {page_title}"[:60]
    description = f"{page_title}: {base}"[:160]
    keywords = ", ".join(
        dict.fromkeys(w for w in (page_title.lower(), country.lower(), language.lower()) if w)
    )
    return SeoMetadata(
        title=title,
        description=description,
        keywords=keywords,
        og_title=title,
        og_description=description,
    )


def _fallback_pages(
    template_pages: list[TemplatePage], prompt: str, country: str, language: str
) -> list[PlannedPage]:
    pages = []
    for i, page in enumerate(template_pages):
        title = "Home" if i == 0 else normalize_page_title(page.title, f"/page-{i}")
        path = "/" if i == 0 else normalize_page_path("", title, i)
        pages.append(PlannedPage(
            path=path,
            title=title,
            seo=fallback_seo(prompt, title, country, language),
            layout=list(page.layout),
        ))
    return _dedupe_paths(pages)


def _dedupe_paths(pages: list[PlannedPage]) -> list[PlannedPage]:
    seen: set[str] = set()
    for page in pages:
        path = page.path
        n = 2
        while path in seen:
            path = f"{page.path}-{n}"
            n += 1
        page.path = path
        seen.add(path)
    return pages


def _from_reply(
    reply: _PagesSchema,
    template_pages: list[TemplatePage],
    prompt: str,
    country: str,
    language: str,
) -> list[PlannedPage]:
    pages = []
    for i, page in enumerate(template_pages):
        item = reply.pages[i] if i < len(reply.pages) else None
        if i == 0:
            path, title = "/", "Home"
        else:
            title = normalize_page_title((item.page_title if item else "") or page.title, f"/page-{i}")
            path = normalize_page_path(item.page_path if item else "", title, i)
            if path == "/":
                path = normalize_page_path("", title, i)
        if item is not None and item.seo is not None:
            seo = SeoMetadata(**item.seo.model_dump())
        else:
            seo = fallback_seo(prompt, title, country, language)
        pages.append(PlannedPage(path=path, title=title, seo=seo, layout=list(page.layout)))
    return _dedupe_paths(pages)


async def plan_pages(
    gateway: ContentGateway,
    settings: Settings,
    template_pages: list[TemplatePage],
    prompt: str,
    country: str,
    language: str,
) -> tuple[list[PlannedPage], Usage]:
    """Return one PlannedPage per template page. Page 0 is always ``("/", "Home")``."""
    if not template_pages:
        return [], Usage()

    system_prompt = _SYSTEM_PROMPT.format(
        language=language,
        country=country,
        count=len(template_pages),
        pages="\n".join(
            f"{i + 1}. {p.title or 'Page'} (sections: {', '.join(p.layout)})"
            for i, p in enumerate(template_pages)
        ),
    )
    try:
        reply, usage = await gateway.complete_structured(
            system_prompt,
            json.dumps({"prompt": prompt, "country": country, "language": language}, ensure_ascii=False),
            _PagesSchema,
            model=settings.seo_model,
        )
        pages = _from_reply(reply, template_pages, prompt, country, language)
    except Exception as exc:
        logger.warning("Page planning failed, using fallback SEO metadata: %s", exc)
        return _fallback_pages(template_pages, prompt, country, language), Usage()

    logger.info("Planned %d pages: %s", len(pages), ", ".join(p.path for p in pages))
    return pages, usage
