"""Site Assembler — drives one generation request through its states.

    PagesPlanned → GlobalBlocksResolved → PageBlocksResolved
                 → ThemeResolved → PagesRendered → ArchiveBuilt

Any top-level failure ends in ``Aborted`` and propagates; block failures are
contained in their instances and only surface as ``page_has_errors``.

Theme synthesis starts first and runs alongside page planning and block
generation. Page planning and the global blocks run concurrently, then every
page-local slot becomes its own task. Each task returns its own Usage; the
totals are folded once everything has settled.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum

from models.block import BlockInstance
from models.site import (
    PagePreview,
    PlannedPage,
    RedactedPage,
    SiteConfig,
    SiteRecord,
    SitePage,
    SiteTemplate,
)
from models.theme import ThemeWhitelist
from models.usage import CostReport, Usage
from pipeline.errors import TOP_LEVEL_ERRORS
from pipeline.stage1_pages import plan_pages
from pipeline.stage3_content import (
    attach_navigation,
    build_navigation,
    fill_anchors,
    prepare_block,
    prepare_global_blocks,
)
from pipeline.stage4_theme import merge_theme, synthesize_theme
from pipeline.stage5_render import build_page
from pipeline.stage6_package import pack_archive
from settings import Settings
from utils.compensation import Compensations
from utils.llm_gateway import ContentGateway
from utils.site_archive import SiteArchive, new_archive_name
from utils.stores import ArchiveStorage, BlockStore, SiteStore, TemplateStore

logger = logging.getLogger(__name__)


class GenerationState(str, Enum):
    STARTED = "Started"
    PAGES_PLANNED = "PagesPlanned"
    GLOBAL_BLOCKS_RESOLVED = "GlobalBlocksResolved"
    PAGE_BLOCKS_RESOLVED = "PageBlocksResolved"
    THEME_RESOLVED = "ThemeResolved"
    PAGES_RENDERED = "PagesRendered"
    ARCHIVE_BUILT = "ArchiveBuilt"
    ABORTED = "Aborted"


@dataclass
class PipelineContext:
    """Collaborators shared by every request."""

    settings: Settings
    gateway: ContentGateway
    block_store: BlockStore
    rng: random.Random = field(default_factory=random.Random)
    whitelist: ThemeWhitelist = field(default_factory=ThemeWhitelist)


@dataclass
class Stores:
    templates: TemplateStore
    sites: SiteStore
    archives: ArchiveStorage


@dataclass
class GenerationResult:
    pages: list[SitePage]
    theme: dict[str, str]
    archive: SiteArchive
    cost: CostReport
    state: GenerationState = GenerationState.ARCHIVE_BUILT

    @property
    def usage(self) -> Usage:
        return self.cost.usage

    @property
    def previews(self) -> list[PagePreview]:
        return [
            PagePreview(filename=p.filename, html=p.preview_html, has_errors=p.page_has_errors)
            for p in self.pages
        ]

    @property
    def site_config_detailed(self) -> SiteConfig:
        return SiteConfig(pages=[p.to_config() for p in self.pages], theme=self.theme)

    @property
    def site_config(self) -> list[RedactedPage]:
        return self.site_config_detailed.redacted()


class _Tracker:
    def __init__(self) -> None:
        self.state = GenerationState.STARTED

    def advance(self, state: GenerationState) -> None:
        logger.info("State %s → %s", self.state.value, state.value)
        self.state = state


def cost_report(settings: Settings, usage: Usage) -> CostReport:
    return CostReport(
        usage=usage,
        price_input_per_million=settings.price_input_per_million,
        price_output_per_million=settings.price_output_per_million,
    )


def place_global(instance: BlockInstance, page_index: int, slot_index: int) -> BlockInstance:
    """Per-page copy of a global instance; its usage stays with the original."""
    placed = instance.model_copy(deep=True)
    placed.generation_id = f"{instance.category}-{slot_index}"
    placed.page_index = page_index
    placed.slot_index = slot_index
    placed.usage = Usage()
    return placed


def render_pages(
    pages: list[PlannedPage],
    instances_by_page: list[list[BlockInstance]],
    theme: dict[str, str],
    language: str,
    country: str,
) -> list[SitePage]:
    rendered = []
    for page, instances in zip(pages, instances_by_page):
        site_page = build_page(page.path, page.title, page.seo, instances, theme, language, country)
        if site_page.page_has_errors:
            logger.warning(
                "%s: %d of %d blocks failed",
                site_page.filename,
                sum(1 for i in instances if i.has_error),
                len(instances),
            )
        rendered.append(site_page)
    return rendered


async def generate_site(
    ctx: PipelineContext,
    template: SiteTemplate,
    prompt: str,
    country: str,
    language: str,
    archive: SiteArchive | None = None,
    domain: str | None = None,
) -> GenerationResult:
    """Generate every page of ``template`` into ``archive`` (a fresh one by default).

    Raises ThemeSynthesisFailed (or any other top-level error) after moving to
    ``Aborted``; nothing is persisted here.
    """
    settings = ctx.settings
    archive = archive if archive is not None else SiteArchive()
    tracker = _Tracker()
    max_level = settings.max_expansion_level

    theme_task = asyncio.create_task(
        synthesize_theme(ctx.gateway, settings, prompt, ctx.whitelist)
    )
    try:
        (pages, plan_usage), (globals_map, labels) = await asyncio.gather(
            plan_pages(ctx.gateway, settings, template.pages, prompt, country, language),
            prepare_global_blocks(
                ctx.gateway,
                ctx.block_store,
                archive,
                template.global_blocks,
                template.pages,
                prompt,
                country,
                language,
                max_level,
            ),
        )
        tracker.advance(GenerationState.PAGES_PLANNED)

        navigation = build_navigation(pages, labels)
        for instance in globals_map.values():
            attach_navigation(instance, navigation)
        tracker.advance(GenerationState.GLOBAL_BLOCKS_RESOLVED)

        instances_by_page: list[list[BlockInstance]] = []
        jobs = []
        for page_index, page in enumerate(pages):
            row: list[BlockInstance] = []
            for slot_index, category in enumerate(page.layout):
                if category in globals_map:
                    row.append(place_global(globals_map[category], page_index, slot_index))
                    continue
                slot = BlockInstance(
                    category=category,
                    generation_id=f"{category}-{slot_index}",
                    page_index=page_index,
                    slot_index=slot_index,
                )
                row.append(slot)
                jobs.append(prepare_block(
                    ctx.gateway,
                    ctx.block_store,
                    archive,
                    slot,
                    prompt,
                    country,
                    language,
                    max_level,
                ))
            instances_by_page.append(row)

        logger.info("Generating %d page blocks across %d pages", len(jobs), len(pages))
        for instance, _ in await asyncio.gather(*jobs):
            instances_by_page[instance.page_index][instance.slot_index] = instance

        for row in instances_by_page:
            fill_anchors(row, ctx.rng)
        tracker.advance(GenerationState.PAGE_BLOCKS_RESOLVED)

        theme, theme_usage = await theme_task
        theme = merge_theme(template.global_css, theme)
        tracker.advance(GenerationState.THEME_RESOLVED)

        site_pages = render_pages(pages, instances_by_page, theme, language, country)
        tracker.advance(GenerationState.PAGES_RENDERED)

        pack_archive(archive, site_pages, domain, settings)
        tracker.advance(GenerationState.ARCHIVE_BUILT)
    except Exception as exc:
        theme_task.cancel()
        # retrieves the theme task's own failure, if any
        await asyncio.gather(theme_task, return_exceptions=True)
        tracker.advance(GenerationState.ABORTED)
        if not isinstance(exc, TOP_LEVEL_ERRORS):
            logger.exception("Unexpected failure during generation")
        raise

    usage = Usage.total([
        plan_usage,
        theme_usage,
        *(i.usage for i in globals_map.values()),
        *(i.usage for row in instances_by_page for i in row),
    ])
    logger.info(
        "Site generated: %d pages, %d tokens, image cost $%.4f",
        len(site_pages), usage.total_tokens, usage.image_cost,
    )
    return GenerationResult(
        pages=site_pages,
        theme=theme,
        archive=archive,
        cost=cost_report(settings, usage),
        state=tracker.state,
    )


async def create_site(
    ctx: PipelineContext,
    stores: Stores,
    template_id: str,
    prompt: str,
    country: str,
    language: str,
    name: str = "",
    domain: str | None = None,
) -> tuple[SiteRecord, GenerationResult]:
    """Generate a new site, upload its archive and register the site record.

    If the record cannot be written the uploaded archive is deleted again
    before the error propagates.
    """
    template = await stores.templates.get_template(template_id)
    result = await generate_site(ctx, template, prompt, country, language, domain=domain)

    compensations = Compensations()
    archive_name = new_archive_name()
    try:
        await stores.archives.upload(archive_name, result.archive.to_bytes())
        compensations.add(
            f"delete archive {archive_name}", lambda: stores.archives.delete(archive_name)
        )
        record = await stores.sites.insert(SiteRecord(
            id="",
            name=name or template.name,
            prompt=prompt,
            country=country,
            language=language,
            template_id=template.id,
            domain=domain,
            archive_name=archive_name,
            config=result.site_config_detailed,
            cost=result.cost,
        ))
    except Exception:
        await compensations.run()
        raise
    logger.info("Site %s stored as %s", record.id, archive_name)
    return record, result
