"""Archive Synchronizer — rebuild a stored site's archive after regeneration.

Full rebuild (``replace_archive``): drop every file outside ``images/``,
re-add the freshly rendered pages, sitemap and proxy config, upload under a
new name, then remove the prior archive once the new one is recorded.

Scoped rebuild (``scoped_rebuild``): generated images are named at random,
so the files a block owns are recomputed from its stored variables. Exactly
those paths are removed from a working copy before the block is generated
again; every other file is left untouched.
"""
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from models.block import BlockInstance
from models.site import PageConfig, PlannedPage, SiteRecord, SitePage, TemplatePage
from models.usage import Usage
from pipeline.assembler import (
    GenerationResult,
    GenerationState,
    PipelineContext,
    Stores,
    cost_report,
    generate_site,
    place_global,
    render_pages,
)
from pipeline.errors import BlockNotFound
from pipeline.stage3_content import attach_navigation, build_navigation, fill_anchors, prepare_block
from pipeline.stage6_package import pack_archive
from settings import Settings
from utils.compensation import Compensations
from utils.site_archive import IMAGES_PREFIX, SiteArchive, new_archive_name
from utils.stores import ArchiveStorage

logger = logging.getLogger(__name__)

_IMAGE_PATH = re.compile(re.escape(IMAGES_PREFIX) + r"[^\s\"'()<>?#]+")


def collect_image_paths(variables: Any) -> list[str]:
    """Every ``images/...`` path referenced anywhere in a variable tree, in order."""
    found: dict[str, None] = {}

    def visit(value: Any) -> None:
        if isinstance(value, dict):
            for child in value.values():
                visit(child)
        elif isinstance(value, list):
            for child in value:
                visit(child)
        elif isinstance(value, str) and IMAGES_PREFIX in value and not value.startswith("data:"):
            for path in _IMAGE_PATH.findall(value):
                found.setdefault(path, None)

    visit(variables)
    return list(found)


def scoped_rebuild(
    prior_archive: SiteArchive,
    page_config: PageConfig,
    generation_id: str,
) -> tuple[SiteArchive, list[str]]:
    """Working copy of ``prior_archive`` without the target block's images.

    Returns the copy and the removed paths. Raises BlockNotFound when the page
    has no block with ``generation_id``.
    """
    block = page_config.find_block(generation_id)
    if block is None:
        raise BlockNotFound(generation_id, f"not present on page {page_config.filename}")
    working = prior_archive.copy()
    removed = [path for path in collect_image_paths(block.variables) if working.remove(path)]
    logger.info("Scoped rebuild of %s: removed %d images", generation_id, len(removed))
    return working, removed


async def replace_archive(
    storage: ArchiveStorage,
    archive: SiteArchive,
    pages: list[SitePage],
    domain: str | None,
    settings: Settings,
    prior_name: str,
    on_stored: Callable[[str], Awaitable[Any]],
) -> str:
    """Repack ``archive`` from ``pages`` and swap it in for ``prior_name``.

    ``on_stored`` receives the new archive name and records it; if it fails
    the new upload is deleted and the prior archive kept.
    """
    archive.purge_except_images()
    pack_archive(archive, pages, domain, settings)

    compensations = Compensations()
    new_name = new_archive_name()
    try:
        await storage.upload(new_name, archive.to_bytes())
        compensations.add(f"delete archive {new_name}", lambda: storage.delete(new_name))
        await on_stored(new_name)
    except Exception:
        await compensations.run()
        raise

    if prior_name and prior_name != new_name:
        try:
            await storage.delete(prior_name)
        except Exception as exc:
            logger.warning("Could not delete previous archive %s: %s", prior_name, exc)
    return new_name


async def _load_archive(stores: Stores, record: SiteRecord) -> SiteArchive:
    return SiteArchive.from_bytes(await stores.archives.download(record.archive_name))


async def regenerate_site(
    ctx: PipelineContext,
    stores: Stores,
    site_id: str,
    prompt: str | None = None,
) -> tuple[SiteRecord, GenerationResult]:
    """Regenerate every page of a stored site, keeping its existing images."""
    record = await stores.sites.get(site_id)
    template = await stores.templates.get_template(record.template_id)
    prompt = prompt or record.prompt
    archive = await _load_archive(stores, record)
    archive.purge_except_images()

    result = await generate_site(
        ctx, template, prompt, record.country, record.language,
        archive=archive, domain=record.domain,
    )

    async def store(name: str) -> SiteRecord:
        return await stores.sites.update(record.model_copy(update={
            "prompt": prompt,
            "archive_name": name,
            "config": result.site_config_detailed,
            "cost": result.cost,
        }))

    new_name = await replace_archive(
        stores.archives, result.archive, result.pages, record.domain,
        ctx.settings, record.archive_name, store,
    )
    updated = await stores.sites.get(site_id)
    logger.info("Site %s regenerated into %s", site_id, new_name)
    return updated, result


def _stored_instances(page: PageConfig, page_index: int) -> list[BlockInstance]:
    return [b.to_instance(page_index, slot_index) for slot_index, b in enumerate(page.blocks)]


async def regenerate_block(
    ctx: PipelineContext,
    stores: Stores,
    site_id: str,
    page_filename: str,
    generation_id: str,
    is_global: bool = False,
    prompt: str | None = None,
) -> tuple[SiteRecord, GenerationResult]:
    """Regenerate one block of a stored site and rebuild its archive.

    A global block is replaced on every page that shows its category. Every
    other page is re-rendered from its stored configuration, unchanged.
    """
    record = await stores.sites.get(site_id)
    config = record.config
    page_config = config.page_by_filename(page_filename)
    if page_config is None:
        raise BlockNotFound(generation_id, f"site {site_id} has no page {page_filename}")

    archive, removed = scoped_rebuild(
        await _load_archive(stores, record), page_config, generation_id
    )
    target = page_config.find_block(generation_id)
    is_global = is_global or target.is_global
    page_index = config.pages.index(page_config)
    slot_index = page_config.blocks.index(target)

    planned = [PlannedPage(path=p.path, title=p.title, seo=p.seo) for p in config.pages]
    instance, labels = await prepare_block(
        ctx.gateway,
        ctx.block_store,
        archive,
        BlockInstance(
            category=target.category,
            generation_id=target.generation_id,
            is_global=is_global,
            page_index=page_index,
            slot_index=slot_index,
        ),
        prompt or record.prompt,
        record.country,
        record.language,
        ctx.settings.max_expansion_level,
        nav_pages=[TemplatePage(title=p.title) for p in planned] if is_global and len(planned) > 1 else None,
        strict=True,
    )
    if is_global:
        attach_navigation(instance, build_navigation(planned, labels))

    instances_by_page = []
    for index, page in enumerate(config.pages):
        row = _stored_instances(page, index)
        targets: set[str] = set()
        for slot, stored in enumerate(page.blocks):
            replace = (
                (is_global and stored.is_global and stored.category == target.category)
                or (index == page_index and slot == slot_index)
            )
            if replace:
                row[slot] = place_global(instance, index, slot) if is_global else instance
                row[slot].generation_id = stored.generation_id
                targets.add(stored.generation_id)
        if targets:
            fill_anchors(row, ctx.rng, targets=targets)
        instances_by_page.append(row)

    site_pages = render_pages(planned, instances_by_page, config.theme, record.language, record.country)
    result = GenerationResult(
        pages=site_pages,
        theme=config.theme,
        archive=archive,
        cost=cost_report(ctx.settings, instance.usage),
        state=GenerationState.ARCHIVE_BUILT,
    )
    total = instance.usage + (record.cost.usage if record.cost else Usage())

    async def store(name: str) -> SiteRecord:
        return await stores.sites.update(record.model_copy(update={
            "archive_name": name,
            "config": result.site_config_detailed,
            "cost": cost_report(ctx.settings, total),
        }))

    await replace_archive(
        stores.archives, archive, site_pages, record.domain,
        ctx.settings, record.archive_name, store,
    )
    logger.info(
        "Block %s on %s regenerated (%d images replaced)", generation_id, page_filename, len(removed)
    )
    return await stores.sites.get(site_id), result
