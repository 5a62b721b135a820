"""Tests for the Archive Synchronizer: full rebuild, scoped rebuild and regeneration flows."""
import json
import random
from unittest.mock import AsyncMock

import pytest

from models.block import BlockDefinition
from models.site import PageConfig, StoredBlock
from pipeline.assembler import PipelineContext, Stores, create_site
from pipeline.errors import BlockNotFound, SiteNotFound
from pipeline.synchronizer import (
    collect_image_paths,
    regenerate_block,
    regenerate_site,
    replace_archive,
    scoped_rebuild,
)
from utils.site_archive import SiteArchive
from utils.stores import FileArchiveStorage, FileSiteStore, FileTemplateStore

_CONTENT = {
    "header": {
        "cta": {"href": "#", "label": "Contact"},
        "navigationLabels": ["Start", "Leistungen"],
    },
    "hero": {
        "title": {"value": "Fresh bread"},
        "image": {"href": "bread on a table", "alt": "Bread"},
        "background": {"href": "flour dust", "alt": "Flour"},
    },
    "features": {
        "title": {"value": "Our range"},
        "image": {"href": "croissants", "alt": "Croissants"},
    },
}


def _blocks() -> list[BlockDefinition]:
    return [
        BlockDefinition(
            block_id="header/a",
            category="header",
            markup_template=(
                '<header id="{{ _blockId }}">'
                '{% for item in menu.value %}<a href="{{ item.href }}">{{ item.label }}</a>{% endfor %}'
                '<a href="{{ cta.href }}">{{ cta.label }}</a></header>'
            ),
            field_schema={"menu": {"type": "nav"}, "cta": {"type": "anchor"}},
        ),
        BlockDefinition(
            block_id="hero/a",
            category="hero",
            markup_template=(
                '<section id="{{ _blockId }}" style="background: url({{ background.href }})">'
                '<h1>{{ title.value }}</h1><img src="{{ image.href }}"></section>'
            ),
            style_template="#_blockId h1 { margin: 0; }",
            field_schema={
                "title": {"type": "text"},
                "image": {"type": "image"},
                "background": {"type": "image"},
            },
        ),
        BlockDefinition(
            block_id="features/a",
            category="features",
            markup_template='<section id="{{ _blockId }}"><img src="{{ image.href }}"></section>',
            style_template="#_blockId { padding: 2rem; }",
            field_schema={"title": {"type": "text"}, "image": {"type": "image"}},
        ),
    ]


def _write_template(settings) -> None:
    (settings.site_templates_dir / "landing.json").write_text(json.dumps({
        "name": "Landing",
        "definition": {
            "pages": [
                {"title": "Home", "layout": ["header", "hero", "features"]},
                {"title": "Services", "layout": ["header", "features"]},
            ],
            "globals": {"blocks": ["header"]},
        },
    }), encoding="utf-8")


@pytest.fixture
def ctx(tmp_settings, block_store, make_gateway) -> PipelineContext:
    for block in _blocks():
        block_store.add(block)
    return PipelineContext(
        settings=tmp_settings,
        gateway=make_gateway(content=_CONTENT),
        block_store=block_store,
        rng=random.Random(0),
    )


@pytest.fixture
def stores(tmp_settings) -> Stores:
    _write_template(tmp_settings)
    return Stores(
        templates=FileTemplateStore(tmp_settings),
        sites=FileSiteStore(tmp_settings),
        archives=FileArchiveStorage(tmp_settings),
    )


async def _archive_of(stores: Stores, site_id: str) -> SiteArchive:
    record = await stores.sites.get(site_id)
    return SiteArchive.from_bytes(await stores.archives.download(record.archive_name))


# ---------------------------------------------------------------------------
# collect_image_paths / scoped_rebuild
# ---------------------------------------------------------------------------

def test_collect_image_paths_scans_nested_values():
    variables = {
        "image": {"href": "images/img_a.png", "preview": "data:image/png;base64,aW1hZ2VzLw=="},
        "items": {"values": [{"photo": {"href": "images/img_b.png"}}, {"photo": {"href": "images/img_a.png"}}]},
        "bg": "url(https://example.com/site/images/img_c.png)",
        "link": {"href": "https://example.com"},
    }
    assert collect_image_paths(variables) == [
        "images/img_a.png",
        "images/img_b.png",
        "images/img_c.png",
    ]


def test_scoped_rebuild_removes_only_owned_images():
    archive = SiteArchive({
        "index.html": b"<html>",
        "images/img_a.png": b"a",
        "images/img_b.png": b"b",
        "images/img_other.png": b"o",
    })
    page = PageConfig(title="Home", path="/", filename="index.html", blocks=[
        StoredBlock(category="hero", generation_id="hero-0", variables={
            "image": {"href": "images/img_a.png"}, "bg": {"href": "images/img_b.png"},
        }),
        StoredBlock(category="features", generation_id="features-1", variables={
            "image": {"href": "images/img_other.png"},
        }),
    ])

    working, removed = scoped_rebuild(archive, page, "hero-0")

    assert removed == ["images/img_a.png", "images/img_b.png"]
    assert sorted(working.paths) == ["images/img_other.png", "index.html"]
    assert len(archive) == 4  # prior archive untouched


def test_scoped_rebuild_unknown_block():
    page = PageConfig(title="Home", path="/", filename="index.html")
    with pytest.raises(BlockNotFound):
        scoped_rebuild(SiteArchive(), page, "hero-9")


# ---------------------------------------------------------------------------
# replace_archive
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_replace_archive_keeps_prior_when_record_update_fails(tmp_settings):
    storage = FileArchiveStorage(tmp_settings)
    await storage.upload("site-old.zip", b"old")
    archive = SiteArchive({"stale.html": b"x"})

    with pytest.raises(RuntimeError):
        await replace_archive(
            storage, archive, [], None, tmp_settings, "site-old.zip",
            AsyncMock(side_effect=RuntimeError("db down")),
        )

    assert [p.name for p in tmp_settings.archives_dir.iterdir()] == ["site-old.zip"]


@pytest.mark.asyncio
async def test_replace_archive_swaps_archives(tmp_settings):
    storage = FileArchiveStorage(tmp_settings)
    await storage.upload("site-old.zip", b"old")
    archive = SiteArchive({"stale.html": b"x", "images/img_a.png": b"a"})
    on_stored = AsyncMock()

    new_name = await replace_archive(storage, archive, [], None, tmp_settings, "site-old.zip", on_stored)

    on_stored.assert_awaited_once_with(new_name)
    assert not await storage.exists("site-old.zip")
    stored = SiteArchive.from_bytes(await storage.download(new_name))
    assert stored.paths == ["images/img_a.png"]


# ---------------------------------------------------------------------------
# regenerate_block
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_block_regeneration_leaves_other_pages_byte_identical(ctx, stores):
    record, _ = await create_site(ctx, stores, "landing", "Bakery", "AT", "de")
    before = await _archive_of(stores, record.id)
    hero = record.config.page_by_filename("index.html").find_block("hero-1")
    old_hero_images = collect_image_paths(hero.variables)
    assert len(old_hero_images) == 2

    updated, result = await regenerate_block(ctx, stores, record.id, "index.html", "hero-1")
    after = await _archive_of(stores, record.id)

    assert after.read("services.html") == before.read("services.html")
    services_images = collect_image_paths(
        [b.variables for b in record.config.page_by_filename("services.html").blocks]
    )
    for path in services_images:
        assert after.read(path) == before.read(path)

    new_hero = updated.config.page_by_filename("index.html").find_block("hero-1")
    new_hero_images = collect_image_paths(new_hero.variables)
    assert set(before.image_paths()) - set(after.image_paths()) == set(old_hero_images)
    assert set(after.image_paths()) - set(before.image_paths()) == set(new_hero_images)
    assert len(new_hero_images) == 2

    assert updated.archive_name != record.archive_name
    assert not await stores.archives.exists(record.archive_name)
    assert result.pages[0].filename == "index.html"


@pytest.mark.asyncio
async def test_global_block_regeneration_updates_every_page(ctx, stores):
    record, _ = await create_site(ctx, stores, "landing", "Bakery", "AT", "de")
    ctx.gateway.content["header"] = {
        "cta": {"href": "#", "label": "Call us"},
        "navigationLabels": ["Home", "Angebot"],
    }

    updated, _ = await regenerate_block(ctx, stores, record.id, "services.html", "header-0", is_global=True)
    after = await _archive_of(stores, updated.id)

    for filename in ("index.html", "services.html"):
        html = after.read_text(filename)
        assert '<a href="services.html">Angebot</a>' in html
        assert ">Call us</a>" in html
        header = updated.config.page_by_filename(filename).find_block("header-0")
        assert header.is_global
        assert header.variables["cta"]["href"].startswith("#")


@pytest.mark.asyncio
async def test_regenerating_unknown_block_fails(ctx, stores):
    record, _ = await create_site(ctx, stores, "landing", "Bakery", "AT", "de")
    with pytest.raises(BlockNotFound):
        await regenerate_block(ctx, stores, record.id, "index.html", "pricing-7")
    with pytest.raises(BlockNotFound):
        await regenerate_block(ctx, stores, record.id, "missing.html", "hero-1")
    assert await stores.archives.exists(record.archive_name)


@pytest.mark.asyncio
async def test_regenerating_block_of_unknown_site_fails(ctx, stores):
    with pytest.raises(SiteNotFound):
        await regenerate_block(ctx, stores, "nope", "index.html", "hero-1")


# ---------------------------------------------------------------------------
# regenerate_site
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_site_regeneration_keeps_images_and_swaps_archive(ctx, stores):
    record, _ = await create_site(ctx, stores, "landing", "Bakery", "AT", "de")
    before = await _archive_of(stores, record.id)

    updated, result = await regenerate_site(ctx, stores, record.id, prompt="Bakery and cafe")
    after = await _archive_of(stores, record.id)

    assert updated.prompt == "Bakery and cafe"
    assert updated.archive_name != record.archive_name
    assert not await stores.archives.exists(record.archive_name)
    assert set(before.image_paths()) <= set(after.image_paths())
    assert len(after.image_paths()) == 2 * len(before.image_paths())
    assert {"index.html", "services.html"} <= set(after.paths)
    assert [p.filename for p in result.previews] == ["index.html", "services.html"]
