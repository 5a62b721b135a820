#!/usr/bin/env python3
"""Generate, regenerate or partially regenerate a block-composed website.

Usage:
    python run_generator.py generate --template landing --prompt "Bakery in Vienna" \\
        --country AT --language de [--name NAME] [--domain example.com]
    python run_generator.py regenerate --site SITE_ID [--prompt TEXT]
    python run_generator.py regenerate-block --site SITE_ID --page services.html \\
        --block features-2 [--global] [--prompt TEXT]

Preview documents are written to ``<project_dir>/output/<site-id>/``.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from settings import Settings
from models.theme import ThemeWhitelist
from pipeline.assembler import GenerationResult, PipelineContext, Stores, create_site
from pipeline.errors import GenerationError
from pipeline.synchronizer import regenerate_block, regenerate_site
from utils.llm_gateway import ContentGateway
from utils.stores import FileArchiveStorage, FileBlockStore, FileSiteStore, FileTemplateStore

logger = logging.getLogger("run_generator")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate a new site from a template")
    gen.add_argument("--template", required=True, help="Site template id")
    gen.add_argument("--prompt", required=True, help="What the site is about")
    gen.add_argument("--country", required=True)
    gen.add_argument("--language", required=True)
    gen.add_argument("--name", default="")
    gen.add_argument("--domain", default=None, help="Domain for sitemap.xml and nginx.conf")

    regen = sub.add_parser("regenerate", help="Regenerate every page of a stored site")
    regen.add_argument("--site", required=True, dest="site_id")
    regen.add_argument("--prompt", default=None)

    block = sub.add_parser("regenerate-block", help="Regenerate one block of a stored site")
    block.add_argument("--site", required=True, dest="site_id")
    block.add_argument("--page", required=True, help="Page file name, e.g. index.html")
    block.add_argument("--block", required=True, dest="generation_id", help="Generation id, e.g. hero-1")
    block.add_argument("--global", action="store_true", dest="is_global",
                       help="Replace the block on every page showing its category")
    block.add_argument("--prompt", default=None)
    return parser


def _write_previews(settings: Settings, site_id: str, result: GenerationResult) -> Path:
    out_dir = settings.output_dir / site_id
    out_dir.mkdir(parents=True, exist_ok=True)
    for preview in result.previews:
        (out_dir / preview.filename).write_text(preview.html, encoding="utf-8")
        if preview.has_errors:
            logger.warning("%s has failed blocks", preview.filename)
    return out_dir


async def _run(args: argparse.Namespace, settings: Settings) -> tuple[str, GenerationResult]:
    ctx = PipelineContext(
        settings=settings,
        gateway=ContentGateway(settings),
        block_store=FileBlockStore(settings),
        whitelist=ThemeWhitelist.load_or_default(settings.theme_variables_path),
    )
    stores = Stores(
        templates=FileTemplateStore(settings),
        sites=FileSiteStore(settings),
        archives=FileArchiveStorage(settings),
    )
    if args.command == "generate":
        record, result = await create_site(
            ctx, stores, args.template, args.prompt, args.country, args.language,
            name=args.name, domain=args.domain,
        )
    elif args.command == "regenerate":
        record, result = await regenerate_site(ctx, stores, args.site_id, prompt=args.prompt)
    else:
        record, result = await regenerate_block(
            ctx, stores, args.site_id, args.page, args.generation_id,
            is_global=args.is_global, prompt=args.prompt,
        )
    return record.id, result


def main() -> None:
    args = _parser().parse_args()
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        site_id, result = asyncio.run(_run(args, settings))
    except GenerationError as exc:
        logger.error("Aborted: %s", exc)
        sys.exit(1)

    out_dir = _write_previews(settings, site_id, result)
    cost = result.cost
    logger.info(
        "=== Done: site %s, previews → %s ===", site_id, out_dir,
    )
    logger.info(
        "Tokens %d (in %d / out %d), OpenAI $%.4f, images $%.4f, total $%.4f",
        cost.usage.total_tokens,
        cost.usage.prompt_tokens,
        cost.usage.completion_tokens,
        cost.openai_total_price,
        cost.usage.image_cost,
        cost.total_cost,
    )


if __name__ == "__main__":
    main()
