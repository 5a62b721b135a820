"""Persistence collaborators: block, template and site stores plus archive storage.

The pipeline only depends on the Protocols. The filesystem implementations
below keep everything under ``settings.project_dir``:

    blocks/<category>/<name>.zip | <name>/   block packages
    site_templates/<id>.json                 site templates
    sites/<id>.json                          stored SiteRecords
    archives/<name>.zip                      generated site archives
"""
import io
import json
import logging
import random
import secrets
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from models.block import BlockDefinition
from models.site import SiteRecord, SiteTemplate
from pipeline.errors import ArchiveUploadFailure, BlockNotFound, SiteNotFound, TemplateNotFound
from settings import Settings

logger = logging.getLogger(__name__)

_DEFINITION_FILE = "definition.json"
_MARKUP_FILE = "template.html"
_STYLE_FILES = ("styles.scss", "styles.css")
_PACKAGE_FILES = (_DEFINITION_FILE, _MARKUP_FILE, *_STYLE_FILES)


class BlockStore(Protocol):
    async def fetch_random_active_block(self, category: str) -> BlockDefinition: ...


class TemplateStore(Protocol):
    async def get_template(self, template_id: str) -> SiteTemplate: ...


class SiteStore(Protocol):
    async def get(self, site_id: str) -> SiteRecord: ...

    async def insert(self, record: SiteRecord) -> SiteRecord: ...

    async def update(self, record: SiteRecord) -> SiteRecord: ...


class ArchiveStorage(Protocol):
    async def upload(self, name: str, data: bytes) -> str: ...

    async def download(self, name: str) -> bytes: ...

    async def delete(self, name: str) -> None: ...

    async def exists(self, name: str) -> bool: ...


# ---------------------------------------------------------------------------
# Block packages
# ---------------------------------------------------------------------------

def parse_block_package(files: dict[str, str], category: str, block_id: str | None = None) -> BlockDefinition:
    """Build a BlockDefinition from the text files of a block package."""
    if _DEFINITION_FILE not in files:
        raise BlockNotFound(category, f"package {block_id} has no {_DEFINITION_FILE}")
    definition = json.loads(files[_DEFINITION_FILE])
    style = next((files[name] for name in _STYLE_FILES if name in files), "")
    return BlockDefinition(
        block_id=block_id,
        category=category,
        markup_template=files.get(_MARKUP_FILE, ""),
        style_template=style,
        field_schema=definition.get("variables") or {},
    )


def _read_package(path: Path) -> dict[str, str]:
    """Text files of a package; previews and other assets are ignored."""
    if path.is_dir():
        return {
            p.name: p.read_text(encoding="utf-8")
            for p in path.iterdir()
            if p.is_file() and p.name in _PACKAGE_FILES
        }
    with zipfile.ZipFile(io.BytesIO(path.read_bytes())) as zf:
        return {
            Path(info.filename).name: zf.read(info.filename).decode("utf-8")
            for info in zf.infolist()
            if not info.is_dir() and Path(info.filename).name in _PACKAGE_FILES
        }


def _is_active(files: dict[str, str]) -> bool:
    try:
        return bool(json.loads(files.get(_DEFINITION_FILE, "{}")).get("isActive", True))
    except json.JSONDecodeError:
        return False


class FileBlockStore:
    def __init__(self, settings: Settings, rng: random.Random | None = None) -> None:
        self.root = settings.blocks_dir
        self.rng = rng or random.Random()

    async def fetch_random_active_block(self, category: str) -> BlockDefinition:
        """Pick one active package of ``category`` at random.

        Packages are fetched fresh on every call; nothing is cached across requests.
        """
        category_dir = self.root / category
        if not category_dir.is_dir():
            raise BlockNotFound(category)
        candidates: list[tuple[str, dict[str, str]]] = []
        for path in sorted(category_dir.iterdir()):
            if not (path.is_dir() or path.suffix == ".zip"):
                continue
            try:
                files = _read_package(path)
            except (OSError, UnicodeDecodeError, zipfile.BadZipFile) as exc:
                logger.warning("Skipping unreadable block package %s: %s", path, exc)
                continue
            if _is_active(files):
                candidates.append((path.stem, files))
        if not candidates:
            raise BlockNotFound(category)
        block_id, files = self.rng.choice(candidates)
        return parse_block_package(files, category, block_id=f"{category}/{block_id}")


# ---------------------------------------------------------------------------
# Templates and sites
# ---------------------------------------------------------------------------

class FileTemplateStore:
    def __init__(self, settings: Settings) -> None:
        self.root = settings.site_templates_dir

    async def get_template(self, template_id: str) -> SiteTemplate:
        path = self.root / f"{template_id}.json"
        if not path.exists():
            raise TemplateNotFound(str(template_id))
        data = json.loads(path.read_text(encoding="utf-8"))
        if not data.get("isActive", True):
            raise TemplateNotFound(str(template_id))
        return SiteTemplate.from_definition(
            str(template_id), data.get("name", ""), data.get("definition") or {}
        )


class FileSiteStore:
    def __init__(self, settings: Settings) -> None:
        self.root = settings.sites_dir

    async def get(self, site_id: str) -> SiteRecord:
        path = self.root / f"{site_id}.json"
        if not path.exists():
            raise SiteNotFound(str(site_id))
        return SiteRecord.model_validate_json(path.read_text(encoding="utf-8"))

    async def insert(self, record: SiteRecord) -> SiteRecord:
        self.root.mkdir(parents=True, exist_ok=True)
        if not record.id:
            record = record.model_copy(update={"id": secrets.token_hex(4)})
        self._write(record)
        return record

    async def update(self, record: SiteRecord) -> SiteRecord:
        if not (self.root / f"{record.id}.json").exists():
            raise SiteNotFound(record.id)
        record = record.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        self._write(record)
        return record

    def _write(self, record: SiteRecord) -> None:
        path = self.root / f"{record.id}.json"
        path.write_text(record.model_dump_json(indent=2), encoding="utf-8")


# ---------------------------------------------------------------------------
# Archive storage
# ---------------------------------------------------------------------------

class FileArchiveStorage:
    def __init__(self, settings: Settings) -> None:
        self.root = settings.archives_dir

    async def upload(self, name: str, data: bytes) -> str:
        path = self.root / name
        if path.exists():
            raise ArchiveUploadFailure(f"Archive already exists: {name}")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise ArchiveUploadFailure(f"Upload of {name} failed: {exc}") from exc
        logger.info("Uploaded archive %s (%d bytes)", name, len(data))
        return name

    async def download(self, name: str) -> bytes:
        return (self.root / name).read_bytes()

    async def delete(self, name: str) -> None:
        (self.root / name).unlink(missing_ok=True)
        logger.info("Deleted archive %s", name)

    async def exists(self, name: str) -> bool:
        return (self.root / name).exists()
