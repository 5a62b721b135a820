from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.block import BlockDefinition, BlockInstance, Expansion
from models.usage import CostReport


class SeoMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    description: str = ""
    keywords: str = ""
    og_title: str = Field(default="", alias="ogTitle")
    og_description: str = Field(default="", alias="ogDescription")


class TemplatePage(BaseModel):
    """One page of a site template: a title and the ordered block categories."""

    title: str = ""
    layout: list[str] = Field(default_factory=list)

    @field_validator("layout", mode="before")
    @classmethod
    def accept_slot_objects(cls, v: Any) -> Any:
        # Stored templates list slots as {"type": "<category>"}
        if isinstance(v, list):
            return [s.get("type") if isinstance(s, dict) else s for s in v]
        return v


class SiteTemplate(BaseModel):
    """Page layout and global block list selected by a template identifier."""

    id: str
    name: str = ""
    pages: list[TemplatePage] = Field(default_factory=list)
    global_blocks: list[str] = Field(default_factory=list)
    global_css: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_definition(cls, template_id: str, name: str, definition: dict) -> "SiteTemplate":
        """Build from the stored ``{"pages": [...], "globals": {"blocks": [...], "css": {...}}}`` form."""
        globals_ = definition.get("globals") or {}
        return cls(
            id=str(template_id),
            name=name,
            pages=definition.get("pages") or [],
            global_blocks=[
                b.get("type") if isinstance(b, dict) else b
                for b in globals_.get("blocks") or []
            ],
            global_css=globals_.get("css") or {},
        )


class PlannedPage(BaseModel):
    path: str
    title: str
    seo: SeoMetadata = Field(default_factory=SeoMetadata)
    layout: list[str] = Field(default_factory=list)

    @property
    def filename(self) -> str:
        return page_filename(self.path)


def page_filename(path: str) -> str:
    """``/`` is the home page (``index.html``); every other path maps to ``{slug}.html``."""
    if path == "/":
        return "index.html"
    return f"{path.strip('/')}.html"


class StoredBlock(BaseModel):
    """Serializable block configuration kept for later partial regeneration."""

    block_id: str | None = None
    category: str
    generation_id: str
    is_global: bool = False
    has_error: bool = False
    error: str | None = None
    definition: BlockDefinition | None = None
    expansion: Expansion | None = None
    variables: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_instance(cls, instance: BlockInstance) -> "StoredBlock":
        return cls(
            block_id=instance.block_id,
            category=instance.category,
            generation_id=instance.generation_id,
            is_global=instance.is_global,
            has_error=instance.has_error,
            error=instance.error,
            definition=instance.definition,
            expansion=instance.expansion,
            variables=instance.variables,
        )

    def to_instance(self, page_index: int, slot_index: int) -> BlockInstance:
        return BlockInstance(
            category=self.category,
            generation_id=self.generation_id,
            is_global=self.is_global,
            page_index=page_index,
            slot_index=slot_index,
            definition=self.definition,
            expansion=self.expansion,
            variables=self.variables,
            has_error=self.has_error,
            error=self.error,
        )


class PageConfig(BaseModel):
    title: str
    path: str
    filename: str
    seo: SeoMetadata = Field(default_factory=SeoMetadata)
    blocks: list[StoredBlock] = Field(default_factory=list)

    def find_block(self, generation_id: str) -> StoredBlock | None:
        return next((b for b in self.blocks if b.generation_id == generation_id), None)


class SiteConfig(BaseModel):
    """Detailed site configuration: full resolved variables, for stored state."""

    pages: list[PageConfig] = Field(default_factory=list)
    theme: dict[str, str] = Field(default_factory=dict)

    def page_by_filename(self, filename: str) -> PageConfig | None:
        return next((p for p in self.pages if p.filename == filename), None)

    def redacted(self) -> list["RedactedPage"]:
        return [
            RedactedPage(
                title=p.title,
                path=p.path,
                filename=p.filename,
                blocks=[
                    RedactedBlock(
                        block_id=b.block_id,
                        category=b.category,
                        generation_id=b.generation_id,
                        is_global=b.is_global,
                        has_error=b.has_error,
                    )
                    for b in p.blocks
                ],
            )
            for p in self.pages
        ]


class RedactedBlock(BaseModel):
    block_id: str | None = None
    category: str
    generation_id: str
    is_global: bool = False
    has_error: bool = False


class RedactedPage(BaseModel):
    title: str
    path: str
    filename: str
    blocks: list[RedactedBlock] = Field(default_factory=list)


class SitePage(BaseModel):
    """A fully rendered page: the archive document plus its preview rendition."""

    path: str
    title: str
    seo: SeoMetadata = Field(default_factory=SeoMetadata)
    instances: list[BlockInstance] = Field(default_factory=list)
    html: str = ""
    preview_html: str = ""

    @property
    def filename(self) -> str:
        return page_filename(self.path)

    @property
    def page_has_errors(self) -> bool:
        return any(i.has_error for i in self.instances)

    def to_config(self) -> PageConfig:
        return PageConfig(
            title=self.title,
            path=self.path,
            filename=self.filename,
            seo=self.seo,
            blocks=[StoredBlock.from_instance(i) for i in self.instances],
        )


class PagePreview(BaseModel):
    filename: str
    html: str
    has_errors: bool = False


class SiteRecord(BaseModel):
    """A generated site as persisted by the site store."""

    id: str
    name: str = ""
    prompt: str = ""
    country: str = ""
    language: str = ""
    template_id: str = ""
    domain: str | None = None
    archive_name: str
    config: SiteConfig = Field(default_factory=SiteConfig)
    cost: CostReport | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
