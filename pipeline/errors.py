"""Error taxonomy of the generation pipeline.

Block-scoped errors are caught at the block boundary and recorded on the
instance; top-level errors abort the request before any archive is persisted.
"""


class GenerationError(Exception):
    """Base class for every pipeline error."""


class BlockNotFound(GenerationError):
    def __init__(self, category: str, detail: str = "") -> None:
        self.category = category
        message = f"No active block found for type: {category}"
        super().__init__(f"{message} ({detail})" if detail else message)


class ContentGenerationMalformed(GenerationError):
    """The generation service did not return a single parseable JSON object."""


class RenderFailure(GenerationError):
    pass


class StyleCompileFailure(GenerationError):
    pass


class TemplateNotFound(GenerationError):
    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class SiteNotFound(GenerationError):
    def __init__(self, site_id: str) -> None:
        self.site_id = site_id
        super().__init__(f"Site not found: {site_id}")


class ArchiveUploadFailure(GenerationError):
    pass


class SitemapDomainInvalid(GenerationError):
    def __init__(self, domain: str | None, detail: str = "") -> None:
        self.domain = domain
        super().__init__(f'Sitemap generation failed: Invalid domain "{domain}". {detail}'.strip())


class ThemeSynthesisFailed(GenerationError):
    pass


TOP_LEVEL_ERRORS = (TemplateNotFound, SiteNotFound, ArchiveUploadFailure, ThemeSynthesisFailed)
