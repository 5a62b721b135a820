from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    openai_api_key: str

    project_dir: Path = Path("./data")
    content_model: str = "gpt-5-mini"
    seo_model: str = "gpt-4o-mini"
    image_model: str = "gpt-image-1"
    image_size: str = "1024x1024"
    image_cost_per_megapixel: float = 0.0039
    price_input_per_million: float = 0.25
    price_output_per_million: float = 2.0
    max_expansion_level: int = 5
    max_retries: int = 6
    request_timeout: float = 120.0
    theme_max_attempts: int = 2
    theme_fallback_to_default: bool = False
    nginx_root_dir: str = "/var/www/html"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BSG_",
        env_file_encoding="utf-8",
    )

    @field_validator("max_expansion_level")
    @classmethod
    def expansion_level_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_expansion_level must be at least 1")
        return v

    @field_validator("max_retries", "theme_max_attempts")
    @classmethod
    def attempts_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("attempt counts must be at least 1")
        return v

    @property
    def blocks_dir(self) -> Path:
        return self.project_dir / "blocks"

    @property
    def site_templates_dir(self) -> Path:
        return self.project_dir / "site_templates"

    @property
    def sites_dir(self) -> Path:
        return self.project_dir / "sites"

    @property
    def archives_dir(self) -> Path:
        return self.project_dir / "archives"

    @property
    def output_dir(self) -> Path:
        return self.project_dir / "output"

    @property
    def theme_variables_path(self) -> Path:
        return self.project_dir / "theme_variables.yaml"
