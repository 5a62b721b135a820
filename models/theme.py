"""Theme whitelist — the closed set of CSS variables a site theme may set.

Loaded from ``theme_variables.yaml`` in the project directory when present,
otherwise the built-in list below is used. The synthesizer only ever emits
names from this list.
"""
from pathlib import Path

from pydantic import BaseModel, Field


class ThemeVariable(BaseModel):
    description: str
    default: str


_DEFAULT_VARIABLES: dict[str, ThemeVariable] = {
    "--color-primary": ThemeVariable(description="Main brand colour (HEX)", default="#1A3A5C"),
    "--color-secondary": ThemeVariable(description="Secondary brand colour (HEX)", default="#F4F7FA"),
    "--color-accent": ThemeVariable(description="Accent colour for calls to action (HEX)", default="#E07A2E"),
    "--color-background": ThemeVariable(description="Page background colour (HEX)", default="#FFFFFF"),
    "--color-surface": ThemeVariable(description="Card and panel background (HEX)", default="#F7F7F7"),
    "--color-text": ThemeVariable(description="Body text colour (HEX)", default="#1A1A1A"),
    "--color-text-muted": ThemeVariable(description="Secondary text colour (HEX)", default="#666666"),
    "--font-heading": ThemeVariable(description="Heading font stack (Google or web-safe font)", default="'Inter', sans-serif"),
    "--font-body": ThemeVariable(description="Body font stack (Google or web-safe font)", default="'Inter', sans-serif"),
    "--font-size-base": ThemeVariable(description="Base font size", default="16px"),
    "--line-height-normal": ThemeVariable(description="Body line height", default="1.6"),
    "--radius-md": ThemeVariable(description="Medium corner radius", default="8px"),
    "--shadow-md": ThemeVariable(description="Medium elevation box-shadow", default="0 4px 12px rgba(0, 0, 0, 0.08)"),
    "--spacing-section": ThemeVariable(description="Vertical padding of page sections", default="64px"),
}


class ThemeWhitelist(BaseModel):
    variables: dict[str, ThemeVariable] = Field(default_factory=lambda: dict(_DEFAULT_VARIABLES))

    @property
    def names(self) -> list[str]:
        return list(self.variables)

    def defaults(self) -> dict[str, str]:
        return {name: v.default for name, v in self.variables.items()}

    def describe(self) -> str:
        """One ``name: description`` line per variable, for the theme prompt."""
        return "\n".join(f"{name}: {v.description}" for name, v in self.variables.items())

    @classmethod
    def load(cls, path: Path) -> "ThemeWhitelist":
        """Load from a YAML mapping of ``name -> {description, default}``.

        Raises FileNotFoundError if path does not exist.
        """
        import yaml  # only needed at load time
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.model_validate({"variables": data})

    @classmethod
    def load_or_default(cls, path: Path) -> "ThemeWhitelist":
        if path.exists():
            return cls.load(path)
        return cls()
