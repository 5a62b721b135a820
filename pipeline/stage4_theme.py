"""Stage 4: Theme synthesis — values for the closed CSS-variable whitelist.

The model must return every whitelisted variable and nothing else. Extra
names are dropped; a reply missing any name is retried. When attempts run
out the request aborts with ThemeSynthesisFailed, unless the settings allow
degrading to the whitelist defaults.
"""
import json
import logging

from models.theme import ThemeWhitelist
from models.usage import Usage
from pipeline.errors import ThemeSynthesisFailed
from settings import Settings
from utils.llm_gateway import ContentGateway

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """\
You are a web designer. Create a cohesive visual theme for a website.

Return ONLY valid JSON mapping each of these CSS custom properties to a value:
{variables}

Rules:
- use exactly these names, no others, none missing
- colours as HEX, fonts as CSS font stacks, sizes with units
- ensure readable contrast between text and background colours
"""


def _css_value(value) -> str:
    """A reply value as CSS text. Unitless numbers arrive as JSON numbers."""
    if isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return ""


async def synthesize_theme(
    gateway: ContentGateway,
    settings: Settings,
    prompt: str,
    whitelist: ThemeWhitelist,
) -> tuple[dict[str, str], Usage]:
    """Return ``(theme, usage)`` with exactly the whitelisted variable names."""
    system_prompt = _SYSTEM_PROMPT.format(variables=whitelist.describe())
    usage = Usage()
    last_error = "no attempts made"

    for attempt in range(1, settings.theme_max_attempts + 1):
        try:
            reply, call_usage = await gateway.complete_json(
                system_prompt, prompt or "A modern professional website"
            )
        except Exception as exc:
            last_error = str(exc) or exc.__class__.__name__
            logger.warning("Theme attempt %d failed: %s", attempt, last_error)
            continue
        usage = usage + call_usage

        theme = {}
        for name, value in reply.items():
            css = _css_value(value)
            if name in whitelist.variables and css:
                theme[name] = css
        extra = sorted(set(reply) - set(whitelist.variables))
        if extra:
            logger.warning("Theme attempt %d: dropping non-whitelisted variables %s", attempt, extra)
        missing = [name for name in whitelist.names if name not in theme]
        if not missing:
            logger.info("Theme resolved (%d variables)", len(theme))
            return {name: theme[name] for name in whitelist.names}, usage
        last_error = f"missing variables: {json.dumps(missing)}"
        logger.warning("Theme attempt %d incomplete: %s", attempt, last_error)

    if settings.theme_fallback_to_default:
        logger.warning("Theme synthesis exhausted (%s); using default theme", last_error)
        return whitelist.defaults(), usage
    raise ThemeSynthesisFailed(f"Theme generation failed: {last_error}")


def merge_theme(template_css: dict[str, str], theme: dict[str, str]) -> dict[str, str]:
    """Template variables layered under the synthesized theme (theme wins)."""
    return {**template_css, **theme}
