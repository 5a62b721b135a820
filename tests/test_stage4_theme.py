"""Tests for Stage 4 theme synthesis."""
import pytest

from models.theme import ThemeVariable, ThemeWhitelist
from pipeline.errors import ContentGenerationMalformed, ThemeSynthesisFailed
from pipeline.stage4_theme import merge_theme, synthesize_theme

_WHITELIST = ThemeWhitelist(variables={
    "--color-primary": ThemeVariable(description="Primary", default="#111111"),
    "--font-body": ThemeVariable(description="Body font", default="serif"),
})


@pytest.mark.asyncio
async def test_theme_keeps_only_whitelisted_names(tmp_settings, make_gateway):
    gateway = make_gateway(theme={
        "--color-primary": "#AA0000",
        "--font-body": " 'Lato', sans-serif ",
        "--invented": "1px",
    })
    theme, usage = await synthesize_theme(gateway, tmp_settings, "Bakery", _WHITELIST)

    assert theme == {"--color-primary": "#AA0000", "--font-body": "'Lato', sans-serif"}
    assert usage.total_tokens == 150


_NUMERIC_WHITELIST = ThemeWhitelist(variables={
    "--color-primary": ThemeVariable(description="Primary", default="#111111"),
    "--line-height-normal": ThemeVariable(description="Body line height", default="1.5"),
    "--font-weight-bold": ThemeVariable(description="Bold weight", default="700"),
})


@pytest.mark.asyncio
async def test_unitless_numbers_are_accepted(tmp_settings, make_gateway):
    gateway = make_gateway(theme={
        "--color-primary": "#AA0000",
        "--line-height-normal": 1.6,
        "--font-weight-bold": 700,
    })
    theme, _ = await synthesize_theme(gateway, tmp_settings, "Bakery", _NUMERIC_WHITELIST)

    assert theme == {
        "--color-primary": "#AA0000",
        "--line-height-normal": "1.6",
        "--font-weight-bold": "700",
    }
    assert gateway.complete_json.await_count == 1


@pytest.mark.asyncio
async def test_empty_or_structured_values_count_as_missing(tmp_settings, make_gateway):
    gateway = make_gateway(theme={
        "--color-primary": {"value": "#AA0000"},
        "--line-height-normal": None,
        "--font-weight-bold": True,
    })
    with pytest.raises(ThemeSynthesisFailed) as excinfo:
        await synthesize_theme(gateway, tmp_settings, "Bakery", _NUMERIC_WHITELIST)
    for name in ("--color-primary", "--line-height-normal", "--font-weight-bold"):
        assert name in str(excinfo.value)


@pytest.mark.asyncio
async def test_incomplete_theme_is_fatal_by_default(tmp_settings, make_gateway):
    gateway = make_gateway(theme={"--color-primary": "#AA0000"})
    with pytest.raises(ThemeSynthesisFailed, match="--font-body"):
        await synthesize_theme(gateway, tmp_settings, "Bakery", _WHITELIST)
    assert gateway.complete_json.await_count == tmp_settings.theme_max_attempts


@pytest.mark.asyncio
async def test_theme_can_degrade_to_defaults(tmp_settings, make_gateway):
    settings = tmp_settings.model_copy(update={"theme_fallback_to_default": True})
    gateway = make_gateway(theme=ContentGenerationMalformed("garbage"))

    theme, usage = await synthesize_theme(gateway, settings, "Bakery", _WHITELIST)

    assert theme == {"--color-primary": "#111111", "--font-body": "serif"}
    assert usage.total_tokens == 0


def test_theme_wins_over_template_css():
    merged = merge_theme(
        {"--color-primary": "#000000", "--hero-height": "60vh"},
        {"--color-primary": "#AA0000"},
    )
    assert merged == {"--color-primary": "#AA0000", "--hero-height": "60vh"}
