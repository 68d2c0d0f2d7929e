"""Tests for the palette registry."""

import pytest

from level1_fingerprint import canonicalize
from level5_reporting import DEFAULT_THEME, PaletteError, PaletteRegistry


def test_default_theme_is_registered():
    registry = PaletteRegistry()
    assert registry.themes() == [DEFAULT_THEME]
    assert registry.color("primary").startswith("#")


def test_register_and_look_up_theme():
    registry = PaletteRegistry()
    registry.register("dark", {"primary": "#ffffff", "background": "#000"})
    assert registry.color("background", "dark") == "#000"
    assert registry.palette("dark") == {"primary": "#ffffff", "background": "#000"}


def test_register_rejects_invalid_colors():
    with pytest.raises(PaletteError):
        PaletteRegistry().register("bad", {"primary": "blue"})


def test_register_rejects_duplicates_unless_replacing():
    registry = PaletteRegistry()
    with pytest.raises(PaletteError):
        registry.register(DEFAULT_THEME, {"primary": "#123456"})
    registry.register(DEFAULT_THEME, {"primary": "#123456"}, replace=True)
    assert registry.color("primary") == "#123456"


def test_unknown_theme_and_key():
    registry = PaletteRegistry()
    with pytest.raises(PaletteError):
        registry.color("primary", "missing")
    with pytest.raises(PaletteError):
        registry.color("missing")


def test_palette_returns_a_copy():
    registry = PaletteRegistry()
    registry.palette()["primary"] = "#000000"
    assert registry.color("primary") != "#000000"


def test_registries_are_independent():
    first = PaletteRegistry()
    second = PaletteRegistry(include_default=False)
    first.register("extra", {"primary": "#abcdef"})
    assert second.themes() == []


def test_fingerprint_token_follows_contents():
    a = PaletteRegistry()
    b = PaletteRegistry()
    assert canonicalize(a) == canonicalize(b)
    b.register("dark", {"primary": "#000000"})
    assert canonicalize(a) != canonicalize(b)
