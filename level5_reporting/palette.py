"""Palette registry.

Named color mappings keyed by theme. The registry is an ordinary object
passed to the analysis functions that need it; there is no process-wide
instance.
"""

import re
import threading
from typing import Optional

from utils import get_logger

logger = get_logger(__name__)

DEFAULT_THEME = "default"

DEFAULT_PALETTE = {
    "primary": "#1f77b4",
    "secondary": "#ff7f0e",
    "positive": "#2ca02c",
    "negative": "#d62728",
    "neutral": "#7f7f7f",
    "highlight": "#9467bd",
}

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")


class PaletteError(Exception):
    """Raised for unknown themes, unknown color keys or invalid colors."""

    pass


class PaletteRegistry:
    """Registry of named color mappings per theme."""

    def __init__(self, themes: Optional[dict[str, dict[str, str]]] = None, include_default: bool = True):
        self._themes: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()
        if include_default:
            self.register(DEFAULT_THEME, DEFAULT_PALETTE)
        for theme_id, mapping in (themes or {}).items():
            self.register(theme_id, mapping)

    def register(self, theme_id: str, mapping: dict[str, str], replace: bool = False) -> None:
        """Register a theme.

        Args:
            theme_id: Theme identifier
            mapping: Color key to hex color (``#rgb``, ``#rrggbb`` or ``#rrggbbaa``)
            replace: Allow replacing an existing theme

        Raises:
            PaletteError: If the theme exists (and replace is False) or a color is invalid
        """
        invalid = {key: value for key, value in mapping.items() if not _HEX_COLOR.match(str(value))}
        if invalid:
            raise PaletteError(f"Invalid colors for theme '{theme_id}': {invalid}")
        with self._lock:
            if theme_id in self._themes and not replace:
                raise PaletteError(f"Theme already registered: '{theme_id}'")
            self._themes[theme_id] = dict(mapping)
        logger.debug(f"Palette theme registered: {theme_id} ({len(mapping)} colors)")

    def color(self, key: str, theme_id: str = DEFAULT_THEME) -> str:
        """Look up a color.

        Raises:
            PaletteError: If the theme or key is unknown
        """
        with self._lock:
            theme = self._themes.get(theme_id)
        if theme is None:
            raise PaletteError(f"Unknown theme: '{theme_id}'")
        try:
            return theme[key]
        except KeyError:
            raise PaletteError(f"Unknown color key '{key}' in theme '{theme_id}'") from None

    def palette(self, theme_id: str = DEFAULT_THEME) -> dict[str, str]:
        """Get a copy of a theme's full mapping."""
        with self._lock:
            theme = self._themes.get(theme_id)
        if theme is None:
            raise PaletteError(f"Unknown theme: '{theme_id}'")
        return dict(theme)

    def themes(self) -> list[str]:
        with self._lock:
            return sorted(self._themes)

    def __fingerprint_token__(self) -> dict[str, dict[str, str]]:
        """Theme contents, so analyses that draw with the palette re-run when it changes."""
        with self._lock:
            return {theme_id: dict(mapping) for theme_id, mapping in sorted(self._themes.items())}
