"""Level 5: Reporting collaborators.

This module renders recorded runs into human-readable reports and provides
the palette registry analysis functions use to color their figures.
"""

from .palette import DEFAULT_THEME, PaletteError, PaletteRegistry
from .report_generator import ReportContext, ReportGenerationError, ReportGenerator, ReportRenderer

__all__ = [
    "DEFAULT_THEME",
    "PaletteError",
    "PaletteRegistry",
    "ReportContext",
    "ReportGenerationError",
    "ReportGenerator",
    "ReportRenderer",
]
