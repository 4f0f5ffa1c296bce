"""
User interface components for h265split.

Provides the rich Live display and a plain text fallback.
"""

from h265split.ui.legacy_ui import PlainProgressUI, UIState
from h265split.ui.rich_ui import RichProgressUI, print_summary

__all__ = [
    "PlainProgressUI",
    "RichProgressUI",
    "UIState",
    "print_summary",
]
