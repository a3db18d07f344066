"""
Output of finder results.

Invariants:
    - Files are replaced atomically; a failed run never leaves a partial list
"""

from .sink import FORMATS, OutputFormat, render_ids, write_ids, write_text_atomic

__all__ = [
    "FORMATS",
    "OutputFormat",
    "render_ids",
    "write_ids",
    "write_text_atomic",
]
