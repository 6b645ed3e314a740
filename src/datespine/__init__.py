"""
datespine - reporting-date availability cache.

Answers "which reporting dates have position data visible to this user?"
from per-security date bitmaps rebuilt nightly, instead of aggregating the
fact table on every request.
"""

__version__ = "0.1.0"
