"""Command-line tools."""
from __future__ import annotations
