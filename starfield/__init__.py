"""Incremental sync, caching and render-budget engine for a 3-D member universe."""

__version__ = "1.0.0"
