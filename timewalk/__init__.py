"""TimeWalk: time-versioned historical GIS data for Manhattan (1609, 1660, 1776)."""

__version__ = "0.1.0"
