"""xrefdb - cross-reference index over compiler artifact files."""

__version__ = "0.1.0"
