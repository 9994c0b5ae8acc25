"""Client bridge to an external CellProfiler analysis worker."""

__version__ = "0.1.0"
