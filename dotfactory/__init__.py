"""dotfactory — a DOT pipeline language and its execution engine."""

__version__ = "0.1.0"
