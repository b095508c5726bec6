"""
codekb: structural code knowledge index.

Splits source files into token-bounded structural chunks, extracts a typed
graph of declarations and relationships, and keeps the graph store and the
semantic vector store synchronized as files change.
"""

__version__ = "0.3.0"
