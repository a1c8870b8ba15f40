"""Wrappers around microbiome statistics libraries for repeated rarefaction analyses."""

__version__ = "0.1.0"
