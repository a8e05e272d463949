"""Stefna generation backend: credit-reserved async media generation."""

__version__ = "0.1.0"
