"""Ottie: turn a property listing URL into a generated site config."""

__version__ = "0.1.0"
