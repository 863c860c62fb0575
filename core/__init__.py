"""Kernel of the identity store: configuration, errors, enums and identifiers."""

__version__ = "1.0.0"
