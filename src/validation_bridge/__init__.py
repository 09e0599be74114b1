# src/validation_bridge/__init__.py

"""Salesforce Validation Bridge: OAuth (PKCE) login plus a thin validation rule API."""

__version__ = "0.1.0"
