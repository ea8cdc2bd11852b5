"""Serverless PDF-to-PNG conversion endpoint."""

__version__ = "1.0.0"
