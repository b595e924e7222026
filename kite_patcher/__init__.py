"""Inspect and patch arm64 kernel images and Android boot images."""

__version__ = "6.0.0"