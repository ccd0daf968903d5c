"""Data loading utilities for cisreshape."""

from .loaders import (
    ManifestLoader,
    EventExportLoader,
    LaboratoryLoader,
    LoadedSource,
)

__all__ = [
    "ManifestLoader",
    "EventExportLoader",
    "LaboratoryLoader",
    "LoadedSource",
]
