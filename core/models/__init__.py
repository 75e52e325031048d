"""Core data models shared by the connectors, mapper and executor."""

from core.models.documents import (
    DocumentKind,
    SourceDocument,
    VatRateMapping,
)

__all__ = [
    "DocumentKind",
    "SourceDocument",
    "VatRateMapping",
]
