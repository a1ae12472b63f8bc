"""Curation of raw captures into canonical markdown documents."""

from lexflow.core.curation.curator import (
    CuratedDocument,
    CurationOverrides,
    curate,
    parse_document,
    slugify,
)

__all__ = ["CuratedDocument", "CurationOverrides", "curate", "parse_document", "slugify"]
