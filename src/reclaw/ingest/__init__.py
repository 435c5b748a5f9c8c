from __future__ import annotations

from reclaw.ingest.conversations import load_conversations
from reclaw.ingest.discovery import PreparedInputSources, prepare_input_sources
from reclaw.ingest.sessions import (
    LegacyProviderImport,
    LegacySessionImporter,
    LegacySessionImportResult,
)

__all__ = [
    "load_conversations",
    "prepare_input_sources",
    "PreparedInputSources",
    "LegacyProviderImport",
    "LegacySessionImporter",
    "LegacySessionImportResult",
]
