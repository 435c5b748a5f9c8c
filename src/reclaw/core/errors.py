from __future__ import annotations


class ReclawError(Exception):
    """Base exception for reclaw failures."""


class BatchExtractionError(ReclawError):
    """One batch could not be extracted. Sibling batches keep running."""

    def __init__(self, batch_id: str, message: str):
        super().__init__(f"Batch {batch_id} failed: {message}")
        self.batch_id = batch_id


class ExtractionPipelineError(ReclawError):
    """No batch in the plan produced a result."""


class MainDocUpdateError(ReclawError):
    """MEMORY.md / USER.md synthesis failed or could not be verified."""


class PromptTemplateError(ReclawError):
    """Prompt template missing or rendered with an unknown variable."""


class SessionImportError(ReclawError):
    """Legacy session history could not be imported."""


class ArchiveError(ReclawError):
    """Export archive is unreadable or unsafe to extract."""


class ConversationInputError(ReclawError):
    """Normalized conversation input could not be read."""


class ConfigError(ReclawError):
    """Config file or one of its ``extends`` targets is missing or malformed."""
