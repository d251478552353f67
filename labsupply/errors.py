"""
Error taxonomy for the label extractor.

Only ConfigurationError is fatal; everything else is recovered at the level
of a single file, a single work item or a single user action.
"""

from typing import Optional


class LabSupplyError(Exception):
    """Base class for all project errors."""


class ConfigurationError(LabSupplyError):
    """Missing credential or invalid settings. Halts the application."""


class IntakeError(LabSupplyError):
    """An uploaded file was rejected (not an image, too large, unreadable)."""

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename


class ExtractionError(LabSupplyError):
    """Transport, service or parse failure for one image."""

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.filename = filename

    def __str__(self) -> str:
        return self.message


class InvalidTransitionError(LabSupplyError):
    """A work item was moved through an illegal status transition."""


class NothingToExportError(LabSupplyError):
    """Export was requested while no item has finished successfully."""
