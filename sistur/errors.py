"""Errors raised by the assessment calculation.

Each error carries the HTTP status the API layer should answer with.
"""
from __future__ import annotations


class CalculationError(Exception):
    """Base class for failures of a single ``calculate`` call."""
    status_code = 500

    def __init__(self, message: str, assessment_id: int | None = None):
        super().__init__(message)
        self.assessment_id = assessment_id


class AssessmentNotFoundError(CalculationError):
    """The assessment id does not resolve."""
    status_code = 404


class NoIndicatorDataError(CalculationError):
    """The assessment exists but has no indicator values to score."""
    status_code = 400


class PersistenceError(CalculationError):
    """Writing derived rows failed; the whole replace was rolled back."""
    status_code = 500


class CatalogInconsistencyError(CalculationError):
    """Catalog data the engine cannot interpret, e.g. an unknown pillar."""
    status_code = 500
