class CoverageError(Exception):
    """Base class for engine errors."""


class OpportunityNotFoundError(CoverageError):
    def __init__(self, opportunity_id: str):
        super().__init__(f"Opportunity {opportunity_id} not found")
        self.opportunity_id = opportunity_id


class FormularyApiError(CoverageError):
    """Remote formulary API failed after exhausting retries."""

    def __init__(self, message: str, *, status_code: int | None = None, attempts: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts
