from typing import Optional


class AdmissionError(Exception):
    """An operation was rejected before any record was created."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NoPermittedMachines(AdmissionError):
    def __init__(self, reason: str = "no permitted machines"):
        super().__init__(reason)


class QuotaExceeded(AdmissionError):
    def __init__(self, environment_id: Optional[int], limit: int, count: int):
        super().__init__(f"operation limit reached for environment {environment_id} ({count}/{limit})")
        self.environment_id = environment_id
        self.limit = limit
        self.count = count


class InvalidRestriction(ValueError):
    pass
