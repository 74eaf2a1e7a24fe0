import math
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel


class FailureClass(StrEnum):
    """The classes of failure a retrieval can end in."""

    ADMISSION = "admission"
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    AUTH_REJECTED = "auth_rejected"
    ACTIVE_DEFENSE = "active_defense"
    MALFORMED_RESPONSE = "malformed_response"
    RESOURCE_TOO_LARGE = "resource_too_large"
    EXTRACTION_UNSUPPORTED = "extraction_unsupported"

    @property
    def falls_through(self) -> bool:
        """Whether a search stage failing with this class should hand over to the next stage."""
        match self:
            case FailureClass.TRANSPORT | FailureClass.AUTH_REJECTED | FailureClass.CONFIGURATION:
                return True
            case _:
                return False


class StageFailure(BaseModel):
    """Why a single stage of the search cascade failed."""

    stage: str
    failure_class: FailureClass
    message: str

    def __str__(self) -> str:
        return f"{self.stage}: {self.message}"


class WebAccessError(Exception):
    """A base exception for the retrieval engine."""

    msg: str
    failure_class: FailureClass = FailureClass.TRANSPORT

    def __init__(self, msg: str):
        self.msg = msg
        super().__init__(msg)

    def __str__(self) -> str:
        return self.msg


class ProviderError(WebAccessError):
    """A search provider stage failed with a classified failure."""

    def __init__(self, msg: str, failure_class: FailureClass, status: int | None = None):
        super().__init__(msg)
        self.failure_class = failure_class
        self.status = status


class RateLimitedError(WebAccessError):
    """The search rate limit window is saturated."""

    failure_class = FailureClass.ADMISSION

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(f"Rate limited. Try again in {math.ceil(retry_after)}s")


class AuthUnavailableError(WebAccessError):
    """No credential of any kind is available, so no provider could be tried."""

    failure_class = FailureClass.CONFIGURATION

    def __init__(self, config_path: Path, warnings: list[str] | None = None):
        self.warnings = warnings or []

        lines = [
            "Perplexity authentication not available. Either:",
            f'  1. Create {config_path} with {{"perplexity_api_key": "your-key"}}',
            "  2. Set the PERPLEXITY_API_KEY environment variable",
            "  3. Sign into perplexity.ai in Chrome",
        ]
        lines.extend(f"  ({warning})" for warning in self.warnings)

        super().__init__("\n".join(lines))


class AllProvidersFailedError(WebAccessError):
    """Every attempted search stage failed."""

    def __init__(self, failures: list[StageFailure], notes: list[str] | None = None):
        self.failures = failures
        self.notes = notes or []

        stages = ", ".join(failure.stage for failure in failures)
        lines = [f"All search providers failed (attempted: {stages}):"]
        lines.extend(f"  {failure}" for failure in failures)
        lines.extend(f"  ({note})" for note in self.notes)

        super().__init__("\n".join(lines))


class RepositoryError(WebAccessError):
    """A base exception for hosted repository handling."""


class InvalidRepositoryError(RepositoryError):
    """A repository identity or path could not be used."""

    failure_class = FailureClass.EXTRACTION_UNSUPPORTED


class RepositoryTooLargeError(RepositoryError):
    """The repository exceeds the clone size threshold."""

    failure_class = FailureClass.RESOURCE_TOO_LARGE

    def __init__(self, repository: str, size_mb: float, threshold_mb: float):
        self.size_mb = size_mb
        self.threshold_mb = threshold_mb
        super().__init__(f"Repository {repository} is {size_mb:.0f}MB, which exceeds the clone threshold of {threshold_mb:.0f}MB")


class CloneFailedError(RepositoryError):
    """The repository could not be cloned."""

    def __init__(self, repository: str, detail: str):
        self.detail = detail
        super().__init__(f"Failed to clone {repository}: {detail}")


class ExtractionUnsupportedError(WebAccessError):
    """No extractor could produce content for a fetched resource."""

    failure_class = FailureClass.EXTRACTION_UNSUPPORTED
