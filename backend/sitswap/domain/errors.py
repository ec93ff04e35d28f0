from dataclasses import dataclass, field
from typing import List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None
    status_code: int = 400


@dataclass
class BookingValidationError(DomainError):
    title: str = "Booking Validation Error"
    type: str = "https://example.com/problems/booking-validation"
    status_code: int = 409


@dataclass
class ConfigurationError(DomainError):
    title: str = "Configuration Error"
    type: str = "https://example.com/problems/configuration"
    status_code: int = 503


class TransientInfraError(Exception):
    """A datastore read/write failed in a way that is worth retrying."""


@dataclass
class SchemaGapError(Exception):
    """A table, column or stored function the code expects is not migrated yet."""

    object_name: str
    code: str | None = None
    original: BaseException | None = field(default=None, repr=False)

    def __str__(self) -> str:
        return f"schema gap on {self.object_name} ({self.code or 'unknown'})"


class PermanentJobError(Exception):
    """Raised by a job handler when the payload can never succeed."""
