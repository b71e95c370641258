# exceptions.py — Domain errors shared by services and routers
from dataclasses import dataclass, field
from typing import List


class DomainValidationError(Exception):
    """Field-scoped validation failure raised by service code; rendered as HTTP 422."""

    def __init__(self, field_name: str, message: str):
        super().__init__(message)
        self.field = field_name
        self.message = message

    def to_detail(self) -> list:
        return [{"loc": ["body", self.field], "msg": self.message, "type": "value_error"}]


@dataclass
class CleanupResult:
    """Outcome of a delete whose remote cleanup is best-effort.

    ``deleted`` reports the local deletion; ``warnings`` collects remote cleanup
    failures that were logged and skipped.
    """
    deleted: bool = True
    warnings: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return self.deleted and bool(self.warnings)

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "partial": self.partial, "warnings": list(self.warnings)}
