"""Result values returned by sync manager operations."""

from dataclasses import dataclass
from typing import Any

from ..records import DeductionRecord


@dataclass
class MutationResult:
    """Outcome of a create, update or delete call.

    A duplicate create is a normal negative result, not an error:
    ``success`` is False, ``duplicate`` is True and ``existing`` carries the
    record already in the cache.
    """

    success: bool
    deduction: DeductionRecord | None = None
    remote_key: str | None = None
    duplicate: bool = False
    existing: DeductionRecord | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.deduction is not None:
            data["deduction"] = self.deduction.to_dict()
        if self.remote_key is not None:
            data["firebaseKey"] = self.remote_key
        if self.duplicate:
            data["duplicate"] = True
        if self.existing is not None:
            data["existing"] = self.existing.to_dict()
        if self.message is not None:
            data["message"] = self.message
        return data
