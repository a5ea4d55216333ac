"""Deduction records and the identity key used for duplicate detection."""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from .errors import ValidationError

UNSPECIFIED = "Unspecified"
DEFAULT_SOURCE = "Court of First Instance"
DEFAULT_TYPE = "deduction"
DEFAULT_STATUS = "received"
DEFAULT_CREATED_BY = "system"

# Python attribute -> wire (remote store / snapshot) field name
WIRE_NAMES = {
    "id": "id",
    "case_id": "caseId",
    "case_number": "caseNumber",
    "defendant_name": "defendantName",
    "plaintiff_name": "plaintiffName",
    "source": "source",
    "lawyer_id": "lawyerId",
    "lawyer_name": "lawyerName",
    "amount": "amount",
    "type": "type",
    "status": "status",
    "notes": "notes",
    "date": "date",
    "created_at": "createdAt",
    "created_by": "createdBy",
}
ATTRIBUTE_NAMES = {wire: attr for attr, wire in WIRE_NAMES.items()}

_WHITESPACE = re.compile(r"\s")


def format_amount(amount: Any) -> str:
    """Render an amount the way the remote store renders numbers.

    Integral values lose their fractional part so that ``100``, ``100.0`` and
    ``"100"`` all render as ``"100"``.
    """
    if amount is None or amount == "":
        return "0"
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return str(amount)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def identity_key(data: "dict[str, Any] | DeductionRecord") -> str:
    """Derive the duplicate-detection key for a record or wire payload.

    Args:
        data: A DeductionRecord or a wire-format dictionary.

    Returns:
        ``caseNumber_amount_date_name`` with all whitespace removed.
    """
    if isinstance(data, DeductionRecord):
        data = data.to_dict()

    case_number = data.get("caseNumber") or ""
    amount = format_amount(data.get("amount") or 0)
    date = data.get("date") or ""
    name = data.get("defendantName") or data.get("plaintiffName") or ""

    return _WHITESPACE.sub("", f"{case_number}_{amount}_{date}_{name}")


def to_wire_fields(updates: dict[str, Any]) -> dict[str, Any]:
    """Normalize partial update keys to wire names.

    Accepts either attribute names (``case_number``) or wire names
    (``caseNumber``); unknown keys pass through unchanged.
    """
    return {WIRE_NAMES.get(key, key): value for key, value in updates.items()}


def _coerce_amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}") from None


@dataclass
class DeductionRecord:
    """A financial adjustment entry tied to a legal case."""

    case_number: str
    amount: float
    date: str
    id: int | None = None
    case_id: str | None = None
    defendant_name: str = UNSPECIFIED
    plaintiff_name: str = UNSPECIFIED
    source: str = DEFAULT_SOURCE
    lawyer_id: str = ""
    lawyer_name: str = ""
    type: str = DEFAULT_TYPE
    status: str = DEFAULT_STATUS
    notes: str = ""
    created_at: str | None = None
    created_by: str = DEFAULT_CREATED_BY
    extra: dict[str, Any] = field(default_factory=dict)  # unknown wire fields

    @property
    def identity_key(self) -> str:
        return identity_key(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire dictionary stored remotely and in snapshots."""
        data = dict(self.extra)
        for attr, wire in WIRE_NAMES.items():
            data[wire] = getattr(self, attr)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeductionRecord":
        """Create from a wire dictionary, keeping unknown fields in ``extra``.

        No defaults are invented for payloads that already exist remotely;
        missing name fields stay empty so the identity key matches the
        payload exactly.
        """
        known = {}
        extra = {}
        for key, value in data.items():
            if key in ATTRIBUTE_NAMES:
                known[ATTRIBUTE_NAMES[key]] = value
            else:
                extra[key] = value

        known.setdefault("case_number", "")
        known.setdefault("date", "")
        known.setdefault("amount", 0)
        known.setdefault("defendant_name", "")
        known.setdefault("plaintiff_name", "")
        return cls(extra=extra, **known)

    def merged(self, updates: dict[str, Any]) -> "DeductionRecord":
        """Return a copy with the given wire-format fields applied."""
        wire_updates = to_wire_fields(updates)
        data = self.to_dict()
        data.update(wire_updates)
        if "amount" in wire_updates:
            data["amount"] = _coerce_amount(data["amount"])
        return DeductionRecord.from_dict(data)

    def copy(self) -> "DeductionRecord":
        return replace(self, extra=dict(self.extra))


def validate_submission(data: dict[str, Any]) -> None:
    """Reject submissions missing case number, amount or date.

    Raises:
        ValidationError: If a required field is missing.
    """
    wire = to_wire_fields(data)
    missing = [
        name for name in ("caseNumber", "amount", "date") if not wire.get(name)
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def build_record(
    data: dict[str, Any],
    deduction_id: int | None = None,
    now: datetime | None = None,
) -> DeductionRecord:
    """Build a complete record from a caller submission, applying defaults.

    Args:
        data: Submitted fields (wire or attribute names).
        deduction_id: Identifier to assign.
        now: Creation time; defaults to the current UTC time.

    Returns:
        A complete DeductionRecord.
    """
    validate_submission(data)
    wire = to_wire_fields(data)
    created = now or datetime.now(timezone.utc)

    return DeductionRecord(
        id=deduction_id,
        case_id=wire.get("caseId") or wire["caseNumber"],
        case_number=wire["caseNumber"],
        defendant_name=wire.get("defendantName") or UNSPECIFIED,
        plaintiff_name=(
            wire.get("plaintiffName") or wire.get("caseTitle") or UNSPECIFIED
        ),
        source=wire.get("source") or DEFAULT_SOURCE,
        lawyer_id=wire.get("lawyerId") or "",
        lawyer_name=wire.get("lawyerName") or "",
        amount=_coerce_amount(wire["amount"]),
        type=wire.get("type") or DEFAULT_TYPE,
        status=wire.get("status") or DEFAULT_STATUS,
        notes=wire.get("notes") or "",
        date=wire["date"],
        created_at=created.isoformat(),
        created_by=wire.get("createdBy") or DEFAULT_CREATED_BY,
    )
