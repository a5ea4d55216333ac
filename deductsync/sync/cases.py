"""Running deduction totals kept on case records."""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from ..records import DeductionRecord
from ..store import RemoteStore
from ..store.base import join_path

logger = logging.getLogger(__name__)


class CaseAggregator:
    """Updates the ``deductions`` total on case records.

    Failures are logged and swallowed: a record mutation succeeds even when
    its case total could not be updated.
    """

    def __init__(self, store: RemoteStore, cases_path: str):
        self.store = store
        self.cases_path = cases_path

    async def find_case(self, case_number: str) -> tuple[str, dict[str, Any]] | None:
        """Scan the case collection for a case number.

        Returns:
            Tuple of (case key, case data), or None if not found.
        """
        all_cases = await self.store.get(self.cases_path)
        if not isinstance(all_cases, dict):
            return None

        for key, case in all_cases.items():
            if isinstance(case, dict) and str(case.get("caseNumber")) == str(case_number):
                return key, case
        return None

    async def update_case_deductions(
        self,
        case_number: str,
        records: Iterable[DeductionRecord] = (),
        amount_change: float | None = None,
    ) -> float | None:
        """Recompute or adjust a case's running deduction total.

        Args:
            case_number: Case to update.
            records: Cached records of the case, summed when no delta is given.
            amount_change: Delta applied to the stored total (delete path).

        Returns:
            The new total, or None if the case was not updated.
        """
        try:
            found = await self.find_case(case_number)
            if found is None:
                logger.warning(f"Case not found: {case_number}")
                return None

            case_key, case = found
            if amount_change is not None:
                total = float(case.get("deductions") or 0) + amount_change
            else:
                total = sum(float(r.amount or 0) for r in records)

            total = max(total, 0.0)

            await self.store.update(
                join_path(self.cases_path, case_key),
                {
                    "deductions": total,
                    "lastUpdate": datetime.now(timezone.utc).isoformat(),
                },
            )
            logger.info(f"Case {case_number} deductions total = {total}")
            return total

        except Exception as e:
            logger.error(f"Failed to update case deductions for {case_number}: {e}")
            return None
