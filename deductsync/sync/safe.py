"""Exception-free wrappers around the manager's mutating operations.

Each wrapper returns the operation's result dictionary, or
``{"success": False, "error": message}`` when the operation raised.
"""

import logging
from typing import Any

from .manager import DeductionsSyncManager

logger = logging.getLogger(__name__)


async def add_deduction_safe(
    manager: DeductionsSyncManager, data: dict[str, Any]
) -> dict[str, Any]:
    try:
        result = await manager.add_deduction(data)
    except Exception as e:
        logger.error(f"Failed to add deduction: {e}")
        return {"success": False, "error": str(e)}
    return result.to_dict()


async def update_deduction_safe(
    manager: DeductionsSyncManager, deduction_id: Any, updates: dict[str, Any]
) -> dict[str, Any]:
    try:
        result = await manager.update_deduction(deduction_id, updates)
    except Exception as e:
        logger.error(f"Failed to update deduction {deduction_id}: {e}")
        return {"success": False, "error": str(e)}
    return result.to_dict()


async def delete_deduction_safe(
    manager: DeductionsSyncManager, deduction_id: Any
) -> dict[str, Any]:
    try:
        result = await manager.delete_deduction(deduction_id)
    except Exception as e:
        logger.error(f"Failed to delete deduction {deduction_id}: {e}")
        return {"success": False, "error": str(e)}
    return result.to_dict()
