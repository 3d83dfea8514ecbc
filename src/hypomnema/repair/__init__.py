"""Load-time repair of session records."""

from hypomnema.repair.engine import RepairEngine

__all__ = ["RepairEngine"]
