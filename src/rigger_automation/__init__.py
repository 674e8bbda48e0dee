"""Rigger idempotent provisioning engine."""

from .inventory import InventoryLoader
from .loader import PlanLoader
from .runner import PlanRunner

__all__ = ["PlanRunner", "PlanLoader", "InventoryLoader"]
