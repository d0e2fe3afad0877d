"""Control mapping: code signals to per-control verdicts."""

from .catalog import CONTROL_CATALOG, ControlDefinition, ControlRule
from .mapper import ControlMapper

__all__ = ["CONTROL_CATALOG", "ControlDefinition", "ControlMapper", "ControlRule"]
