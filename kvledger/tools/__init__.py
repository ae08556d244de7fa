"""Operational tools for kvledger."""

from .repair_cli import RepairConfig, RepairResult, RepairTool

__all__ = ["RepairConfig", "RepairResult", "RepairTool"]
