"""
Operational tools for db-partition.

This module contains CLI tools for:
- Replaying metadata recovery files into the metadata store
"""

from .replay import ReplayConfig, ReplayResult, ReplayTool

__all__ = ["ReplayConfig", "ReplayResult", "ReplayTool"]
