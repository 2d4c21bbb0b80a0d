"""
DebUpgrader - staged, resumable Debian bookworm to trixie upgrade orchestrator
"""

__version__ = "1.0.0"

from .core import DebianUpgrader, UpgraderError

__all__ = ["DebianUpgrader", "UpgraderError"]
