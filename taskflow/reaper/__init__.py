"""
Reaper module.
Contains the lease reaper for recovering expired task leases.
"""

from taskflow.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
