"""
Reaper module.
Contains the reaper that cleans up leases of dead workers.
"""

from delayed.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
