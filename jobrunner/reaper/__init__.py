"""
Reaper module.
Contains the lease reaper for recovering expired jobs.
"""

from jobrunner.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
