"""
Scheduler module.
Contains the periodic producer that enqueues scheduled jobs.
"""

from mailqueue.scheduler.main import Scheduler, compute_missed_ticks, run

__all__ = ["Scheduler", "compute_missed_ticks", "run"]
