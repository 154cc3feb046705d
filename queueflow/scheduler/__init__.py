"""Periodic customer reminders."""

from .reminders import ReminderScheduler, SweepReport, next_in_line
from .runner import ReminderRunner

__all__ = ["ReminderRunner", "ReminderScheduler", "SweepReport", "next_in_line"]
