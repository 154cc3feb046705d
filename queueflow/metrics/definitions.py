"""Metric definitions used across the queue engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="queue_tickets_created_total",
        metric_type="counter",
        description="Tickets created per booking channel.",
        label_names=("channel",),
    ),
    MetricDefinition(
        name="queue_transitions_total",
        metric_type="counter",
        description="Accepted ticket status transitions by target status.",
        label_names=("status",),
    ),
    MetricDefinition(
        name="queue_transition_rejections_total",
        metric_type="counter",
        description="Rejected commands by rejection reason.",
        label_names=("reason",),
    ),
    MetricDefinition(
        name="queue_recalculation_duration_seconds",
        metric_type="distribution",
        description="Duration of a provider/day ETA recalculation in seconds.",
    ),
    MetricDefinition(
        name="reminders_sent_total",
        metric_type="counter",
        description="Notifications delivered by kind.",
        label_names=("kind",),
    ),
    MetricDefinition(
        name="reminders_failed_total",
        metric_type="counter",
        description="Notification deliveries that failed by kind.",
        label_names=("kind",),
    ),
    MetricDefinition(
        name="reminder_sweeps_total",
        metric_type="counter",
        description="Reminder sweeps executed.",
    ),
    MetricDefinition(
        name="reminder_sweep_duration_seconds",
        metric_type="distribution",
        description="Duration of a reminder sweep in seconds.",
    ),
)
