"""Metric definitions for the signaling core."""

from __future__ import annotations

from .registry import registry


signal_events_dispatched_total = registry.counter(
    "signal_events_dispatched_total",
    "Events accepted by the dispatcher, by type and push outcome.",
    label_names=("type", "push"),
)

signal_push_connections = registry.gauge(
    "signal_push_connections",
    "Number of live push channel registrations on this process.",
)

signal_push_failures_total = registry.counter(
    "signal_push_failures_total",
    "Push channel registrations dropped after a failed write.",
    label_names=("reason",),
)

signal_queue_evictions_total = registry.counter(
    "signal_queue_evictions_total",
    "Queue entries removed without being served again.",
    label_names=("reason",),
)

signal_polls_total = registry.counter(
    "signal_polls_total",
    "Poll requests served, labelled by whether events were returned.",
    label_names=("result",),
)
