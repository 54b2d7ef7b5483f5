"""Beads issue tracker boundary."""

from ralph.tracker.client import BeadsClient, IssueCreate, parse_tracker_json
from ralph.tracker.models import EPIC_STATUS_ORDER, TaskStatus, TrackerTask

__all__ = [
    "EPIC_STATUS_ORDER",
    "BeadsClient",
    "IssueCreate",
    "TaskStatus",
    "TrackerTask",
    "parse_tracker_json",
]
