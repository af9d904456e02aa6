"""Persistence: append-only event log and JSON state store."""

from meterpay.persistence.event_log import EventKind, EventLog, EventRecord
from meterpay.persistence.state_store import StateStore

__all__ = ["EventKind", "EventLog", "EventRecord", "StateStore"]
