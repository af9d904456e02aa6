"""Execution primitives: reentrancy guard, atomic unwinding, notifications."""

from meterpay.engine.guard import ReentrancyGuard, atomic, non_reentrant
from meterpay.engine.notifications import Notification, NotificationLog

__all__ = ["ReentrancyGuard", "atomic", "non_reentrant", "Notification", "NotificationLog"]
