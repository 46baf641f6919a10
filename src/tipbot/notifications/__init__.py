"""User notifications."""

from tipbot.notifications.notifier import Notifier

__all__ = ["Notifier"]
