"""Utility modules for the tip bot."""

from tipbot.utils.locks import UserBalanceLock, get_user_lock, user_balance_lock

__all__ = ["UserBalanceLock", "get_user_lock", "user_balance_lock"]
