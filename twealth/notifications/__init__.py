"""
Notifications Package

Rule-based notifications generated as a side effect of user activity.
"""

from twealth.notifications.generator import SmartNotificationGenerator

__all__ = ["SmartNotificationGenerator"]
