from taskgrid.notifications.notification_service import Notification, NotificationService, Severity

__all__ = ["Notification", "NotificationService", "Severity"]
