from app.models.notification import Notification

__all__ = ["Notification"]
