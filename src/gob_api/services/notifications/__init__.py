"""Notification service exports."""

from .backend import EmailBackend, InMemoryEmailBackend, SMTPEmailBackend  # noqa: F401
from .service import NotificationEvent, NotificationService  # noqa: F401
