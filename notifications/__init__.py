"""Notification jobs executed by the queue consumer."""
from notifications.subscription_mail import SubscriptionMail, build_subscription_job

__all__ = ["SubscriptionMail", "build_subscription_job"]
