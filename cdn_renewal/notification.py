"""
Notification system for certificate renewal events.

Supports multiple notification channels:
- Email via SendGrid API
- Microsoft Teams via incoming webhook

Only completed renewals and failures are announced; skipped endpoints
are not.
"""

import html
from abc import ABC, abstractmethod
from typing import Dict, List, TYPE_CHECKING

import requests

from .logger import get_logger

if TYPE_CHECKING:
    from .config_loader import NotificationsConfig, EmailNotificationConfig, TeamsNotificationConfig
    from .orchestrator import RenewalResult

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def _facts(result: "RenewalResult") -> Dict[str, str]:
    """Key facts of a renewal result, in display order."""
    facts = {
        "Endpoint": result.endpoint_id or "N/A",
        "Domain": result.domain or "N/A",
        "Status": result.status.value.upper(),
        "Old certificate": result.old_certificate_id or "N/A",
        "New certificate": result.new_certificate_id or "N/A",
        "New expiry": (
            result.new_not_after.strftime("%Y-%m-%d %H:%M UTC")
            if result.new_not_after else "N/A"
        ),
    }
    if result.failed_step:
        facts["Failed step"] = result.failed_step.value
        facts["Failure reason"] = result.message
    return facts


class NotificationSender(ABC):
    """Abstract base class for notification senders."""

    @abstractmethod
    def send(self, result: "RenewalResult") -> bool:
        """
        Send a notification.

        Args:
            result: Renewal result to report

        Returns:
            True if notification was sent successfully, False otherwise
        """


class SendGridNotifier(NotificationSender):
    """Send email notifications via SendGrid API."""

    def __init__(self, config: "EmailNotificationConfig"):
        self.config = config
        self.logger = get_logger()

    def _render(self, result: "RenewalResult") -> str:
        color = "#28a745" if result.failed_step is None else "#dc3545"
        rows = "\n".join(
            f"<tr><td><b>{html.escape(k)}</b></td><td>{html.escape(v)}</td></tr>"
            for k, v in _facts(result).items()
        )
        return (
            f'<h2 style="color: {color}">CDN Certificate Renewal '
            f"{html.escape(result.status.value.upper())}</h2>\n"
            f'<table cellpadding="6" border="1" style="border-collapse: collapse">\n{rows}\n</table>'
        )

    def send(self, result: "RenewalResult") -> bool:
        """Send email notification via SendGrid."""
        if not self.config.sendgrid_api_key:
            self.logger.warning("SendGrid API key not configured, skipping email notification")
            return False

        if not self.config.from_email or not self.config.to_emails:
            self.logger.warning("Email sender/recipients not configured, skipping email notification")
            return False

        subject = (
            f"{result.status.value.upper()}: CDN certificate renewal for "
            f"{result.domain or result.endpoint_id}"
        )
        payload = {
            "personalizations": [
                {"to": [{"email": email} for email in self.config.to_emails]}
            ],
            "from": {"email": self.config.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": self._render(result)}],
        }

        try:
            response = requests.post(
                SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.config.sendgrid_api_key}"},
                timeout=30,
            )
        except requests.RequestException as e:
            self.logger.error(f"Failed to send email notification: {e}")
            return False

        if response.status_code in (200, 202):
            self.logger.info(f"Email notification sent for {result.endpoint_id}")
            return True

        self.logger.error(f"SendGrid API error: {response.status_code} - {response.text}")
        return False


class TeamsWebhookNotifier(NotificationSender):
    """Send notifications to Microsoft Teams via incoming webhook."""

    def __init__(self, config: "TeamsNotificationConfig"):
        self.config = config
        self.logger = get_logger()

    def _render(self, result: "RenewalResult") -> dict:
        status = result.status.value.upper()
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": "28a745" if result.failed_step is None else "dc3545",
            "summary": f"CDN Certificate Renewal {status}",
            "sections": [
                {
                    "activityTitle": f"CDN Certificate Renewal {status}",
                    "facts": [
                        {"name": k, "value": v} for k, v in _facts(result).items()
                    ],
                    "markdown": True,
                }
            ],
        }

    def send(self, result: "RenewalResult") -> bool:
        """Send notification to Teams via webhook."""
        if not self.config.webhook_url:
            self.logger.warning("Teams webhook URL not configured, skipping Teams notification")
            return False

        try:
            response = requests.post(
                self.config.webhook_url,
                json=self._render(result),
                timeout=30,
            )
        except requests.RequestException as e:
            self.logger.error(f"Failed to send Teams notification: {e}")
            return False

        if response.status_code == 200:
            self.logger.info(f"Teams notification sent for {result.endpoint_id}")
            return True

        self.logger.error(f"Teams webhook error: {response.status_code} - {response.text}")
        return False


class NotificationManager:
    """
    Manages all notification channels.

    Notification failures are logged and never interrupt a renewal run.
    """

    def __init__(self, config: "NotificationsConfig"):
        self.config = config
        self.logger = get_logger()
        self.notifiers: List[NotificationSender] = []

        if config.email.enabled:
            self.notifiers.append(SendGridNotifier(config.email))
            self.logger.info("Email notifications enabled")

        if config.teams.enabled:
            self.notifiers.append(TeamsWebhookNotifier(config.teams))
            self.logger.info("Teams notifications enabled")

    def notify(self, result: "RenewalResult") -> None:
        """
        Send notifications through all enabled channels.

        Args:
            result: Renewal result to report
        """
        self.logger.debug(
            f"Sending notifications for {result.endpoint_id} ({result.status.value})"
        )

        for notifier in self.notifiers:
            try:
                notifier.send(result)
            except Exception as e:
                notifier_name = type(notifier).__name__
                self.logger.error(f"Notification failed ({notifier_name}): {e}")

    def is_enabled(self) -> bool:
        """Check if any notification channel is enabled."""
        return len(self.notifiers) > 0
