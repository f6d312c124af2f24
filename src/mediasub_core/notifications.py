"""User notification emails rendered and queued for best-effort delivery."""

from __future__ import annotations

from html import escape

from mediasub_core.clients.mail import MailMessage
from mediasub_core.delivery import DeliveryQueue, EnqueueReceipt, JobPriority

_FOOTER = (
    '<p style="color: #888; font-size: 12px;">'
    "This is an automated message. Please do not reply.</p>"
)


def _header_text(value: str) -> str:
    # Header values must stay on one line.
    return " ".join(value.split())


def _layout(heading: str, color: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; '
        'margin: 0 auto;">'
        f'<h2 style="color: {color};">{escape(heading)}</h2>'
        f"{body}{_FOOTER}</div>"
    )


class Notifier:
    """Render subscription notifications and hand them to the mail queue."""

    def __init__(
        self,
        queue: DeliveryQueue[MailMessage],
        *,
        app_url: str = "http://localhost:3000",
        brand: str = "Rflix",
    ) -> None:
        self._queue = queue
        self._app_url = app_url.rstrip("/")
        self._brand = brand

    def _link(self, page: str, label: str) -> str:
        href = escape(f"{self._app_url}/{page}", quote=True)
        return f'<a href="{href}">{escape(label)}</a>'

    def _send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> EnqueueReceipt:
        return self._queue.enqueue(
            MailMessage(to=to, subject=subject, html=html),
            priority=priority,
        )

    def send_welcome(self, email: str, username: str) -> EnqueueReceipt:
        body = (
            f"<p>Hello {escape(username)},</p>"
            "<p>Your registration has been approved! You can now access the "
            f"{escape(self._brand)} media streaming service.</p>"
            f"<p>Login at: {self._link('user_login.html', f'{self._brand} Login')}</p>"
            "<p>Thank you for joining us!</p>"
        )
        return self._send(
            email,
            f"Welcome to {self._brand}!",
            _layout(f"Welcome to {self._brand}!", "#6C5CE7", body),
        )

    def send_expiration_warning(
        self, email: str, username: str, days_remaining: int
    ) -> EnqueueReceipt:
        body = (
            f"<p>Hello {escape(username)},</p>"
            f"<p>Your {escape(self._brand)} subscription will expire in "
            f"<strong>{int(days_remaining)} days</strong>.</p>"
            "<p>To continue enjoying our service, please renew your "
            "subscription.</p>"
            f"<p>Renew now: {self._link('user_dashboard.html', 'Renew Subscription')}"
            "</p>"
        )
        return self._send(
            email,
            "Subscription Expiring Soon",
            _layout("Subscription Expiring Soon", "#FF7675", body),
            priority=JobPriority.HIGH,
        )

    def send_subscription_expired(self, email: str, username: str) -> EnqueueReceipt:
        body = (
            f"<p>Hello {escape(username)},</p>"
            f"<p>Your {escape(self._brand)} subscription has expired. "
            "Your account has been disabled.</p>"
            "<p>To regain access, please renew your subscription.</p>"
            f"<p>Renew now: {self._link('user_dashboard.html', 'Renew Subscription')}"
            "</p>"
        )
        return self._send(
            email,
            "Subscription Expired",
            _layout("Subscription Expired", "#D63031", body),
            priority=JobPriority.HIGH,
        )

    def send_usage_alert(self, email: str, alert_message: str) -> EnqueueReceipt:
        body = (
            "<p>Hello,</p><p>We noticed high usage on your account:</p>"
            f'<pre style="white-space: pre-wrap;">{escape(alert_message)}</pre>'
            "<p>Please monitor your usage to avoid service interruption.</p>"
            f"<p>View usage: {self._link('user_dashboard.html', 'Usage Dashboard')}"
            "</p>"
        )
        return self._send(
            email,
            "Usage Alert - High Usage Detected",
            _layout("Usage Alert", "#FFA726", body),
        )

    def send_limit_warning(
        self, email: str, limit_type: str, limit_value: int, message: str
    ) -> EnqueueReceipt:
        body = (
            f"<p>Hello,</p><p><strong>Warning:</strong> You have reached your "
            f"{escape(limit_type)} limit of {int(limit_value)}.</p>"
            f"<p>{escape(message)}</p>"
            "<p>Please consider upgrading your subscription to avoid service "
            "interruption.</p>"
            f"<p>{self._link('user_dashboard.html', 'Upgrade Subscription')}</p>"
        )
        return self._send(
            email,
            f"Limit Warning - {_header_text(limit_type)} Limit Reached",
            _layout("Usage Limit Warning", "#FF9800", body),
        )

    def send_over_limit(
        self, email: str, limit_type: str, limit_value: int, message: str
    ) -> EnqueueReceipt:
        body = (
            "<p>Hello,</p>"
            "<p><strong>Important:</strong> Your account has been restricted.</p>"
            f"<p>{escape(message)}</p>"
            f"<p><strong>Exceeded Limit:</strong> {escape(limit_type)} "
            f"({int(limit_value)})</p>"
            "<p>To restore full access, please upgrade your subscription.</p>"
            f"<p>{self._link('user_dashboard.html', 'Upgrade Now')}</p>"
        )
        return self._send(
            email,
            f"Service Limited - {_header_text(limit_type)} Limit Exceeded",
            _layout("Service Limited - Limit Exceeded", "#F44336", body),
            priority=JobPriority.HIGH,
        )

    def send_upgrade_suggestion(
        self, email: str, suggestion_message: str
    ) -> EnqueueReceipt:
        body = (
            f"<p>Hello,</p><p>{escape(suggestion_message)}</p>"
            "<p>Upgrading your subscription will provide you with higher usage "
            "limits and priority support.</p>"
            f"<p>{self._link('user_dashboard.html', 'View Upgrade Options')}</p>"
        )
        return self._send(
            email,
            f"Upgrade Your {self._brand} Subscription",
            _layout("Upgrade Suggestion", "#2196F3", body),
            priority=JobPriority.LOW,
        )
