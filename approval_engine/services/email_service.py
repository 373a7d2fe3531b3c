"""
Email Service for approval workflow notifications
Renders the workflow email templates and sends them via Mailgun API or SMTP
"""

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Tuple

import requests

from approval_engine.core.config import settings
from approval_engine.core.exceptions import ExternalDependencyError
from approval_engine.schemas.notification import NotificationEventType

logger = logging.getLogger(__name__)


def _escape(value: Any) -> Any:
    """HTML-escape every string reachable from the template variables"""
    if isinstance(value, str):
        return html.escape(value)
    if isinstance(value, dict):
        return {key: _escape(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_escape(item) for item in value]
    return value


def _approval_link(variables: Dict[str, Any]) -> str:
    return f"{settings.APP_URL}/approvals/{variables.get('approval_id', '')}"


def _layout(heading: str, body: str, variables: Dict[str, Any], colour: str = "#2563eb") -> str:
    link = _approval_link(variables)
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: {colour};">{heading}</h2>
        {body}
        <div style="text-align: center; margin: 30px 0;">
            <a href="{link}"
               style="background-color: {colour}; color: white; padding: 12px 24px;
                      text-decoration: none; border-radius: 6px; display: inline-block;">
                Open approval
            </a>
        </div>
        <hr style="margin: 30px 0; border: none; border-top: 1px solid #eee;">
        <p style="color: #666; font-size: 12px;">
            You receive this email because of your approval workflow assignments.
        </p>
    </div>
    """


def _request_template(v: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
        <p>{v.get('requester_name', 'A colleague')} requested your approval.</p>
        <p><strong>{v.get('title', '')}</strong> ({v.get('entity_type', '')}
        {v.get('entity_id', '')}), priority {v.get('priority', 'Medium')}.</p>
        <p>{v.get('description') or ''}</p>
    """
    return f"Approval required: {v.get('title', '')}", _layout("Approval required", body, v)


def _reminder_template(v: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
        <p><strong>{v.get('title', '')}</strong> has been waiting for your decision
        for {v.get('hours_pending', 24)} hours.</p>
    """
    return f"Reminder: {v.get('title', '')}", _layout("Approval reminder", body, v)


def _urgent_reminder_template(v: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
        <p><strong>{v.get('title', '')}</strong> has been pending for
        {v.get('hours_pending', 48)} hours and needs your decision now.</p>
    """
    return (
        f"URGENT: {v.get('title', '')} awaits your approval",
        _layout("Urgent approval reminder", body, v, colour="#dc2626"),
    )


def _reassigned_template(v: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
        <p><strong>{v.get('title', '')}</strong> was reassigned to you by
        {v.get('actor_name', 'an administrator')}.</p>
        <p>Reason: {v.get('reason', '')}</p>
    """
    return f"Approval reassigned: {v.get('title', '')}", _layout("Approval reassigned", body, v)


def _orphaned_template(v: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
        <p>The previous assignee of <strong>{v.get('title', '')}</strong> can no
        longer act on it. The request now waits for you.</p>
        <p>{v.get('reason', '')}</p>
    """
    return (
        f"Orphaned approval reassigned: {v.get('title', '')}",
        _layout("Approval needs a new owner", body, v, colour="#d97706"),
    )


def _digest_template(v: Dict[str, Any]) -> Tuple[str, str]:
    items = v.get("items", [])
    rows = "".join(
        f"<li>{item.get('occurred_at', '')}: {item.get('summary', '')}</li>" for item in items
    )
    body = f"""
        <p>{len(items)} approval update(s) since your last digest:</p>
        <ul>{rows}</ul>
    """
    return f"Your approvals digest ({len(items)})", _layout("Daily approvals digest", body, v)


def _approved_template(v: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
        <p><strong>{v.get('title', '')}</strong> was approved by
        {v.get('reviewer_name', 'a reviewer')}.</p>
    """
    return f"Approved: {v.get('title', '')}", _layout("Request approved", body, v, colour="#16a34a")


def _rejected_template(v: Dict[str, Any]) -> Tuple[str, str]:
    body = f"""
        <p><strong>{v.get('title', '')}</strong> was rejected by
        {v.get('reviewer_name', 'a reviewer')}.</p>
        <p>Reason: {v.get('reason', '')}</p>
    """
    return f"Rejected: {v.get('title', '')}", _layout("Request rejected", body, v, colour="#dc2626")


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    NotificationEventType.APPROVAL_REQUEST.value: _request_template,
    NotificationEventType.REMINDER.value: _reminder_template,
    NotificationEventType.URGENT_REMINDER.value: _urgent_reminder_template,
    NotificationEventType.REASSIGNED.value: _reassigned_template,
    NotificationEventType.ORPHANED.value: _orphaned_template,
    NotificationEventType.DIGEST.value: _digest_template,
    NotificationEventType.APPROVED.value: _approved_template,
    NotificationEventType.REJECTED.value: _rejected_template,
}


class EmailService:
    """Templated email sender"""

    def __init__(self):
        self.service = settings.EMAIL_SERVICE.lower()
        self.from_email = settings.EMAIL_FROM
        self.from_name = settings.EMAIL_FROM_NAME

    def render(self, template_key: str, locale: str, variables: Dict[str, Any]) -> Tuple[str, str]:
        """Subject and HTML body; only English copy ships, other locales fall back"""
        builder = TEMPLATES.get(template_key)
        if builder is None:
            raise ValueError(f"Unknown email template: {template_key}")
        if locale != "en":
            logger.debug(f"No '{locale}' copy for {template_key}, using English")
        subject, body = builder(_escape(variables))
        # Subjects are plain text headers
        return html.unescape(subject), body

    def send_templated(
        self, template_key: str, locale: str, variables: Dict[str, Any], to: str
    ) -> None:
        """Render and send; raises ExternalDependencyError when delivery fails"""
        subject, html_content = self.render(template_key, locale, variables)
        if not self._send_email(to, subject, html_content):
            raise ExternalDependencyError(
                f"Failed to send '{template_key}' email to {to}",
                {"template": template_key, "service": self.service},
            )

    def _send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        """Send email using configured service"""
        if self.service == "mailgun":
            return self._send_via_mailgun(to_email, subject, html_content)
        elif self.service == "smtp":
            return self._send_via_smtp(to_email, subject, html_content)
        logger.error(f"Unsupported email service: {self.service}")
        return False

    def _send_via_mailgun(self, to_email: str, subject: str, html_content: str) -> bool:
        """Send email via Mailgun API"""
        if not settings.MAILGUN_API_KEY or not settings.MAILGUN_DOMAIN:
            logger.error("Mailgun API key or domain not configured")
            return False

        url = f"{settings.MAILGUN_API_BASE_URL}/v3/{settings.MAILGUN_DOMAIN}/messages"
        data = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": to_email,
            "subject": subject,
            "html": html_content,
        }

        try:
            response = requests.post(
                url, auth=("api", settings.MAILGUN_API_KEY), data=data, timeout=30
            )
        except requests.RequestException as e:
            logger.error(f"Mailgun send error: {str(e)}")
            return False

        if response.status_code == 200:
            logger.info(f"Email sent successfully to {to_email}")
            return True
        logger.error(f"Mailgun API error: {response.status_code} - {response.text}")
        return False

    def _send_via_smtp(self, to_email: str, subject: str, html_content: str) -> bool:
        """Send email via SMTP"""
        if not all([settings.SMTP_HOST, settings.SMTP_USERNAME, settings.SMTP_PASSWORD]):
            logger.error("SMTP configuration incomplete")
            return False

        msg = MIMEMultipart()
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(html_content, "html"))

        try:
            server = smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT)
            if settings.SMTP_USE_TLS:
                server.starttls()
            server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg)
            server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send error: {str(e)}")
            return False

        logger.info(f"Email sent via SMTP to {to_email}")
        return True
