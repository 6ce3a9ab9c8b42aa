"""
Email service using SendGrid for transactional emails.

When SENDGRID_ENABLED is False (default in dev), emails are logged
to console instead of sent. This allows development without an API key.
"""

import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Email, Mail, To

from app.config import settings

logger = logging.getLogger(__name__)


def _send_email(to_email: str, subject: str, html_content: str) -> bool:
    """Send an email via SendGrid. Returns True if sent, False otherwise."""
    if not settings.SENDGRID_ENABLED:
        logger.info(
            "Email (not sent - SendGrid disabled):\n"
            "  To: %s\n  Subject: %s\n  Body preview: %s...",
            to_email,
            subject,
            html_content[:200],
        )
        return False

    try:
        sg = SendGridAPIClient(settings.SENDGRID_API_KEY)
        from_email = Email(settings.SENDGRID_FROM_EMAIL, settings.SENDGRID_FROM_NAME)
        message = Mail(
            from_email=from_email,
            to_emails=To(to_email),
            subject=subject,
            html_content=Content("text/html", html_content),
        )
        response = sg.send(message)
        logger.info(
            "Email sent to %s (status %s)", to_email, response.status_code
        )
        return True
    except Exception:
        logger.exception("Failed to send email to %s", to_email)
        return False


def send_binary_commission_notice(
    to_email: str,
    full_name: str,
    cycle_id: str,
    matched_volume: str,
    amount: str,
) -> bool:
    """Tell an affiliate what the binary cycle paid them."""
    html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #2d6a4f;">Binary commission earned</h2>
        <p>Hello <strong>{full_name}</strong>,</p>
        <p>The binary cycle <strong>{cycle_id}</strong> has been closed.</p>

        <div style="background: #f0f7f4; padding: 16px; border-radius: 8px; margin: 16px 0;">
            <p style="margin: 4px 0;"><strong>Matched volume:</strong> {matched_volume}</p>
            <p style="margin: 4px 0;"><strong>Commission:</strong>
                <span style="font-size: 1.2em; color: #2d6a4f; font-weight: bold;">${amount}</span>
            </p>
        </div>

        <p>The amount has been forwarded for payout. Unmatched volume on your
        stronger leg is carried over to the next cycles.</p>

        <hr style="border: none; border-top: 1px solid #ddd; margin: 24px 0;">
        <p style="color: #888; font-size: 0.85em;">
            This email was generated automatically. Please do not reply.
        </p>
    </div>
    """

    return _send_email(
        to_email=to_email,
        subject=f"Binary commission for cycle {cycle_id}: ${amount}",
        html_content=html,
    )
