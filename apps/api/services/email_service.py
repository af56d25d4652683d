"""
Email Service

Sends pre-rendered emails (the weekly trainer digest).
Uses SMTP for now, can be swapped for SendGrid/Mailgun later.
"""

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
from core.config import settings
import logging

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending emails"""

    def __init__(self):
        self.smtp_server = settings.SMTP_SERVER
        self.smtp_port = settings.SMTP_PORT
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME
        self.enabled = settings.EMAIL_ENABLED

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email.

        Returns True if sent successfully, False otherwise.
        """
        if not self.enabled:
            logger.info(f"Email disabled, would send to {to_email}: {subject}")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            if self.smtp_username and self.smtp_password:
                server = smtplib.SMTP(self.smtp_server, self.smtp_port)
                server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
                server.quit()
            else:
                # Local development - just log
                logger.info(f"Would send email to {to_email}: {subject}")
                logger.debug(f"Content: {html_content[:200]}...")

            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return False

    def send_trainer_digest(self, to_email: str, digest) -> bool:
        """Send a rendered weekly digest (services.weekly_digest.DigestEmail)."""
        return self.send_email(to_email, digest.subject, digest.html_content, digest.text_content)


# Singleton instance
email_service = EmailService()
