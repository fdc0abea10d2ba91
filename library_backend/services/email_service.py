"""
Email notification dispatcher.

Messages go out over SMTP with ``smtplib``. Sending is a side effect of the
circulation operations and always happens after their transaction committed.
"""

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from ..config import Settings
from ..errors import EmailDeliveryError
from ..models import Book, Reservation, User

logger = logging.getLogger(__name__)


class EmailDispatcher:
    """Builds and sends the library's notification emails.

    Each ``send_*`` method returns ``True`` once the message was handed to the
    SMTP server and ``False`` when notifications are switched off. Delivery
    failures raise ``EmailDeliveryError``; callers decide whether that matters.
    """

    def __init__(self, config: Settings) -> None:
        self.config = config

    def send_welcome(self, user: User) -> bool:
        body = (
            f"Hello {user.name},\n\n"
            f"Welcome to {self.config.app_name}! Your account is ready and you can start "
            "borrowing and reserving books right away.\n"
        )
        return self._send(user.email, "Welcome to the library", body)

    def send_password_reset(self, user: User, token: str) -> bool:
        minutes = self.config.password_reset_expiration_minutes
        body = (
            f"Hello {user.name},\n\n"
            "We received a request to reset your password. Use the token below to choose a new one:\n\n"
            f"    {token}\n\n"
            f"The token expires in {minutes} minutes. If you did not ask for this, ignore this email.\n"
        )
        return self._send(user.email, "Password reset request", body)

    def send_reservation_ready(self, user: User, book: Book, reservation: Reservation) -> bool:
        body = (
            f"Hello {user.name},\n\n"
            f'A copy of "{book.title}" by {book.author} is now available for you.\n'
            f"Your reservation is held until {reservation.expiry_date:%Y-%m-%d %H:%M} UTC.\n"
        )
        return self._send(user.email, f"Reserved book available: {book.title}", body)

    def _send(self, to_address: str, subject: str, body: str) -> bool:
        if not self.config.enable_email_notifications:
            logger.warning(f"Email notifications disabled; not sending '{subject}' to {to_address}")
            return False

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.config.smtp_from_name, self.config.smtp_from_email))
        message["To"] = to_address
        message.set_content(body)

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.config.smtp_timeout) as smtp:
                smtp.starttls()
                if self.config.smtp_username and self.config.smtp_password:
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send '{subject}' to {to_address}: {e}")
            raise EmailDeliveryError(f"Could not send email to {to_address}") from e

        logger.info(f"Sent '{subject}' to {to_address}")
        return True
