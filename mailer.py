import logging
import smtplib
from email.message import EmailMessage

from errors import DependencyError
from settings import Settings

logger = logging.getLogger("oodoo.mailer")


class Mailer:
    """Outbound mail.  Without an SMTP host the message is only logged."""

    def __init__(self, settings: Settings):
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.sender = settings.mail_sender

    def send_verification_email(self, email: str, link: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = email
        message["Subject"] = "Verify Your Email for Oodoo"
        message.set_content(f"Hello,\n\nPlease verify your email by opening {link}\n\n"
                            "If you didn't request this, ignore it.")
        message.add_alternative(
            f'<p>Hello,</p><p>Please verify your email by clicking <a href="{link}">here</a>.</p>'
            "<p>If you didn't request this, ignore it.</p>",
            subtype="html",
        )
        self.send(message)

    def send(self, message: EmailMessage) -> None:
        if not self.host:
            logger.info("SMTP not configured; mail to %s not sent: %s", message["To"], message["Subject"])
            logger.debug("Undelivered mail body:\n%s", message.get_body(("plain",)).get_content())
            return
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Sending mail to %s failed: %s", message["To"], exc, exc_info=True)
            raise DependencyError("Failed to send email. Please try again.") from exc
