import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
import os

logger = logging.getLogger(__name__)


class EmailSender:
    """Plain-text mail over SMTP. Raises on delivery errors; callers decide."""

    def __init__(self, host=None, port=None, sender=None, username=None, password=None, use_tls=None):
        self.host = host or os.getenv("SMTP_HOST", "localhost")
        self.port = int(port or os.getenv("SMTP_PORT", 1025))
        self.sender = sender or os.getenv("EMAIL_SENDER", "PataID <noreply@pataid.com>")
        self.username = username if username is not None else os.getenv("SMTP_USER")
        password = password if password is not None else os.getenv("SMTP_PASS")
        # App passwords are often pasted with spaces
        self.password = password.replace(" ", "") if password else None
        if use_tls is None:
            use_tls = os.getenv("SMTP_USE_TLS", "false").lower() in ("1", "true", "yes")
        self.use_tls = use_tls

    def send(self, to_email: str, subject: str, body: str):
        msg = MIMEMultipart()
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.sendmail(self.sender, to_email, msg.as_string())

        logger.info(f"📤 Email '{subject}' sent to {to_email} via {self.host}:{self.port}")
