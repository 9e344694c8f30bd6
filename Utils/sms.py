import logging
import os

from twilio.rest import Client

logger = logging.getLogger(__name__)


class SmsSender:
    """Twilio backed SMS sender.

    Without credentials the sender is disabled: messages are logged and
    ``send`` returns False instead of raising.
    """

    def __init__(self, account_sid=None, auth_token=None, from_number=None, client=None):
        account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID")
        auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN")
        self.from_number = from_number or os.getenv("TWILIO_PHONE_NUMBER")

        if client is not None:
            self.client = client
        elif account_sid and auth_token:
            self.client = Client(account_sid, auth_token)
        else:
            logger.warning("[SMS] Twilio credentials not found. SMS service disabled.")
            self.client = None

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def send(self, to_phone: str, body: str) -> bool:
        if not self.enabled:
            logger.info(f"[SMS] (disabled) to={to_phone} body={body!r}")
            return False

        message = self.client.messages.create(body=body, from_=self.from_number, to=to_phone)
        logger.info(f"[SMS] sent to {to_phone}: {message.sid}")
        return True
