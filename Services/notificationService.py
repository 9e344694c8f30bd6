import logging
from datetime import datetime

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION_POINT = "Campus Security"


class NotificationDispatcher:
    """Fire-and-forget email/SMS for claim events.

    Every public method returns True when the message was handed to a
    sender and False otherwise. Nothing here raises into the caller.
    """

    def __init__(self, email_sender, sms_sender):
        self.email_sender = email_sender
        self.sms_sender = sms_sender

    # -------------------------
    # transport
    # -------------------------
    def _email(self, to_email, subject, body) -> bool:
        if not to_email:
            return False
        try:
            self.email_sender.send(to_email, subject, body)
            return True
        except Exception as e:
            logger.warning(f"⚠️ Email '{subject}' to {to_email} failed: {e}")
            return False

    def _sms(self, to_phone, body) -> bool:
        if not to_phone:
            return False
        try:
            return bool(self.sms_sender.send(to_phone, body))
        except Exception as e:
            logger.warning(f"⚠️ SMS to {to_phone} failed: {e}")
            return False

    # -------------------------
    # claim verification
    # -------------------------
    def send_otp(self, phone, code) -> bool:
        return self._sms(phone, f"Your PataID verification code is: {code}. Valid for 10 minutes.")

    def send_claim_started(self, email, report_number, method) -> bool:
        return self._email(
            email,
            "Your PataID claim has started",
            f"We received your claim for report #{report_number}.\n"
            f"Verification method: {method.replace('_', ' ')}.\n"
            "Complete the verification within 24 hours.",
        )

    def send_document_review_request(self, guard_phone, verification_id) -> bool:
        return self._sms(
            guard_phone,
            f"New document upload for verification {verification_id}. Please review.",
        )

    def send_claim_outcome(self, email, outcome, report_number=None, campus=None,
                           collection_point=None) -> bool:
        if outcome == "verified":
            subject = "Your ID Claim Has Been Verified"
            body = (
                f"Your claim for report #{report_number} has been verified.\n"
                f"Collect your ID at {collection_point or DEFAULT_COLLECTION_POINT}"
                f" ({campus} campus). Bring another form of identification.\n"
                f"© {datetime.now().year} PataID"
            )
        else:
            subject = "Your ID Claim Could Not Be Verified"
            body = (
                f"Your claim for report #{report_number} was {outcome}.\n"
                "If you believe this is a mistake, contact campus security."
            )
        return self._email(email, subject, body)

    def send_guard_claim_notice(self, guard_phone, report_number) -> bool:
        return self._sms(
            guard_phone,
            f"Report #{report_number} has been claimed. Please prepare for collection.",
        )

    # -------------------------
    # report lifecycle
    # -------------------------
    def send_owner_found_alert(self, owner, report_number, campus) -> bool:
        """Tell a registered user that an ID matching theirs was handed in."""
        prefs = owner.notification_preferences
        sent = False
        if prefs is None or prefs.email:
            sent = self._email(
                owner.email,
                "Your lost ID may have been found",
                f"Hello {owner.first_name},\n\nAn ID matching yours was found at {campus} campus."
                f" Report #{report_number}. Sign in to PataID to claim it.",
            ) or sent
        if prefs is not None and prefs.sms:
            sent = self._sms(
                owner.phone,
                f"Your lost ID has been found at {campus} campus. Report #{report_number}. Visit PataID to claim.",
            ) or sent
        return sent

    def send_report_confirmation(self, contact_method, contact, report_number) -> bool:
        if contact_method == "email":
            return self._email(
                contact,
                f"Thank you for reporting a found ID (#{report_number})",
                f"Thank you for reporting the found ID. Report #{report_number}.\n"
                "We'll notify the owner.",
            )
        return self._sms(
            contact,
            f"Thank you for reporting the found ID. Report #{report_number}. We'll notify the owner.",
        )

    def send_guard_new_report(self, guard_phone, report_number, location) -> bool:
        return self._sms(
            guard_phone,
            f"New ID found at {location}. Report #{report_number}. Please verify at security desk.",
        )

    def send_verification_complete(self, email, first_name, report_number, campus,
                                   collection_point=None) -> bool:
        return self._email(
            email,
            "Your ID Verification is Complete",
            f"Hello {first_name},\n\nReport #{report_number} has been verified by campus security."
            f" Collect your ID at {collection_point or DEFAULT_COLLECTION_POINT} ({campus}).",
        )
