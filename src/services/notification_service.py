import logging
from botocore.exceptions import ClientError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

logger = logging.getLogger(__name__)

WITHDRAWAL_SUBJECTS = {
    "approved": "Your withdrawal request was approved",
    "rejected": "Your withdrawal request was rejected",
    "paid": "Your withdrawal has been paid",
}


class NotificationService:
    def __init__(self, client, from_email: str, currency: str = "bdt"):
        self.ses_client = client
        self.from_email = from_email
        self.currency = currency.upper()

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(ClientError)
    )
    def _send(self, email_to: str, subject: str, body_text: str) -> None:
        self.ses_client.send_email(
            Source=self.from_email,
            Destination={'ToAddresses': [email_to]},
            Message={
                'Subject': {'Data': subject},
                'Body': {'Text': {'Data': body_text}}
            }
        )

    def send_donation_receipt(self, email_to: str, amount: int, donation_id: str,
                              project_title: str, transaction_id: str, qr_code_url: str | None = None):
        subject = "Thank you for your donation!"
        body_text = (
            f"Hello,\n\n"
            f"Thank you for your generous donation of {self.currency} {amount:,} to {project_title}.\n"
            f"Your donation ID is: {donation_id}\n"
            f"Transaction: {transaction_id}\n"
        )
        if qr_code_url:
            body_text += (
                f"\nYour reward QR code: {qr_code_url}\n"
                f"Show it to the project creator within 30 days to redeem your reward.\n"
            )
        body_text += "\nWe appreciate your support!"

        logger.info(f"Attempting to send receipt for donation {donation_id}...")
        self._send(email_to, subject, body_text)
        logger.info(f"Successfully sent receipt for donation {donation_id}")

    def send_withdrawal_update(self, email_to: str, status: str, requested_amount: int,
                               project_title: str, notes: str | None = None):
        subject = WITHDRAWAL_SUBJECTS.get(status)
        if not subject:
            logger.warning(f"No withdrawal notification for status {status}")
            return
        body_text = (
            f"Hello,\n\n"
            f"Your withdrawal request of {self.currency} {requested_amount:,} for {project_title} "
            f"is now {status}.\n"
        )
        if notes:
            body_text += f"\nNotes from the admin team: {notes}\n"

        logger.info(f"Attempting to send withdrawal update ({status}) for {project_title}...")
        self._send(email_to, subject, body_text)
