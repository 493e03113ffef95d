import io
import json
import logging

import qrcode
from botocore.exceptions import ClientError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from models.donation import Donation
from models.project import Project
from services import funding

logger = logging.getLogger(__name__)

QR_FOLDER = "qr-codes"


class QRService:
    def __init__(self, s3_client, bucket_name: str, public_base_url: str, frontend_url: str):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.public_base_url = public_base_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")

    def verification_url(self, donation_id: str) -> str:
        return f"{self.frontend_url}/verify-reward/{donation_id}"

    def build_payload(self, donation: Donation, project: Project) -> dict:
        tier = project.find_tier(donation.reward_tier_id)
        return {
            "donation_id": donation.donation_id,
            "project_id": project.project_id,
            "project_title": project.title,
            "amount": donation.amount,
            "reward_tier_id": donation.reward_tier_id,
            "reward_title": tier[1].title if tier else None,
            "reward_value": donation.reward_value,
            "donor_name": donation.donor_display_name,
            "created_at": donation.created_at.isoformat(),
            "expires_at": funding.reward_expires_at(donation.created_at).isoformat(),
            "verification_url": self.verification_url(donation.donation_id),
        }

    @staticmethod
    def render_png(data: str) -> bytes:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=2,
        )
        qr.add_data(data)
        qr.make(fit=True)
        buffer = io.BytesIO()
        qr.make_image(fill_color="black", back_color="white").save(buffer, format="PNG")
        return buffer.getvalue()

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(ClientError)
    )
    def _upload(self, key: str, body: bytes) -> None:
        self.s3_client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=body,
            ContentType="image/png",
            CacheControl="max-age=31536000",
        )

    def generate_donation_qr(self, donation: Donation, project: Project) -> tuple[str, str]:
        """Render the reward QR for a donation and store it; returns (qr_code_data, qr_code_url)."""
        qr_code_data = json.dumps(self.build_payload(donation, project))
        # The code itself encodes the verification link so any phone camera can open it
        image = self.render_png(self.verification_url(donation.donation_id))
        key = f"{QR_FOLDER}/{donation.donation_id}.png"
        self._upload(key, image)
        logger.info(f"Stored reward QR code for donation {donation.donation_id}")
        return qr_code_data, f"{self.public_base_url}/{key}"
