import json
import logging
import stripe
from botocore.exceptions import ClientError
from collections import defaultdict
from datetime import datetime
from pydantic import ValidationError

from core.exceptions import NotFoundError, PaymentGatewayError, PermissionDeniedError, ValidationFailedError
from data_access.dynamodb import DynamoDataAccess
from models.base import utc_now
from models.donation import MAX_DONATION_AMOUNT, MIN_DONATION_AMOUNT, Donation, DonorInfo
from models.project import Project
from models.user import AuthenticatedUser
from services import funding
from services.project_service import ProjectService
from services.qr_service import QRService

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES = frozenset({"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
                                     "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"})

SETTLED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
FAILED_EVENT = "checkout.session.async_payment_failed"
EXPIRED_EVENT = "checkout.session.expired"
# States a donation can still be settled from
OPEN_STATUSES = ("pending", "processing")


def to_minor_units(amount: int, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return amount
    return amount * 100


class PaymentService:
    def __init__(
        self,
        data_access: DynamoDataAccess,
        project_service: ProjectService,
        qr_service: QRService,
        sqs_client,
        payment_queue_url: str,
        notification_queue_url: str,
        stripe_webhook_secret: str,
        frontend_url: str,
        currency: str = "bdt",
    ):
        self.data_access = data_access
        self.project_service = project_service
        self.qr_service = qr_service
        self.sqs_client = sqs_client
        self.payment_queue_url = payment_queue_url
        self.notification_queue_url = notification_queue_url
        self.stripe_webhook_secret = stripe_webhook_secret
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency

    # Initiation

    def _select_reward(self, project: Project, reward_tier_id: str | None, amount: int) -> int:
        if not reward_tier_id:
            return 0
        found = project.find_tier(reward_tier_id)
        if not found or not found[1].is_active:
            raise ValidationFailedError("Invalid reward tier")
        tier = found[1]
        if amount < tier.minimum_amount:
            raise ValidationFailedError(f"Minimum amount for this reward is {tier.minimum_amount}")
        if not tier.has_capacity:
            raise ValidationFailedError("This reward tier is fully backed")
        return tier.minimum_amount

    def initiate_payment(
        self,
        user: AuthenticatedUser,
        project_id: str,
        amount: int,
        customer_name: str,
        customer_email: str,
        customer_phone: str | None = None,
        reward_tier_id: str | None = None,
        is_anonymous: bool = False,
        message: str | None = None,
    ) -> dict:
        if not MIN_DONATION_AMOUNT <= amount <= MAX_DONATION_AMOUNT:
            raise ValidationFailedError(
                f"Amount must be between {MIN_DONATION_AMOUNT} and {MAX_DONATION_AMOUNT:,}"
            )
        customer_email = customer_email.strip().lower()
        try:
            donor_info = DonorInfo(name=customer_name.strip(), email=customer_email, phone=customer_phone or None)
        except ValidationError as e:
            raise ValidationFailedError("Invalid donor details", [err["msg"] for err in e.errors()])

        project = self.data_access.get_project(project_id)
        if not project:
            raise NotFoundError("Project not found")
        if not funding.can_receive_donations(project, utc_now()):
            raise ValidationFailedError("Project is not accepting donations at this time")

        reward_value = self._select_reward(project, reward_tier_id, amount)
        net_amount, admin_fee = funding.split_fee(amount)

        try:
            donation = Donation(
                project_id=project.project_id,
                project_creator_id=project.creator_id,
                donor_id=user.user_id,
                amount=amount,
                admin_fee=admin_fee,
                net_amount=net_amount,
                currency=self.currency,
                transaction_id=funding.generate_transaction_id("PG"),
                reward_tier_id=reward_tier_id or None,
                reward_value=reward_value,
                is_anonymous=is_anonymous,
                message=message.strip() if message else None,
                donor_info=donor_info,
                donor_display_name="Anonymous Donor" if is_anonymous else donor_info.name,
            )
        except ValidationError as e:
            raise ValidationFailedError("Invalid donation details", [err["msg"] for err in e.errors()])
        self.data_access.create_donation_record(donation)

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": to_minor_units(amount, self.currency),
                        "product_data": {"name": f"Donation to {project.title}"},
                    },
                    "quantity": 1,
                }],
                customer_email=customer_email,
                client_reference_id=donation.donation_id,
                success_url=(
                    f"{self.frontend_url}/payment/success?donation={donation.donation_id}"
                    f"&transaction={donation.transaction_id}&session_id={{CHECKOUT_SESSION_ID}}"
                ),
                cancel_url=(
                    f"{self.frontend_url}/payment/failed?error=payment_cancelled"
                    f"&transaction={donation.transaction_id}"
                ),
                metadata={
                    "donation_id": donation.donation_id,
                    "project_id": project.project_id,
                    "transaction_id": donation.transaction_id,
                },
            )
        except stripe.StripeError as e:
            logger.error(f"Error creating checkout session for donation {donation.donation_id}: {e}")
            self.data_access.update_donation_status(donation.donation_id, "failed", "pending")
            raise PaymentGatewayError("Failed to initiate payment") from e

        self.data_access.update_donation(donation.donation_id, {"checkout_session_id": session.id})
        logger.info(f"Initiated payment {donation.transaction_id} for project {project.project_id}")

        return {
            "donation_id": donation.donation_id,
            "transaction_id": donation.transaction_id,
            "payment_gateway_url": session.url,
            "session_id": session.id,
            "amount": amount,
            "admin_fee": admin_fee,
            "net_amount": net_amount,
        }

    # Gateway events

    def queue_payment_webhook(self, payload: bytes, signature_header: str):
        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature_header,
                secret=self.stripe_webhook_secret
            )

            self.sqs_client.send_message(
                QueueUrl=self.payment_queue_url,
                MessageBody=payload.decode("utf-8")
            )
        except ValueError as e:
            logger.error(f"Webhook error: Invalid payload - {e}")
            raise
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook error: Invalid signature - {e}")
            raise
        except ClientError as e:
            logger.error(f"SQS Error: {e}")
            raise

    def handle_payment_event(self, event_body: str):
        event = json.loads(event_body)
        event_type = event['type']
        session = event['data']['object']
        donation_id = (session.get('metadata') or {}).get('donation_id') or session.get('client_reference_id')

        if not donation_id:
            logger.warning(f"Event {event.get('id')} of type {event_type} carries no donation reference")
            return

        if event_type in SETTLED_EVENTS:
            if session.get('payment_status') not in ('paid', 'no_payment_required'):
                self._transition(donation_id, "processing", ("pending",))
                logger.info(f"Donation {donation_id} awaiting asynchronous payment confirmation.")
                return
            self.settle_donation(donation_id, session)

        elif event_type == FAILED_EVENT:
            if self._transition(donation_id, "failed", OPEN_STATUSES):
                logger.warning(f"Payment failed for donation {donation_id}.")
            else:
                logger.info(f"Skipped duplicate processing for failed payment {donation_id}.")

        elif event_type == EXPIRED_EVENT:
            if self._transition(donation_id, "cancelled", ("pending",)):
                logger.info(f"Checkout expired for donation {donation_id}.")

        else:
            logger.warning(f"Received unhandled event type: {event_type}")

    def _transition(self, donation_id: str, status: str, from_statuses: tuple[str, ...],
                    **fields) -> Donation | None:
        for expected in from_statuses:
            updated = self.data_access.update_donation_status(donation_id, status, expected, **fields)
            if updated:
                return updated
        return None

    def settle_donation(self, donation_id: str, session: dict) -> Donation | None:
        donation = self.data_access.get_donation(donation_id)
        if not donation:
            logger.error(f"Donation {donation_id} not found for settlement")
            return None

        expected_total = to_minor_units(donation.amount, donation.currency)
        if session.get('amount_total') != expected_total:
            logger.error(
                f"Amount mismatch for donation {donation_id}: "
                f"received {session.get('amount_total')}, expected {expected_total}",
                extra={"donation_id": donation_id},
            )
            self._transition(donation_id, "failed", OPEN_STATUSES)
            return None

        settled = self._transition(
            donation_id,
            "success",
            OPEN_STATUSES,
            payment_intent_id=session.get('payment_intent'),
            checkout_session_id=session.get('id'),
        )
        if not settled:
            logger.info(f"Skipped duplicate processing for donation {donation_id}.")
            return None

        project = self.data_access.get_project(settled.project_id)
        if project:
            tier = project.find_tier(settled.reward_tier_id)
            project = self.data_access.credit_project(
                project.project_id,
                amount=settled.amount,
                admin_fee=settled.admin_fee,
                tier_index=tier[0] if tier else None,
            )
            self.project_service.refresh_status(project)
        self.data_access.update_total_donations(settled.amount, settled.admin_fee)

        if settled.has_reward and project:
            settled = self._attach_qr(settled, project)

        self._queue_receipt(settled, project)
        logger.info(
            f"Successfully processed payment {settled.transaction_id}.",
            extra={"donation_id": settled.donation_id, "project_id": settled.project_id, "amount": settled.amount},
        )
        return settled

    def _attach_qr(self, donation: Donation, project: Project) -> Donation:
        try:
            qr_code_data, qr_code_url = self.qr_service.generate_donation_qr(donation, project)
        except Exception as e:
            # The payment is already settled; the QR can be regenerated later
            logger.error(f"QR code generation failed for donation {donation.donation_id}: {e}")
            return donation
        return self.data_access.update_donation(
            donation.donation_id, {"qr_code_data": qr_code_data, "qr_code_url": qr_code_url}
        ) or donation

    def _queue_receipt(self, donation: Donation, project: Project | None):
        if not donation.donor_info:
            return
        notification_job = {
            "type": "RECEIPT",
            "email_to": donation.donor_info.email,
            "amount": donation.amount,
            "donation_id": donation.donation_id,
            "transaction_id": donation.transaction_id,
            "project_title": project.title if project else "",
            "qr_code_url": donation.qr_code_url,
        }
        self.sqs_client.send_message(
            QueueUrl=self.notification_queue_url,
            MessageBody=json.dumps(notification_job)
        )

    # Queries and admin actions

    def payment_status(self, transaction_id: str) -> dict:
        donation = self.data_access.get_donation_by_transaction(transaction_id)
        if not donation:
            raise NotFoundError("Transaction not found")
        project = self.data_access.get_project(donation.project_id)
        return {
            "transaction_id": transaction_id,
            "donation_id": donation.donation_id,
            "status": donation.payment_status,
            "amount": donation.amount,
            "project": {"project_id": project.project_id, "title": project.title, "slug": project.slug}
            if project else None,
            "created_at": donation.created_at,
            "qr_code_url": donation.qr_code_url,
        }

    def refund(self, admin: AuthenticatedUser, transaction_id: str, reason: str | None = None) -> dict:
        if not admin.is_admin:
            raise PermissionDeniedError("Only admins can refund donations")
        donation = self.data_access.get_donation_by_transaction(transaction_id)
        if not donation:
            raise NotFoundError("Transaction not found")
        if not funding.is_refundable(donation) or not donation.payment_intent_id:
            raise ValidationFailedError("This transaction cannot be refunded")

        # Claim the donation before touching Stripe so only one refund is ever issued
        if not self.data_access.update_donation_status(donation.donation_id, "refunded", "success"):
            raise ValidationFailedError("This transaction cannot be refunded")

        try:
            refund = stripe.Refund.create(
                payment_intent=donation.payment_intent_id,
                reason="requested_by_customer",
                metadata={"transaction_id": transaction_id, "reason": reason or "Admin refund"},
            )
        except stripe.StripeError as e:
            logger.error(f"Refund failed for {transaction_id}: {e}")
            self.data_access.update_donation_status(donation.donation_id, "success", "refunded")
            raise PaymentGatewayError("Refund could not be processed") from e

        project = self.data_access.get_project(donation.project_id)
        if project:
            tier = project.find_tier(donation.reward_tier_id)
            project = self.data_access.debit_project(
                project.project_id,
                amount=donation.amount,
                admin_fee=donation.admin_fee,
                tier_index=tier[0] if tier else None,
            )
            self.project_service.refresh_status(project)
        self.data_access.update_total_donations(-donation.amount, -donation.admin_fee, count=-1)
        logger.info(f"Refunded {transaction_id} by admin {admin.user_id}: {reason}")
        return {"refund_id": refund.id, "status": refund.status}

    def payment_methods(self) -> dict:
        return {
            "primary": "Stripe Checkout",
            "supported_methods": ["Credit Card", "Debit Card", "Wallets"],
            "currency": self.currency.upper(),
            "min_amount": MIN_DONATION_AMOUNT,
            "max_amount": MAX_DONATION_AMOUNT,
            "fees": {
                "admin_fee": f"{funding.ADMIN_FEE_RATE * 100:.0f}%",
                "gateway_fee": "As per Stripe rates",
            },
        }

    def statistics(self, start: datetime | None = None, end: datetime | None = None) -> dict:
        donations = [
            d for d in self.data_access.list_donations()
            if (not start or d.created_at >= start) and (not end or d.created_at <= end)
        ]

        successful = [d for d in donations if d.is_successful]
        total_amount = sum(d.amount for d in successful)
        overview = {
            "total_amount": total_amount,
            "total_net_amount": sum(d.net_amount for d in successful),
            "total_admin_fee": sum(d.admin_fee for d in successful),
            "donation_count": len(successful),
            "average_donation": round(total_amount / len(successful)) if successful else 0,
            "unique_project_count": len({d.project_id for d in successful}),
        }

        breakdown = defaultdict(lambda: {"count": 0, "total_amount": 0, "total_net_amount": 0, "total_admin_fee": 0})
        for donation in donations:
            row = breakdown[donation.payment_status]
            row["count"] += 1
            row["total_amount"] += donation.amount
            row["total_net_amount"] += donation.net_amount
            row["total_admin_fee"] += donation.admin_fee

        return {
            "overview": overview,
            "status_breakdown": sorted(
                ({"status": status, **row} for status, row in breakdown.items()),
                key=lambda row: row["count"],
                reverse=True,
            ),
            "period": {"start_date": start, "end_date": end},
        }
