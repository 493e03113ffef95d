"""
Platform money and eligibility rules.

Everything here is pure: callers pass in the records and the current time,
nothing touches storage or the payment gateway. Amounts are whole currency
units (BDT) and all arithmetic is done with Decimal so the 3% split matches
the amounts shown to donors.
"""
import math
import random
import re
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from models.donation import Donation
from models.payment_request import PaymentRequest
from models.project import Project, RewardTier

ADMIN_FEE_RATE = Decimal("0.03")
REWARD_VALIDITY_DAYS = 30

# Requests that have already claimed part of a project's balance
COMMITTED_REQUEST_STATUSES = ("approved", "paid")


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_fee(amount: int) -> tuple[int, int]:
    """Return (net_amount, admin_fee) for a gross amount; the two always add up to amount."""
    net_amount = round_half_up(Decimal(amount) * (Decimal(1) - ADMIN_FEE_RATE))
    return net_amount, amount - net_amount


def funding_progress(current_amount: int, target_amount: int, clamp: bool = True) -> int:
    if target_amount <= 0:
        return 0
    progress = round_half_up(Decimal(current_amount) * 100 / Decimal(target_amount))
    if clamp:
        return max(0, min(100, progress))
    return progress


def days_remaining(end_date: datetime, now: datetime) -> int:
    days = math.ceil((end_date - now).total_seconds() / 86400)
    return days if days > 0 else 0


def resolve_status(project: Project, now: datetime) -> str:
    """Status a project should be in given its dates and funding."""
    if project.status == "funded" and project.current_amount < project.target_amount and now <= project.end_date:
        # A refund took a running campaign back below target
        return "active"
    if project.status != "active":
        return project.status
    if now > project.end_date:
        return "funded" if project.current_amount >= project.target_amount else "expired"
    if project.current_amount >= project.target_amount:
        return "funded"
    return project.status


def can_receive_donations(project: Project, now: datetime) -> bool:
    return (
        project.status == "active"
        and project.is_active
        and project.start_date <= now <= project.end_date
        and project.current_amount < project.target_amount
    )


def available_reward_tiers(tiers: Iterable[RewardTier]) -> list[RewardTier]:
    return sorted(
        (tier for tier in tiers if tier.is_active and tier.has_capacity),
        key=lambda tier: tier.minimum_amount,
    )


def reward_expires_at(created_at: datetime) -> datetime:
    return created_at + timedelta(days=REWARD_VALIDITY_DAYS)


@dataclass(frozen=True)
class RewardEligibility:
    redeemable: bool
    reason: str
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return self.reason == "expired"


def reward_eligibility(donation: Donation, now: datetime) -> RewardEligibility:
    expires_at = reward_expires_at(donation.created_at)

    if not donation.has_reward:
        reason = "no_reward"
    elif donation.payment_status != "success":
        reason = "payment_not_successful"
    elif donation.reward_status == "redeemed":
        reason = "already_redeemed"
    elif donation.reward_status == "expired" or now > expires_at:
        reason = "expired"
    else:
        reason = "eligible"

    return RewardEligibility(redeemable=reason == "eligible", reason=reason, expires_at=expires_at)


def is_refundable(donation: Donation) -> bool:
    return donation.payment_status == "success" and donation.reward_status == "pending"


@dataclass(frozen=True)
class ProjectBalance:
    total_raised: int = 0
    total_net_amount: int = 0
    total_admin_fee: int = 0
    donation_count: int = 0
    already_requested: int = 0

    @property
    def available_amount(self) -> int:
        return max(0, self.total_net_amount - self.already_requested)

    def to_dict(self) -> dict:
        return {
            "total_raised": self.total_raised,
            "total_net_amount": self.total_net_amount,
            "total_admin_fee": self.total_admin_fee,
            "donation_count": self.donation_count,
            "already_requested": self.already_requested,
            "available_amount": self.available_amount,
        }


def project_balance(donations: Iterable[Donation], requests: Iterable[PaymentRequest]) -> ProjectBalance:
    total_raised = total_net = total_fee = count = 0
    for donation in donations:
        if donation.payment_status != "success":
            continue
        total_raised += donation.amount
        total_net += donation.net_amount
        total_fee += donation.admin_fee
        count += 1

    already_requested = sum(
        request.requested_amount
        for request in requests
        if request.status in COMMITTED_REQUEST_STATUSES
    )

    return ProjectBalance(
        total_raised=total_raised,
        total_net_amount=total_net,
        total_admin_fee=total_fee,
        donation_count=count,
        already_requested=already_requested,
    )


def proportional_fee(requested_amount: int, balance: ProjectBalance) -> int:
    """Share of the withheld admin fee that belongs to the funds being released."""
    if balance.total_net_amount <= 0:
        return 0
    share = Decimal(balance.total_admin_fee) * requested_amount / Decimal(balance.total_net_amount)
    return round_half_up(share)


def generate_slug(title: str) -> str:
    slug = title.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug[:50].strip("-")


def _base36(number: int) -> str:
    alphabet = string.digits + string.ascii_lowercase
    digits = ""
    while number:
        number, remainder = divmod(number, 36)
        digits = alphabet[remainder] + digits
    return digits or "0"


def generate_transaction_id(prefix: str = "PG") -> str:
    timestamp = _base36(int(time.time() * 1000))
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"{prefix}_{timestamp}_{suffix}".upper()
