"""SQLAlchemy models for UMKM Studio."""

from umkm_studio.models.account import Account
from umkm_studio.models.app_setting import AppSetting
from umkm_studio.models.coupon import Coupon, CouponRedemption
from umkm_studio.models.credit_ledger import CreditLedgerEntry, CreditReservation, LedgerReason
from umkm_studio.models.generation_job import GenerationJob, JobStatus
from umkm_studio.models.referral import ReferralCommission, ReferralEdge
from umkm_studio.models.transaction import Transaction, TransactionStatus

__all__ = [
    "Account",
    "AppSetting",
    "Coupon",
    "CouponRedemption",
    "CreditLedgerEntry",
    "CreditReservation",
    "LedgerReason",
    "GenerationJob",
    "JobStatus",
    "ReferralEdge",
    "ReferralCommission",
    "Transaction",
    "TransactionStatus",
]
