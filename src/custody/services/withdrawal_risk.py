"""Withdrawal risk review.

Each request is scored on three factors before any funds move:

- amount: size against the single and daily limits and the user's history
- frequency: withdrawals by the same user in the last 24 hours and last hour
- address: blocklisted, allowlisted or never paid before

The weighted score (0-100) decides whether a withdrawal is broadcast
straight away or held in ``requires_approval`` for an operator.
Blocklisted destinations and users over the daily count cap are refused
outright.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from custody.errors import LimitExceededError, ValidationError
from custody.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

WEIGHTS = {"amount": Decimal("0.35"), "frequency": Decimal("0.30"), "address": Decimal("0.35")}
BURST_SIZE = 3


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RiskFactor:
    name: str
    score: int
    level: RiskLevel
    reasons: list[str] = field(default_factory=list)


@dataclass
class RiskAssessment:
    """Weighted outcome of every factor."""

    score: int
    level: RiskLevel
    requires_approval: bool
    factors: list[RiskFactor]

    def as_details(self) -> dict:
        """Audit log form."""
        return {
            "risk_score": self.score,
            "risk_level": self.level.value,
            "factors": {f.name: {"score": f.score, "reasons": f.reasons} for f in self.factors},
        }


def normalise_address(address: str) -> str:
    # EVM addresses are case-insensitive, XRP classic addresses are not
    address = address.strip()
    return address.lower() if address.startswith("0x") else address


def _level(score: int) -> RiskLevel:
    if score > 60:
        return RiskLevel.HIGH
    if score > 30:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _factor(name: str, score: int, reasons: list[str]) -> RiskFactor:
    score = max(0, min(score, 100))
    return RiskFactor(name, score, _level(score), reasons)


@dataclass
class RiskPolicy:
    """Thresholds for the risk review."""

    blocklist: frozenset[str] = frozenset()
    allowlist: frozenset[str] = frozenset()
    review_score: int = 60
    max_withdrawals_per_day: int = 50

    @classmethod
    def build(
        cls,
        blocklist: Iterable[str] = (),
        allowlist: Iterable[str] = (),
        review_score: int = 60,
        max_withdrawals_per_day: int = 50,
    ) -> "RiskPolicy":
        return cls(
            blocklist=frozenset(normalise_address(a) for a in blocklist),
            allowlist=frozenset(normalise_address(a) for a in allowlist),
            review_score=review_score,
            max_withdrawals_per_day=max_withdrawals_per_day,
        )

    @classmethod
    def from_settings(cls, settings) -> "RiskPolicy":
        return cls.build(
            blocklist=settings.blocklisted_addresses,
            allowlist=settings.allowlisted_addresses,
            review_score=settings.risk_review_score,
            max_withdrawals_per_day=settings.max_withdrawals_per_day,
        )


class WithdrawalRiskAssessor:
    """Scores withdrawal requests against a RiskPolicy."""

    def __init__(self, policy: Optional[RiskPolicy] = None):
        self.policy = policy or RiskPolicy()

    def check_destination(self, destination_address: str) -> None:
        """Raises ValidationError for a blocklisted destination."""
        if normalise_address(destination_address) in self.policy.blocklist:
            raise ValidationError(f"Destination {destination_address} is blocklisted")

    async def assess(
        self,
        repo: LedgerRepository,
        *,
        user_id: str,
        chain: str,
        asset: str,
        destination_address: str,
        amount: Decimal,
        daily_total: Decimal,
        max_single_amount: Decimal,
        max_daily_amount: Decimal,
    ) -> RiskAssessment:
        """Score one request.

        Raises:
            ValidationError: blocklisted destination
            LimitExceededError: user is over the daily withdrawal count
        """
        self.check_destination(destination_address)

        now = datetime.now(timezone.utc)
        recent = await repo.count_withdrawals_since(user_id, now - timedelta(hours=24))
        last_hour = await repo.count_withdrawals_since(user_id, now - timedelta(hours=1))
        if recent >= self.policy.max_withdrawals_per_day:
            raise LimitExceededError(
                f"User {user_id} reached {self.policy.max_withdrawals_per_day} withdrawals in 24h"
            )

        factors = [
            await self._amount_factor(
                repo, user_id, asset, amount, daily_total, max_single_amount, max_daily_amount
            ),
            self._frequency_factor(recent, last_hour),
            await self._address_factor(repo, user_id, chain, destination_address),
        ]

        weighted = sum(WEIGHTS[f.name] * f.score for f in factors)
        score = int(weighted.to_integral_value())
        level = _level(score)
        high = [f for f in factors if f.level == RiskLevel.HIGH]
        requires_approval = score >= self.policy.review_score or len(high) >= 2

        if requires_approval:
            logger.warning(
                f"Withdrawal for {user_id} needs approval: score {score}, "
                f"high factors {[f.name for f in high]}"
            )
        return RiskAssessment(score, level, requires_approval, factors)

    async def _amount_factor(
        self,
        repo: LedgerRepository,
        user_id: str,
        asset: str,
        amount: Decimal,
        daily_total: Decimal,
        max_single_amount: Decimal,
        max_daily_amount: Decimal,
    ) -> RiskFactor:
        score, reasons = 0, []

        single_ratio = amount / max_single_amount if max_single_amount else Decimal("0")
        if single_ratio > Decimal("0.8"):
            score += 40
            reasons.append("close to the single withdrawal limit")
        elif single_ratio > Decimal("0.5"):
            score += 20
            reasons.append("over half the single withdrawal limit")

        if max_daily_amount and (daily_total + amount) / max_daily_amount > Decimal("0.8"):
            score += 30
            reasons.append("close to the daily limit")

        average = await repo.get_average_withdrawal(user_id, asset)
        if average:
            if amount > average * 10:
                score += 40
                reasons.append("more than 10x the usual amount")
            elif amount > average * 5:
                score += 20
                reasons.append("more than 5x the usual amount")

        return _factor("amount", score, reasons)

    @staticmethod
    def _frequency_factor(recent: int, last_hour: int) -> RiskFactor:
        score, reasons = 0, []
        if recent > 10:
            score += 60
            reasons.append(f"{recent} withdrawals in 24h")
        elif recent > 5:
            score += 30
            reasons.append(f"{recent} withdrawals in 24h")
        if last_hour >= BURST_SIZE:
            score += 40
            reasons.append(f"{last_hour} withdrawals in the last hour")
        return _factor("frequency", score, reasons)

    async def _address_factor(
        self, repo: LedgerRepository, user_id: str, chain: str, destination_address: str
    ) -> RiskFactor:
        score, reasons = 0, []
        if normalise_address(destination_address) in self.policy.allowlist:
            score -= 20
            reasons.append("allowlisted destination")
        if not await repo.has_sent_to(user_id, chain, destination_address):
            score += 30
            reasons.append("first withdrawal to this destination")
        return _factor("address", score, reasons)
