"""Tests for the withdrawal risk review."""

from decimal import Decimal
from typing import Optional

import pytest

from custody.errors import LimitExceededError, ValidationError
from custody.ledger.models import WithdrawalStatus
from custody.services.withdrawal_risk import RiskLevel, RiskPolicy, WithdrawalRiskAssessor

DESTINATION = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
EVM_DESTINATION = "0x3333333333333333333333333333333333333333"


async def add_withdrawal(
    repo, n: int, amount: str = "1", status: Optional[WithdrawalStatus] = None, destination: str = DESTINATION
):
    await repo.credit_balance("user-1", "XRP", Decimal(amount))
    withdrawal = await repo.request_withdrawal(
        withdrawal_id=f"wd-{n}",
        user_id="user-1",
        chain="xrp",
        network="mainnet",
        asset="XRP",
        destination_address=destination,
        amount=Decimal(amount),
    )
    if status is not None:
        await repo.update_withdrawal(withdrawal, status=status)
    return withdrawal


async def assess(assessor, repo, amount: str = "10", daily_total: str = "0", destination: str = DESTINATION):
    return await assessor.assess(
        repo,
        user_id="user-1",
        chain="xrp",
        asset="XRP",
        destination_address=destination,
        amount=Decimal(amount),
        daily_total=Decimal(daily_total),
        max_single_amount=Decimal("100"),
        max_daily_amount=Decimal("150"),
    )


def factor(assessment, name: str):
    return next(f for f in assessment.factors if f.name == name)


class TestWithdrawalRiskAssessor:
    """Tests for WithdrawalRiskAssessor.assess."""

    @pytest.mark.asyncio
    async def test_small_first_request(self, ledger_repo):
        result = await assess(WithdrawalRiskAssessor(), ledger_repo)

        assert result.level == RiskLevel.LOW
        assert not result.requires_approval
        assert factor(result, "amount").score == 0
        assert factor(result, "address").score == 30
        assert result.score == 10

    @pytest.mark.asyncio
    async def test_score_over_threshold(self, ledger_repo):
        assessor = WithdrawalRiskAssessor(RiskPolicy.build(review_score=20))

        result = await assess(assessor, ledger_repo, amount="90")

        assert factor(result, "amount").score == 40
        assert result.score >= 20
        assert result.requires_approval

    @pytest.mark.asyncio
    async def test_two_high_factors(self, ledger_repo):
        for n in range(11):
            await add_withdrawal(ledger_repo, n)
        assessor = WithdrawalRiskAssessor(RiskPolicy.build(review_score=100))

        result = await assess(assessor, ledger_repo, amount="90", daily_total="40")

        assert factor(result, "amount").level == RiskLevel.HIGH
        assert factor(result, "frequency").level == RiskLevel.HIGH
        assert result.score < 100
        assert result.requires_approval

    @pytest.mark.asyncio
    async def test_usual_destination_and_amount_history(self, ledger_repo):
        await add_withdrawal(ledger_repo, 1, "1", WithdrawalStatus.CONFIRMED)

        result = await assess(WithdrawalRiskAssessor(), ledger_repo, amount="20")

        assert factor(result, "address").score == 0
        assert "more than 10x the usual amount" in factor(result, "amount").reasons

    @pytest.mark.asyncio
    async def test_allowlist_offsets_new_destination(self, ledger_repo):
        assessor = WithdrawalRiskAssessor(RiskPolicy.build(allowlist=[DESTINATION]))

        result = await assess(assessor, ledger_repo)

        assert factor(result, "address").score == 10

    @pytest.mark.asyncio
    async def test_blocklist_ignores_evm_case(self, ledger_repo):
        assessor = WithdrawalRiskAssessor(RiskPolicy.build(blocklist=[EVM_DESTINATION.upper().replace("0X", "0x")]))

        with pytest.raises(ValidationError):
            await assess(assessor, ledger_repo, destination=EVM_DESTINATION)

    @pytest.mark.asyncio
    async def test_daily_count_cap(self, ledger_repo):
        await add_withdrawal(ledger_repo, 1)
        await add_withdrawal(ledger_repo, 2)
        await add_withdrawal(ledger_repo, 3, status=WithdrawalStatus.REJECTED)
        assessor = WithdrawalRiskAssessor(RiskPolicy.build(max_withdrawals_per_day=2))

        with pytest.raises(LimitExceededError):
            await assess(assessor, ledger_repo)

    def test_policy_from_settings(self, settings):
        settings.withdrawal_blocklist = f" {EVM_DESTINATION.upper().replace('0X', '0x')} , {DESTINATION}"
        settings.risk_review_score = 45

        policy = RiskPolicy.from_settings(settings)

        assert policy.blocklist == {EVM_DESTINATION, DESTINATION}
        assert policy.review_score == 45
