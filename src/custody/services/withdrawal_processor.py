"""Withdrawal processing from hot wallets.

Withdrawal flow:
1. Request is validated (address, tag, amount, limits) with no chain calls
2. The risk review scores it; blocklisted destinations are refused
3. The user's available balance is locked and the withdrawal recorded, held in
   requires_approval when the risk score calls for an operator
4. A hot wallet with enough balance above its reserve is selected
5. Under the wallet's nonce lock: read sequence and fee, build, sign, store
   the signed blob, broadcast
6. A network failure resends the stored blob (after checking the chain for
   it); only a definite chain rejection discards it and rebuilds. Exhausted
   retries leave the withdrawal in pending_retry for reconciliation
7. Confirmation polling settles or releases the locked balance
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.chains import ChainSpec, get_chain_spec
from custody.errors import (
    BroadcastError,
    ChainRejectionError,
    CustodyError,
    InsufficientFundsError,
    LimitExceededError,
    NetworkError,
    ValidationError,
)
from custody.gateway.base import ChainClient
from custody.gateway.factory import ClientRegistry
from custody.keystore.store import KeyCustodyStore, SignedTransaction
from custody.ledger.database import session_scope
from custody.ledger.models import AuditAction, HotWallet, Withdrawal, WithdrawalStatus
from custody.ledger.repository import LedgerRepository
from custody.services.audit import AuditLogger
from custody.services.withdrawal_risk import WithdrawalRiskAssessor
from custody.units import format_amount, to_display, to_minimal
from custody.utils.locks import KeyedLocks, LockTimeoutError

logger = logging.getLogger(__name__)

MAX_DESTINATION_TAG = 2**32 - 1

# Replies to a resent blob meaning the chain already holds it or its sequence
_ALREADY_APPLIED = (
    "already known",
    "known transaction",
    "alreadyknown",
    "nonce too low",
    "tefpast_seq",
    "tefalready",
)


@dataclass
class WithdrawalRequest:
    """Request to withdraw funds to an external address."""

    withdrawal_id: str
    user_id: str
    chain: str
    network: str
    destination_address: str
    amount: Decimal
    asset: Optional[str] = None
    destination_tag: Any = None   # int or digit string, XRP only
    memo: Optional[str] = None
    max_fee: Optional[Decimal] = None
    priority: str = "medium"


@dataclass
class WithdrawalOutcome:
    """Result of a withdrawal operation."""

    withdrawal_id: str
    status: WithdrawalStatus
    tx_hash: Optional[str] = None
    fee: Optional[Decimal] = None
    error: Optional[str] = None


@dataclass
class WithdrawalLimits:
    """Limits and timing for withdrawal processing, in display units."""

    max_single_amount: Decimal = Decimal("10000")
    max_daily_amount: Decimal = Decimal("50000")
    min_reserve: Decimal = Decimal("10")
    max_fee: Decimal = Decimal("1")
    default_fee: Decimal = Decimal("0.000012")
    hot_wallet_min_balance: Decimal = Decimal("1000")
    retry_attempts: int = 3
    retry_delay_ms: int = 5000

    @classmethod
    def from_settings(cls, settings) -> "WithdrawalLimits":
        return cls(
            max_single_amount=settings.max_single_amount,
            max_daily_amount=settings.max_daily_amount,
            min_reserve=settings.min_reserve,
            max_fee=settings.max_fee,
            default_fee=settings.default_fee,
            hot_wallet_min_balance=settings.hot_wallet_min_balance,
            retry_attempts=settings.retry_attempts,
            retry_delay_ms=settings.retry_delay_ms,
        )

    def reserve_for(self, spec: ChainSpec) -> int:
        """Minimal units that must remain on a hot wallet after a withdrawal."""
        if spec.is_evm:
            return spec.base_reserve
        return max(spec.base_reserve, to_minimal(self.min_reserve, spec.decimals))


def parse_destination_tag(value: Any) -> Optional[int]:
    """Normalise a destination tag to an int in [0, 2^32 - 1].

    None means no tag; 0 is a valid tag.

    Raises:
        ValidationError: non-integer, negative or too large
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("Destination tag must be an integer")
    if isinstance(value, int):
        tag = value
    elif isinstance(value, str) and value.strip().isdigit():
        tag = int(value.strip())
    else:
        raise ValidationError("Destination tag must be an integer")

    if tag < 0 or tag > MAX_DESTINATION_TAG:
        raise ValidationError(f"Destination tag must be between 0 and {MAX_DESTINATION_TAG}")
    return tag


def start_of_day(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class HotWalletRegistry:
    """Active hot wallets per chain, with one nonce lock per wallet."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clients: ClientRegistry):
        self.session_factory = session_factory
        self.clients = clients
        self.locks = KeyedLocks("hot_wallet", timeout=120.0)

    async def wallets(self, chain: str, network: str, asset: Optional[str] = None) -> list[HotWallet]:
        async with session_scope(self.session_factory) as session:
            return await LedgerRepository(session).list_active_hot_wallets(chain, network, asset)

    async def select(self, chain: str, network: str, asset: str, required: int) -> tuple[HotWallet, int]:
        """First active wallet whose balance covers ``required`` minimal units.

        Raises:
            InsufficientFundsError: no wallet holds enough
        """
        client = self.clients.get(chain, network)
        wallets = await self.wallets(chain, network, asset)
        if not wallets:
            raise InsufficientFundsError(f"No active hot wallet for {chain}:{network} {asset}")

        for wallet in wallets:
            try:
                balance = await client.get_balance(wallet.address)
            except NetworkError as e:
                logger.warning(f"Skipping hot wallet {wallet.id}: {e}")
                continue
            if balance >= required:
                return wallet, balance

        raise InsufficientFundsError(f"No hot wallet with sufficient balance for {chain}:{network} {asset}")

    async def balances(self, chain: str, network: str) -> list[dict[str, Any]]:
        """Balance of every active wallet; per-wallet errors are reported inline."""
        spec = get_chain_spec(chain, network)
        client = self.clients.get(spec.chain, spec.network)
        results = []
        for wallet in await self.wallets(spec.chain, spec.network):
            entry: dict[str, Any] = {
                "wallet_id": wallet.id,
                "address": wallet.address,
                "asset": wallet.asset,
                "max_balance": wallet.max_balance,
                "sequence": wallet.sequence,
            }
            try:
                entry["balance"] = to_display(await client.get_balance(wallet.address), spec.decimals)
            except CustodyError as e:
                entry["balance"] = None
                entry["error"] = e.message
            results.append(entry)
        return results


class WithdrawalProcessor:
    """Validates, signs and broadcasts withdrawals, and tracks their confirmation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clients: ClientRegistry,
        keystore: KeyCustodyStore,
        limits: Optional[WithdrawalLimits] = None,
        hot_wallets: Optional[HotWalletRegistry] = None,
        audit: Optional[AuditLogger] = None,
        risk: Optional[WithdrawalRiskAssessor] = None,
    ):
        self.session_factory = session_factory
        self.clients = clients
        self.keystore = keystore
        self.limits = limits or WithdrawalLimits()
        self.hot_wallets = hot_wallets or HotWalletRegistry(session_factory, clients)
        self.audit = audit or AuditLogger(session_factory)
        self.risk = risk or WithdrawalRiskAssessor()

    # Validation

    def _validate(self, request: WithdrawalRequest, spec: ChainSpec, client: ChainClient) -> Optional[int]:
        """Checks that need no chain calls. Returns the parsed destination tag."""
        if not client.validate_address(request.destination_address):
            raise ValidationError(f"Invalid {spec.chain} address: {request.destination_address}")

        tag = parse_destination_tag(request.destination_tag)
        if tag is not None and spec.is_evm:
            raise ValidationError("Destination tags are only supported on XRP")

        try:
            amount = Decimal(request.amount)
        except ArithmeticError:
            raise ValidationError(f"Invalid withdrawal amount: {request.amount}")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")
        if to_minimal(amount, spec.decimals) < 1:
            raise ValidationError(f"Withdrawal amount is below the minimum unit of {spec.native_asset}")
        if amount > self.limits.max_single_amount:
            raise LimitExceededError(
                f"Amount {amount} exceeds single withdrawal limit {self.limits.max_single_amount}"
            )
        if request.max_fee is not None and request.max_fee > self.limits.max_fee:
            raise LimitExceededError(f"Requested max fee {request.max_fee} exceeds limit {self.limits.max_fee}")
        return tag

    async def _check_daily_limit(
        self, repo: LedgerRepository, request: WithdrawalRequest, spec: ChainSpec
    ) -> Decimal:
        """Returns today's total before this request."""
        total = await repo.get_daily_withdrawal_total(
            request.user_id, spec.chain, spec.network, start_of_day()
        )
        if total + Decimal(request.amount) > self.limits.max_daily_amount:
            raise LimitExceededError(
                f"Daily withdrawal limit {self.limits.max_daily_amount} exceeded "
                f"(already {total} today)"
            )
        return total

    # Processing

    async def process_withdrawal(self, request: WithdrawalRequest) -> WithdrawalOutcome:
        """Validate, review, lock funds, and broadcast a withdrawal.

        A request the risk review flags is recorded as requires_approval with
        its balance locked and is not broadcast until ``approve_withdrawal``.

        Raises:
            ValidationError: bad address, tag, amount, limit or blocklisted
                destination (nothing sent)
            InsufficientFundsError: user or hot wallet balance too low
            BroadcastError: not broadcast after the retry budget
        """
        spec = get_chain_spec(request.chain, request.network)
        asset = (request.asset or spec.native_asset).upper()
        if asset != spec.native_asset:
            raise ValidationError(f"Only native {spec.native_asset} withdrawals are supported on {spec.network}")

        async with session_scope(self.session_factory) as session:
            existing = await LedgerRepository(session).get_withdrawal(request.withdrawal_id)
        if existing is not None:
            logger.info(f"Withdrawal {request.withdrawal_id} already exists ({existing.status})")
            return self._outcome(existing)

        client = self.clients.get(spec.chain, spec.network)
        max_fee = request.max_fee if request.max_fee is not None else self.limits.max_fee
        try:
            tag = self._validate(request, spec, client)
            amount = Decimal(request.amount)
            async with session_scope(self.session_factory) as session:
                repo = LedgerRepository(session)
                daily_total = await self._check_daily_limit(repo, request, spec)
                assessment = await self.risk.assess(
                    repo,
                    user_id=request.user_id,
                    chain=spec.chain,
                    asset=asset,
                    destination_address=request.destination_address,
                    amount=amount,
                    daily_total=daily_total,
                    max_single_amount=self.limits.max_single_amount,
                    max_daily_amount=self.limits.max_daily_amount,
                )
                withdrawal = await repo.request_withdrawal(
                    withdrawal_id=request.withdrawal_id,
                    user_id=request.user_id,
                    chain=spec.chain,
                    network=spec.network,
                    asset=asset,
                    destination_address=request.destination_address,
                    amount=amount,
                    destination_tag=tag,
                    memo=request.memo,
                    priority=request.priority,
                    max_fee=max_fee,
                    status=(
                        WithdrawalStatus.REQUIRES_APPROVAL
                        if assessment.requires_approval
                        else WithdrawalStatus.QUEUED
                    ),
                    risk_score=assessment.score,
                )
                await self.audit.record(
                    repo,
                    AuditAction.WITHDRAWAL_REQUEST,
                    f"withdrawal:{withdrawal.id}",
                    {
                        "amount": format_amount(withdrawal.amount),
                        "asset": asset,
                        "destination": request.destination_address,
                        "destination_tag": tag,
                        **assessment.as_details(),
                    },
                    user_id=request.user_id,
                    risk_level=assessment.level.value,
                )
        except (ValidationError, InsufficientFundsError) as e:
            logger.warning(f"Withdrawal {request.withdrawal_id} rejected: {e}")
            await self._reject(request, spec, asset, e.message)
            raise

        if assessment.requires_approval:
            logger.warning(
                f"Withdrawal {withdrawal.id} held for approval (risk score {assessment.score})"
            )
            return self._outcome(withdrawal)
        return await self._execute(withdrawal.id, max_fee)

    async def approve_withdrawal(
        self, withdrawal_id: str, approved_by: str, comment: Optional[str] = None
    ) -> WithdrawalOutcome:
        """Release a held withdrawal to the broadcast cycle.

        Raises:
            ValidationError: unknown id or not awaiting approval
            BroadcastError: not broadcast after the retry budget
        """
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            record = await self._awaiting_review(repo, withdrawal_id)
            await repo.update_withdrawal(
                record,
                status=WithdrawalStatus.QUEUED,
                reviewed_by=approved_by,
                reviewed_at=datetime.now(timezone.utc),
                review_comment=comment,
            )
            await self.audit.record(
                repo,
                AuditAction.WITHDRAWAL_APPROVE,
                f"withdrawal:{withdrawal_id}",
                {"approved_by": approved_by, "comment": comment, "risk_score": record.risk_score},
                user_id=record.user_id,
                risk_level="high",
            )

        logger.info(f"Withdrawal {withdrawal_id} approved by {approved_by}")
        max_fee = record.max_fee if record.max_fee is not None else self.limits.max_fee
        return await self._execute(withdrawal_id, max_fee)

    async def reject_withdrawal(self, withdrawal_id: str, rejected_by: str, reason: str) -> WithdrawalOutcome:
        """Refuse a held withdrawal and release the user's locked funds.

        Raises:
            ValidationError: unknown id or not awaiting approval
        """
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            record = await self._awaiting_review(repo, withdrawal_id)
            if record.balance_locked:
                await repo.unlock_balance(record.user_id, record.asset, record.amount)
            now = datetime.now(timezone.utc)
            await repo.update_withdrawal(
                record,
                status=WithdrawalStatus.REJECTED,
                balance_locked=False,
                error_message=reason,
                reviewed_by=rejected_by,
                reviewed_at=now,
                review_comment=reason,
                completed_at=now,
            )
            await self.audit.record(
                repo,
                AuditAction.WITHDRAWAL_REJECT,
                f"withdrawal:{withdrawal_id}",
                {"rejected_by": rejected_by, "reason": reason, "risk_score": record.risk_score},
                user_id=record.user_id,
                risk_level="high",
            )

        logger.info(f"Withdrawal {withdrawal_id} rejected by {rejected_by}: {reason}")
        return self._outcome(record)

    @staticmethod
    async def _awaiting_review(repo: LedgerRepository, withdrawal_id: str) -> Withdrawal:
        record = await repo.get_withdrawal(withdrawal_id)
        if record is None:
            raise ValidationError(f"Withdrawal {withdrawal_id} not found")
        if record.status != WithdrawalStatus.REQUIRES_APPROVAL:
            raise ValidationError(f"Withdrawal {withdrawal_id} is {record.status}, not awaiting approval")
        return record

    async def _reject(self, request: WithdrawalRequest, spec: ChainSpec, asset: str, reason: str) -> None:
        try:
            amount = Decimal(request.amount)
        except ArithmeticError:
            amount = Decimal("0")
        tag = request.destination_tag if isinstance(request.destination_tag, int) else None
        if tag is not None and (isinstance(tag, bool) or not 0 <= tag <= MAX_DESTINATION_TAG):
            tag = None

        async with session_scope(self.session_factory) as session:
            await LedgerRepository(session).record_rejected_withdrawal(
                withdrawal_id=request.withdrawal_id,
                user_id=request.user_id,
                chain=spec.chain,
                network=spec.network,
                asset=asset,
                destination_address=request.destination_address,
                amount=amount,
                reason=reason,
                destination_tag=tag,
            )

    async def _execute(self, withdrawal_id: str, max_fee: Decimal) -> WithdrawalOutcome:
        """Run the build/sign/broadcast cycle with retries.

        A withdrawal that already holds a signed blob stays on the wallet
        that signed it.
        """
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            if withdrawal is None:
                raise ValidationError(f"Withdrawal {withdrawal_id} not found")
            signer = None
            if withdrawal.signed_tx and withdrawal.hot_wallet_id is not None:
                signer = await repo.get_hot_wallet(withdrawal.hot_wallet_id)

        spec = get_chain_spec(withdrawal.chain, withdrawal.network)
        client = self.clients.get(spec.chain, spec.network)
        amount = to_minimal(withdrawal.amount, spec.decimals)
        reserve = self.limits.reserve_for(spec)
        fee_estimate = to_minimal(self.limits.default_fee, spec.decimals)

        if signer is not None:
            wallet = signer
        else:
            try:
                wallet, _ = await self.hot_wallets.select(
                    spec.chain, spec.network, withdrawal.asset, amount + fee_estimate + reserve
                )
            except CustodyError as e:
                await self._fail(withdrawal_id, e.message)
                raise

        last_error: Optional[CustodyError] = None
        attempts = self.limits.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                async with self.hot_wallets.locks.hold(wallet.id, operation=f"withdrawal {withdrawal_id}"):
                    tx_hash, fee, sequence = await self._submit(
                        withdrawal_id, wallet, client, spec, amount, reserve, max_fee
                    )
                break
            except (BroadcastError, NetworkError, LockTimeoutError) as e:
                last_error = e
                logger.warning(f"Withdrawal {withdrawal_id} attempt {attempt}/{attempts} failed: {e}")
                await self._set_attempts(withdrawal_id, e.message)
                if attempt < attempts:
                    await asyncio.sleep(self.limits.retry_delay_ms / 1000)
            except CustodyError as e:
                await self._fail(withdrawal_id, e.message)
                raise
        else:
            reason = f"Not broadcast after {attempts} attempts: {last_error}"
            await self._set_status(withdrawal_id, WithdrawalStatus.PENDING_RETRY, error_message=reason)
            logger.error(f"Withdrawal {withdrawal_id} left pending_retry: {reason}")
            raise BroadcastError(f"Withdrawal {withdrawal_id} failed: {reason}", chain=spec.chain)

        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            record = await repo.get_withdrawal(withdrawal_id)
            await repo.update_withdrawal(
                record,
                status=WithdrawalStatus.PENDING,
                tx_hash=tx_hash,
                fee_amount=fee,
                hot_wallet_id=wallet.id,
                error_message=None,
            )
            await self.audit.record(
                repo,
                AuditAction.WITHDRAWAL_REQUEST,
                f"withdrawal:{withdrawal_id}",
                {"tx_hash": tx_hash, "sequence": sequence, "fee": format_amount(fee), "stage": "broadcast"},
                user_id=record.user_id,
                risk_level="medium",
            )

        logger.info(f"Withdrawal {withdrawal_id} broadcast from hot wallet {wallet.id}: {tx_hash}")
        return WithdrawalOutcome(withdrawal_id, WithdrawalStatus.PENDING, tx_hash=tx_hash, fee=fee)

    async def _submit(
        self,
        withdrawal_id: str,
        wallet: HotWallet,
        client: ChainClient,
        spec: ChainSpec,
        amount: int,
        reserve: int,
        max_fee: Decimal,
    ) -> tuple[str, Decimal, int]:
        """Broadcast once, resending the stored blob if there is one. Must run
        under the wallet lock.

        Returns:
            (tx_hash, fee in display units, sequence used)
        """
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            stored = await repo.get_hot_wallet(wallet.id)
            stored_sequence = stored.sequence if stored else 0

        if withdrawal.signed_tx:
            tx_hash = await self._resend(withdrawal, client)
            fee, sequence = withdrawal.fee_amount, withdrawal.sequence
        else:
            tx_hash, fee, sequence = await self._sign_and_broadcast(
                withdrawal, wallet, client, spec, amount, reserve, max_fee, stored_sequence
            )

        async with session_scope(self.session_factory) as session:
            await LedgerRepository(session).set_hot_wallet_sequence(
                wallet.id, max(stored_sequence, sequence + 1)
            )
        return tx_hash, fee, sequence

    async def _sign_and_broadcast(
        self,
        withdrawal: Withdrawal,
        wallet: HotWallet,
        client: ChainClient,
        spec: ChainSpec,
        amount: int,
        reserve: int,
        max_fee: Decimal,
        stored_sequence: int,
    ) -> tuple[str, Decimal, int]:
        meta = await client.get_transaction_meta(wallet.address)
        sequence = max(meta.nonce, stored_sequence)

        fee = spec.gas_limit * meta.fee_rate if spec.is_evm else meta.fee_rate
        if fee > to_minimal(max_fee, spec.decimals):
            raise LimitExceededError(
                f"Network fee {to_display(fee, spec.decimals)} exceeds max fee {max_fee}"
            )

        balance = await client.get_balance(wallet.address)
        if balance < amount + fee + reserve:
            raise InsufficientFundsError(f"Hot wallet {wallet.id} cannot cover amount, fee and reserve")

        signed = self._sign(withdrawal, wallet, spec, amount, fee, meta.fee_rate, sequence)
        fee_display = to_display(fee, spec.decimals)
        # Persisted before it leaves the process so a lost reply resends this blob
        await self._set_status(
            withdrawal.id,
            WithdrawalStatus.QUEUED,
            tx_hash=signed.tx_hash,
            signed_tx=signed.raw,
            hot_wallet_id=wallet.id,
            sequence=sequence,
            fee_amount=fee_display,
        )

        try:
            tx_hash = await client.broadcast(signed.raw)
        except ChainRejectionError:
            await self._update(withdrawal.id, signed_tx=None)
            raise
        return tx_hash, fee_display, sequence

    async def _resend(self, withdrawal: Withdrawal, client: ChainClient) -> str:
        """Put a stored blob back on the wire, unless the chain already has it.

        A rejection saying the chain already holds the blob (or its sequence)
        counts as accepted. Any other rejection discards the blob so the next
        attempt rebuilds it.
        """
        located = await client.get_confirmations(withdrawal.tx_hash)
        if located is not None:
            logger.info(f"Withdrawal {withdrawal.id} already on chain as {withdrawal.tx_hash}")
            return withdrawal.tx_hash

        try:
            tx_hash = await client.broadcast(withdrawal.signed_tx)
        except ChainRejectionError as e:
            if any(marker in e.message.lower() for marker in _ALREADY_APPLIED):
                logger.info(f"Withdrawal {withdrawal.id} blob already accepted: {e}")
                return withdrawal.tx_hash
            await self._update(withdrawal.id, signed_tx=None)
            raise
        logger.info(f"Withdrawal {withdrawal.id} resent unchanged: {tx_hash}")
        return tx_hash

    def _sign(
        self,
        withdrawal: Withdrawal,
        wallet: HotWallet,
        spec: ChainSpec,
        amount: int,
        fee: int,
        fee_rate: int,
        sequence: int,
    ) -> SignedTransaction:
        if spec.is_evm:
            unsigned = {
                "to": withdrawal.destination_address,
                "value": hex(amount),
                "gas": hex(spec.gas_limit),
                "gasPrice": hex(fee_rate),
                "nonce": hex(sequence),
                "chainId": spec.chain_id,
            }
            return self.keystore.sign_evm(
                unsigned, encrypted_secret=wallet.encrypted_secret, expected_address=wallet.address
            )

        return self.keystore.sign_xrp_payment(
            wallet.encrypted_secret,
            destination=withdrawal.destination_address,
            amount_drops=amount,
            fee_drops=fee,
            sequence=sequence,
            destination_tag=withdrawal.destination_tag,
            memo=withdrawal.memo,
            expected_address=wallet.address,
        )

    # State helpers

    async def _update(self, withdrawal_id: str, **fields) -> None:
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            await repo.update_withdrawal(withdrawal, **fields)

    async def _set_status(self, withdrawal_id: str, status: WithdrawalStatus, **fields) -> None:
        await self._update(withdrawal_id, status=status, **fields)

    async def _set_attempts(self, withdrawal_id: str, reason: str) -> None:
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            await repo.update_withdrawal(withdrawal, attempts=withdrawal.attempts + 1, error_message=reason)

    async def _fail(self, withdrawal_id: str, reason: str) -> None:
        """Mark failed and release the user's locked funds."""
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            withdrawal = await repo.get_withdrawal(withdrawal_id)
            if withdrawal is None:
                return
            if withdrawal.balance_locked:
                await repo.unlock_balance(withdrawal.user_id, withdrawal.asset, withdrawal.amount)
            await repo.update_withdrawal(
                withdrawal,
                status=WithdrawalStatus.FAILED,
                balance_locked=False,
                error_message=reason,
                completed_at=datetime.now(timezone.utc),
            )
            await self.audit.record(
                repo,
                AuditAction.WITHDRAWAL_FAILED,
                f"withdrawal:{withdrawal_id}",
                {"reason": reason},
                user_id=withdrawal.user_id,
                risk_level="medium",
            )
        logger.error(f"Withdrawal {withdrawal_id} failed: {reason}")

    @staticmethod
    def _outcome(withdrawal: Withdrawal) -> WithdrawalOutcome:
        return WithdrawalOutcome(
            withdrawal.id,
            WithdrawalStatus(withdrawal.status),
            tx_hash=withdrawal.tx_hash,
            fee=withdrawal.fee_amount,
            error=withdrawal.error_message,
        )

    # Confirmation and reconciliation

    async def process_withdrawal_confirmations(
        self, chain: Optional[str] = None, network: Optional[str] = None
    ) -> dict[str, int]:
        """Settle pending withdrawals that the chain has validated."""
        stats = {"checked": 0, "confirmed": 0, "failed": 0}

        async with session_scope(self.session_factory) as session:
            pending = await LedgerRepository(session).list_withdrawals(
                WithdrawalStatus.PENDING, chain=chain, network=network
            )

        for withdrawal in pending:
            stats["checked"] += 1
            if not withdrawal.tx_hash:
                continue
            client = self.clients.get(withdrawal.chain, withdrawal.network)
            try:
                status = await client.get_transaction_status(withdrawal.tx_hash)
            except CustodyError as e:
                logger.warning(f"Could not check withdrawal {withdrawal.id}: {e}")
                continue

            if not status.validated:
                continue

            async with session_scope(self.session_factory) as session:
                repo = LedgerRepository(session)
                record = await repo.get_withdrawal(withdrawal.id)
                if record is None or record.status != WithdrawalStatus.PENDING:
                    continue

                if status.success:
                    if record.balance_locked:
                        await repo.settle_locked_balance(record.user_id, record.asset, record.amount)
                    await repo.update_withdrawal(
                        record,
                        status=WithdrawalStatus.CONFIRMED,
                        balance_locked=False,
                        completed_at=datetime.now(timezone.utc),
                    )
                    action = AuditAction.WITHDRAWAL_CONFIRM
                    stats["confirmed"] += 1
                else:
                    if record.balance_locked:
                        await repo.unlock_balance(record.user_id, record.asset, record.amount)
                    await repo.update_withdrawal(
                        record,
                        status=WithdrawalStatus.FAILED,
                        balance_locked=False,
                        error_message=f"Transaction failed on chain: {status.result}",
                        completed_at=datetime.now(timezone.utc),
                    )
                    action = AuditAction.WITHDRAWAL_FAILED
                    stats["failed"] += 1

                await self.audit.record(
                    repo,
                    action,
                    f"withdrawal:{record.id}",
                    {"tx_hash": record.tx_hash, "result": status.result},
                    user_id=record.user_id,
                )
            logger.info(f"Withdrawal {withdrawal.id} {action.value}: {status.result}")

        return stats

    async def retry_pending(self, chain: Optional[str] = None, network: Optional[str] = None) -> dict[str, int]:
        """Reconcile withdrawals left in pending_retry.

        A withdrawal whose transaction is found on chain moves to pending. One
        still holding its signed blob has that same blob resent; only one whose
        blob the chain rejected is rebuilt. Each runs under the max fee stored
        with its request.
        """
        stats = {"checked": 0, "recovered": 0, "rebroadcast": 0, "failed": 0}

        async with session_scope(self.session_factory) as session:
            stuck = await LedgerRepository(session).list_withdrawals(
                WithdrawalStatus.PENDING_RETRY, chain=chain, network=network
            )

        for withdrawal in stuck:
            stats["checked"] += 1
            client = self.clients.get(withdrawal.chain, withdrawal.network)

            if withdrawal.tx_hash:
                try:
                    located = await client.get_confirmations(withdrawal.tx_hash)
                except CustodyError as e:
                    logger.warning(f"Could not reconcile withdrawal {withdrawal.id}: {e}")
                    continue
                if located is not None:
                    await self._set_status(withdrawal.id, WithdrawalStatus.PENDING, error_message=None)
                    stats["recovered"] += 1
                    logger.info(f"Withdrawal {withdrawal.id} found on chain, now pending")
                    continue

            await self._set_status(withdrawal.id, WithdrawalStatus.QUEUED)
            max_fee = withdrawal.max_fee if withdrawal.max_fee is not None else self.limits.max_fee
            try:
                await self._execute(withdrawal.id, max_fee)
                stats["rebroadcast"] += 1
            except CustodyError as e:
                stats["failed"] += 1
                logger.error(f"Retry of withdrawal {withdrawal.id} failed: {e}")

        return stats

    async def get_statistics(
        self, chain: Optional[str] = None, network: Optional[str] = None
    ) -> dict[str, Any]:
        """Pending withdrawal totals and hot wallet balances.

        With both chain and network, statistics for that pair. Otherwise the
        enabled pairs matching whichever filter is given, keyed by
        ``chain:network``, with the pending count summed across them.
        Returns zero-valued statistics for any pair whose lookup fails.
        """
        if chain is not None and network is not None:
            return await self._pair_statistics(chain, network)

        pairs = [
            (c, n)
            for c, n in self.clients.settings.chain_pairs
            if (chain is None or c == chain) and (network is None or n == network)
        ]
        chains = {f"{c}:{n}": await self._pair_statistics(c, n) for c, n in pairs}
        return {
            "pending_withdrawals": sum(s["pending_withdrawals"] for s in chains.values()),
            "awaiting_approval": sum(s["awaiting_approval"] for s in chains.values()),
            "chains": chains,
        }

    async def _pair_statistics(self, chain: str, network: str) -> dict[str, Any]:
        try:
            async with session_scope(self.session_factory) as session:
                repo = LedgerRepository(session)
                count, total = await repo.get_pending_withdrawal_stats(chain, network)
                held, _ = await repo.get_pending_withdrawal_stats(
                    chain, network, WithdrawalStatus.REQUIRES_APPROVAL
                )

            hot_wallets = []
            for entry in await self.hot_wallets.balances(chain, network):
                balance = entry.get("balance")
                max_balance = Decimal(entry["max_balance"] or 0)
                utilization = Decimal("0")
                if balance is not None and max_balance > 0:
                    utilization = (balance / max_balance * 100).quantize(Decimal("0.01"))
                hot_wallets.append(
                    {
                        "wallet_id": entry["wallet_id"],
                        "address": entry["address"],
                        "balance": format_amount(balance) if balance is not None else None,
                        "utilization": format_amount(utilization),
                        "sequence": entry["sequence"],
                        "error": entry.get("error"),
                    }
                )

            return {
                "pending_withdrawals": count,
                "pending_amount": format_amount(total),
                "awaiting_approval": held,
                "hot_wallets": hot_wallets,
            }
        except (CustodyError, SQLAlchemyError) as e:
            logger.error(f"Failed to collect withdrawal statistics for {chain}:{network}: {e}")
            return {"pending_withdrawals": 0, "pending_amount": "0", "awaiting_approval": 0, "hot_wallets": []}
