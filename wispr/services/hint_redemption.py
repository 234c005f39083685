"""
Hint Redemption Service - spend one hint, get one AI-generated clue.

Order of operations:
  1. validate input, pre-read balance and compliment (no writes)
  2. call the hint generator (slow, fallible; nothing is written on failure)
  3. one ledger transaction: re-check balance on fresh state, debit the
     daily pool (or bonus when the day is used up) and append the hint

Step 3 is retried on optimistic-concurrency conflict, so two concurrent
redemptions can never both spend the last hint.
"""

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, tzinfo

from structlog import get_logger

from wispr.db.models import utc_now
from wispr.exceptions import (
    HintGenerationFailedError,
    InsufficientBalanceError,
    ValidationError,
)
from wispr.models.api import HintSource
from wispr.models.domain import ComplimentRecord, HintContext, LedgerSnapshot, NewHint
from wispr.observability.metrics import metrics
from wispr.observability.tracing import trace_operation
from wispr.services.allowance import available_today, is_reset_due, total_available
from wispr.services.hint_generator import HintGenerator
from wispr.services.ledger_store import LedgerStore, LedgerTransaction

logger = get_logger(__name__)


def spend_one_hint(
    ledger: LedgerSnapshot, daily_quota: int, now: datetime, tz: tzinfo | None = None
) -> tuple[LedgerSnapshot, HintSource]:
    """
    Debit one hint from `ledger`, daily pool first.

    Raises:
        InsufficientBalanceError: neither pool has a hint left
    """
    if available_today(ledger, daily_quota, now, tz) > 0:
        if is_reset_due(ledger.last_daily_reset_at, now, tz):
            return replace(ledger, last_daily_reset_at=now, daily_hints_used=1), HintSource.DAILY
        return replace(ledger, daily_hints_used=ledger.daily_hints_used + 1), HintSource.DAILY

    if ledger.bonus_hints > 0:
        return replace(ledger, bonus_hints=ledger.bonus_hints - 1), HintSource.BONUS

    raise InsufficientBalanceError(ledger.account_id, daily_available=0, bonus_hints=0)


def merge_previous_hints(stored: tuple[str, ...], supplied: list[str]) -> list[str]:
    """Stored history first, then any client-supplied hints not already in it."""
    merged = list(stored)
    seen = set(stored)
    for hint in supplied:
        if hint and hint not in seen:
            merged.append(hint)
            seen.add(hint)
    return merged


class HintRedemptionService:
    """Redeems hints against an account's daily and bonus pools."""

    def __init__(
        self,
        store: LedgerStore,
        generator: HintGenerator,
        daily_quota: int,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.generator = generator
        self.daily_quota = daily_quota
        self.tz = tz
        self.clock = clock

    async def get_balance(self, account_id: str) -> tuple[LedgerSnapshot, int, int]:
        """Ledger snapshot plus (available today, total available) at the current time."""
        now = self.clock()
        ledger = await self.store.read_account(account_id)
        daily = available_today(ledger, self.daily_quota, now, self.tz)
        return ledger, daily, daily + ledger.bonus_hints

    async def _load_compliment(self, account_id: str, compliment_id: str) -> ComplimentRecord:
        compliment = await self.store.read_compliment(compliment_id)
        if compliment is None or compliment.owner_account_id != account_id:
            # Same answer for "missing" and "someone else's"
            raise ValidationError(f"compliment {compliment_id} not found")
        return compliment

    async def redeem(
        self,
        account_id: str,
        compliment_id: str,
        text: str,
        context: HintContext | None = None,
        previous_hints: list[str] | None = None,
    ) -> NewHint:
        """
        Generate and record one new hint for a compliment.

        Raises:
            ValidationError: blank text, unknown compliment or not the caller's
            InsufficientBalanceError: no daily or bonus hints left
            HintGenerationFailedError: the generator failed; ledger untouched
            TransientError: the ledger transaction kept conflicting
        """
        if not account_id:
            raise ValidationError("account id is required")
        if not text or not text.strip():
            raise ValidationError("compliment text is required")

        now = self.clock()

        with trace_operation("hint_redemption", account_id=account_id, compliment_id=compliment_id):
            compliment = await self._load_compliment(account_id, compliment_id)

            ledger = await self.store.read_account(account_id)
            if total_available(ledger, self.daily_quota, now, self.tz) <= 0:
                metrics.record_hint_redemption("insufficient")
                logger.info(
                    "hint_redemption_insufficient_balance",
                    account_id=account_id,
                    compliment_id=compliment_id,
                )
                raise InsufficientBalanceError(account_id, daily_available=0, bonus_hints=0)

            if context is None or context.is_empty:
                context = compliment.context
            history = merge_previous_hints(compliment.hints, previous_hints or [])

            try:
                hint = await self.generator.generate(text.strip(), context, history)
            except HintGenerationFailedError:
                metrics.record_hint_redemption("generation_failed")
                raise
            if not hint or not hint.strip():
                metrics.record_hint_redemption("generation_failed")
                raise HintGenerationFailedError("empty hint")
            hint = hint.strip()

            async def _commit_hint(tx: LedgerTransaction) -> NewHint:
                if await tx.read_compliment(compliment_id) is None:
                    raise ValidationError(f"compliment {compliment_id} not found")

                source_box: list[HintSource] = []

                def _debit(current: LedgerSnapshot) -> LedgerSnapshot:
                    debited, source = spend_one_hint(current, self.daily_quota, now, self.tz)
                    source_box.append(source)
                    return debited

                updated = await tx.update_account(account_id, _debit)
                hints = await tx.append_hint(compliment_id, hint)
                return NewHint(
                    compliment_id=compliment_id,
                    hint=hint,
                    hints=hints,
                    source=source_box[0],
                    daily_hints_available=available_today(updated, self.daily_quota, now, self.tz),
                    bonus_hints=updated.bonus_hints,
                )

            try:
                result = await self.store.run(_commit_hint, operation="redeem_hint")
            except InsufficientBalanceError:
                # Lost the race for the last hint after generating one
                metrics.record_hint_redemption("insufficient")
                logger.info(
                    "hint_redemption_lost_race",
                    account_id=account_id,
                    compliment_id=compliment_id,
                )
                raise

        metrics.record_hint_redemption("success", result.source.value)
        logger.info(
            "hint_redeemed",
            account_id=account_id,
            compliment_id=compliment_id,
            source=result.source.value,
            daily_hints_available=result.daily_hints_available,
            bonus_hints=result.bonus_hints,
        )
        return result
