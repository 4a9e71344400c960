"""
Spend ledger.

Prices every generation attempt, appends it to the generation log and
enforces the shared monthly budget against month-to-date spend.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .errors import BudgetExceeded
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from .token_counter import TokenUsage
from ..config.loader import BudgetConfig
from ..storage.models import GenerationLogRow, LogStatus

logger = logging.getLogger(__name__)

MONTH_TO_DATE_TTL = timedelta(minutes=5)


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class SpendLedger:
    """Append-only cost accounting with a monthly budget gate.

    Month-to-date spend is the sum of successful rows since the first of
    the current month. It is cached for a few minutes and the cache is
    dropped on every write, so a write is visible to the next check.
    """

    def __init__(
        self,
        repository,
        budget: Optional[BudgetConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        pricing: PricingTable = PRICING_TABLE,
    ):
        self.repository = repository
        self.budget = budget or BudgetConfig()
        self.clock = clock
        self.pricing = pricing
        self._mtd_cache = None  # (month_start, computed_at, value)
        self._alerted_month: Optional[datetime] = None

    def cost(self, prompt_tokens: int, completion_tokens: int, model: str) -> float:
        """Price a call in USD, rounded to 6 decimals.

        Raises:
            UnknownModelError: If model is not in the pricing table
        """
        return calculate_cost(model, TokenUsage(prompt_tokens, completion_tokens), self.pricing)

    def log(
        self,
        post_id: int,
        block_type: str,
        status: LogStatus,
        usage: Optional[TokenUsage] = None,
        cost: float = 0.0,
        model: str = "",
        error_message: Optional[str] = None,
        user_id: int = 0,
    ) -> int:
        """Append one attempt to the ledger.

        Failed attempts are stored with zero tokens and zero cost. A storage
        failure is logged and reported as id 0; it never propagates.

        Returns:
            Row id, or 0 if the row could not be written
        """
        if status is LogStatus.FAILED:
            usage, cost = TokenUsage.zero(), 0.0
        usage = usage or TokenUsage.zero()

        row = GenerationLogRow(
            post_id=post_id,
            block_type=block_type,
            status=status,
            created_at=self.clock(),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost=cost,
            model=model,
            error_message=error_message,
            user_id=user_id,
        )
        try:
            log_id = self.repository.insert(row)
        except Exception as e:
            logger.error(
                "event=ledger.write_failed | post_id=%s | block=%s | error=%s",
                post_id, block_type, e,
            )
            return 0
        finally:
            self._mtd_cache = None

        if status is LogStatus.SUCCESS:
            self._maybe_alert()
        return log_id

    def month_to_date_cost(self) -> float:
        """Successful spend since the first day of the current month."""
        now = self.clock()
        start = month_start(now)
        if self._mtd_cache is not None:
            cached_start, computed_at, value = self._mtd_cache
            if cached_start == start and now - computed_at < MONTH_TO_DATE_TTL:
                return value
        value = self.repository.success_cost_since(start)
        self._mtd_cache = (start, now, value)
        return value

    def check_budget(self) -> None:
        """Raise if month-to-date spend has reached the monthly ceiling.

        No-op when tracking is disabled or the budget is 0 (unlimited).

        Raises:
            BudgetExceeded: If spend >= budget
        """
        if not self.budget.enabled or self.budget.monthly <= 0:
            return
        current = self.month_to_date_cost()
        if current >= self.budget.monthly:
            logger.warning(
                "event=budget.exceeded | current=%.6f | limit=%.2f",
                current, self.budget.monthly,
            )
            raise BudgetExceeded(current, self.budget.monthly)

    def remaining_budget(self) -> Optional[float]:
        """Budget left this month, or None when unlimited."""
        if not self.budget.enabled or self.budget.monthly <= 0:
            return None
        return max(0.0, self.budget.monthly - self.month_to_date_cost())

    def _maybe_alert(self) -> None:
        if not self.budget.enabled or self.budget.monthly <= 0:
            return
        start = month_start(self.clock())
        if self._alerted_month == start:
            return
        current = self.month_to_date_cost()
        threshold = self.budget.monthly * self.budget.alert_threshold_percent / 100
        if current >= threshold:
            self._alerted_month = start
            logger.warning(
                "event=budget.alert | current=%.6f | limit=%.2f | threshold_percent=%d",
                current, self.budget.monthly, self.budget.alert_threshold_percent,
            )

    def cleanup(self, days: int = 30) -> int:
        """Delete rows older than `days`, never touching the current month.

        Returns:
            Number of rows deleted
        """
        now = self.clock()
        cutoff = min(now - timedelta(days=days), month_start(now))
        ids = self.repository.ids_older_than(cutoff)
        deleted = self.repository.delete(ids) if ids else 0
        logger.info("event=ledger.cleanup | cutoff=%s | deleted=%d", cutoff.isoformat(), deleted)
        return deleted

    def post_statistics(self, post_id: int) -> Dict[str, float]:
        return self.repository.post_statistics(post_id)

    def success_rate(self, limit: int = 100) -> float:
        """Percentage of successful attempts among the latest `limit` rows."""
        counts = self.repository.status_counts(limit)
        if counts["total"] == 0:
            return 0.0
        return round(counts["successful"] / counts["total"] * 100, 2)
