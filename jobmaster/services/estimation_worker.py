"""
estimation_worker.py
~~~~~~~~~~~~~~~~~~~~
Consumer for ESTIMATE_GAINS jobs.

One job at a time, one holding at a time. A failure on a single symbol is
recorded and skipped; only whole-job failures (auth, portfolio, nothing
estimable) fail the job. The handler is safe to re-run from the top: every
upstream call is a read except the best-effort callback.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from jobmaster.core.config import Settings
from jobmaster.core.errors import EmptyPortfolioError, NoSuccessfulEstimationsError
from jobmaster.schemas import Holding
from jobmaster.services.estimation import estimate_price
from jobmaster.services.job_store import JobStore
from jobmaster.services.queue import Delivery
from jobmaster.services.upstream import PortfolioApiClient, RejectedHolding
from jobmaster.utils.time import utc_now

logger = logging.getLogger(__name__)


# ─── Result Types ────────────────────────────────────────────────────────────

@dataclass
class StockEstimation:
    symbol: str
    quantity: float
    current_price: float
    estimated_price: float
    current_value: float
    estimated_value: float
    estimated_gains: float
    estimated_growth_percent: float
    confidence: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol":                 self.symbol,
            "quantity":               self.quantity,
            "currentPrice":           self.current_price,
            "estimatedPrice":         self.estimated_price,
            "currentValue":           self.current_value,
            "estimatedValue":         self.estimated_value,
            "estimatedGains":         self.estimated_gains,
            "estimatedGrowthPercent": self.estimated_growth_percent,
            "confidence":             self.confidence,
        }


@dataclass
class SymbolOutcome:
    """What happened to one holding: an estimation, or the reason it was skipped."""
    symbol: str
    estimation: Optional[StockEstimation] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.estimation is not None


def build_job_result(user_email: str, outcomes: List[SymbolOutcome]) -> dict[str, Any]:
    """Aggregate the successful outcomes, in portfolio order, into the job result payload."""
    estimations = [o.estimation for o in outcomes if o.ok]
    if not estimations:
        skipped = ", ".join(f"{o.symbol} ({o.error})" for o in outcomes) or "none"
        raise NoSuccessfulEstimationsError(
            f"Could not compute an estimation for any holding; skipped: {skipped}"
        )

    total_current = sum(e.current_value for e in estimations)
    total_estimated = sum(e.estimated_value for e in estimations)
    total_gains = total_estimated - total_current
    return {
        "userEmail": user_email,
        "estimations": [e.to_dict() for e in estimations],
        "summary": {
            "totalCurrentValue": total_current,
            "totalEstimatedValue": total_estimated,
            "totalEstimatedGains": total_gains,
            "totalGrowthPercent": (total_gains / total_current * 100) if total_current > 0 else 0,
            "stocksAnalyzed": len(estimations),
        },
        "calculatedAt": utc_now(),
    }


# ─── Worker ──────────────────────────────────────────────────────────────────

class EstimationWorker:
    def __init__(
        self,
        store: JobStore,
        upstream: PortfolioApiClient,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.upstream = upstream
        self.history_days = settings.HISTORY_DAYS
        self.projection_days = settings.PROJECTION_DAYS
        self.target_points = settings.INTERPOLATION_POINTS
        self.clock = clock

    def handle(self, delivery: Delivery) -> None:
        """Queue handler. Re-raises whole-job failures so the queue can retry."""
        job_id = delivery.payload.get("jobId")
        user_email = delivery.payload.get("userEmail")

        job = self.store.get_job(job_id) if job_id else None
        if job is None:
            logger.error(f"Job {job_id} not found in store; dropping message {delivery.message_id}")
            return
        if job.is_terminal:
            logger.info(f"Job {job_id} already {job.status.value}; ignoring duplicate delivery")
            return
        user_email = user_email or job.data.get("userEmail")

        logger.info(
            f"Processing job {job_id} for {user_email} "
            f"(attempt {delivery.attempt}/{delivery.max_attempts})"
        )
        try:
            if not self.store.mark_processing(job_id):
                logger.info(f"Job {job_id} finished elsewhere before processing started; skipping")
                return
            token = self.upstream.fetch_token()
            result = self.run(user_email, token)
        except Exception as e:
            logger.error(f"Job {job_id} failed on attempt {delivery.attempt}: {e}", exc_info=True)
            if delivery.is_final_attempt:
                self.store.fail_job(job_id, str(e))
            raise

        if not self.store.complete_job(job_id, result):
            logger.warning(f"Job {job_id} was already final; result not written")
            return
        logger.info(
            f"Job {job_id} completed: {result['summary']['totalEstimatedGains']:.2f} "
            f"estimated gains over {result['summary']['stocksAnalyzed']} stock(s)"
        )
        self._notify(job_id, user_email, result, token)

    def run(self, user_email: str, token: str) -> dict[str, Any]:
        """Fetch the portfolio, estimate every holding and aggregate."""
        portfolio = self.upstream.get_portfolio(user_email, token)
        if not portfolio:
            raise EmptyPortfolioError(f"User {user_email} has no holdings in their portfolio")
        logger.info(f"Portfolio for {user_email}: {len(portfolio)} holding(s)")

        outcomes = []
        for entry in portfolio:
            if isinstance(entry, RejectedHolding):
                logger.warning(f"Skipping {entry.symbol}: {entry.error}")
                outcomes.append(SymbolOutcome(entry.symbol, error=entry.error))
            else:
                outcomes.append(self._estimate_holding(entry, token))
        return build_job_result(user_email, outcomes)

    def _estimate_holding(self, holding: Holding, token: str) -> SymbolOutcome:
        symbol = holding.symbol
        try:
            history = self.upstream.get_price_history(symbol, token, days=self.history_days)
            if not history:
                logger.warning(f"No price history for {symbol}, skipping")
                return SymbolOutcome(symbol, error="no price history")

            estimate = estimate_price(
                history,
                target_points=self.target_points,
                projection_days=self.projection_days,
                now=self.clock() if self.clock else None,
            )
        except Exception as e:
            logger.error(f"Error estimating {symbol}, skipping: {e}")
            return SymbolOutcome(symbol, error=str(e))

        current_value = estimate.current_price * holding.quantity
        estimated_value = estimate.estimated_price * holding.quantity
        logger.debug(
            f"{symbol}: current={estimate.current_price} estimated={estimate.estimated_price} "
            f"quantity={holding.quantity} r2={estimate.r_squared:.4f}"
        )
        return SymbolOutcome(
            symbol,
            estimation=StockEstimation(
                symbol=symbol,
                quantity=holding.quantity,
                current_price=estimate.current_price,
                estimated_price=estimate.estimated_price,
                current_value=current_value,
                estimated_value=estimated_value,
                estimated_gains=estimated_value - current_value,
                estimated_growth_percent=estimate.estimated_growth,
                confidence=estimate.confidence,
            ),
        )

    def _notify(self, job_id: str, user_email: str, result: dict[str, Any], token: str) -> None:
        # Best effort: the job is already COMPLETED and stays that way
        try:
            self.upstream.post_callback(
                {
                    "jobId": job_id,
                    "userEmail": user_email,
                    "estimations": result["estimations"],
                    "summary": result["summary"],
                },
                token,
            )
        except Exception as e:
            logger.error(f"Callback for job {job_id} failed: {e}")
