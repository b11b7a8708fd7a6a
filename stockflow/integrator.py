"""
Explicit Euler integration of stock values
"""

from typing import Dict, List, Mapping
import logging
import math

from stockflow.constants import DIVERGENCE_MESSAGE, DIVERGENCE_THRESHOLD, TIME_KEY
from stockflow.evaluator import FormulaEvaluator
from stockflow.exceptions import DivergenceError
from stockflow.models import Stock

logger = logging.getLogger(__name__)


class EulerIntegrator:
    """
    Advances every stock by one time step

    The Euler method is a first-order numerical integration method:
    x(t + dt) = x(t) + dx/dt * dt

    All rates are taken from the same resolved scope, so the update is
    simultaneous: no stock sees another stock's already-advanced value.
    Stock values are floored at zero after each step.
    """

    def __init__(
        self,
        stocks: List[Stock],
        evaluator: FormulaEvaluator,
        threshold: float = DIVERGENCE_THRESHOLD,
    ):
        """
        Initialize integrator

        Args:
            stocks: Stocks to integrate, in document order
            evaluator: Evaluator owned by the current run
            threshold: Magnitude above which a next value counts as divergent
        """
        self.stocks = stocks
        self.evaluator = evaluator
        self.threshold = threshold

    def compute_rates(self, scope: Mapping[str, float]) -> Dict[str, float]:
        """
        Evaluate every stock's net-rate formula against the resolved scope

        A stock with an empty formula has zero rate.
        """
        return {
            stock.id: self.evaluator.evaluate(stock.formula, scope, element_id=stock.id)
            for stock in self.stocks
        }

    def step(self, scope: Mapping[str, float], dt: float) -> Dict[str, float]:
        """
        Compute next stock values

        Args:
            scope: Fully resolved scope for the current tick (not modified)
            dt: Step size

        Returns:
            Dictionary mapping stock ids to their next values

        Raises:
            DivergenceError: If a next value is non-finite or exceeds the threshold
        """
        rates = self.compute_rates(scope)
        next_values: Dict[str, float] = {}

        for stock in self.stocks:
            current = scope.get(stock.id, 0.0)
            next_value = current + rates[stock.id] * dt

            if not math.isfinite(next_value) or abs(next_value) > self.threshold:
                time = scope.get(TIME_KEY, 0.0)
                logger.info(
                    f"Stock '{stock.id}' diverged at t={time:.4f} (next value {next_value!r})"
                )
                raise DivergenceError(
                    DIVERGENCE_MESSAGE,
                    stock_id=stock.id,
                    time=time,
                    value=next_value,
                )

            next_values[stock.id] = max(0.0, next_value)

        return next_values
