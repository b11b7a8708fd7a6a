"""
Simulation driver for stock-and-flow models
Owns the tick loop, the per-run scope and the run state machine
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np

from stockflow.config import get_settings
from stockflow.constants import TIME_GRID_TOLERANCE, TIME_KEY
from stockflow.evaluator import FormulaEvaluator
from stockflow.exceptions import DivergenceError, EvaluationError
from stockflow.integrator import EulerIntegrator
from stockflow.models import FormulaDiagnostic, ModelDocument, SimulationOutput
from stockflow.resolver import ScopeResolver
from stockflow.types import Scope, Trajectory

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Lifecycle of a single run"""

    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    DIVERGED = "diverged"


def build_time_grid(start: float, end: float, dt: float) -> List[float]:
    """
    Tick times from start to end inclusive

    Points are computed as start + i * dt so no rounding error accumulates.
    When (end - start) / dt is not an integer the grid is closed with a
    shortened final step landing exactly on end.

    Args:
        start: First tick
        end: Last tick
        dt: Step size (> 0)

    Returns:
        Increasing list of tick times; empty when end < start
    """
    if dt <= 0:
        raise ValueError(f"Time step must be greater than 0, got {dt}")
    if end < start:
        return []

    count = int(np.floor((end - start) / dt + TIME_GRID_TOLERANCE))
    times = start + dt * np.arange(count + 1, dtype=float)
    grid = times.tolist()

    tolerance = TIME_GRID_TOLERANCE * max(1.0, abs(end))
    if end - grid[-1] > tolerance:
        grid.append(float(end))
    else:
        grid[-1] = float(end)
    return grid


class DiagnosticCollector:
    """
    Collects formula failures for one run

    Identical failures (same element, code and message) are merged and
    counted; only the first occurrence is logged as a warning.
    """

    def __init__(self) -> None:
        self.time: Optional[float] = None
        self._items: Dict[Tuple[Optional[str], str, str], FormulaDiagnostic] = {}

    def __call__(self, error: EvaluationError) -> None:
        key = (error.element_id, error.code, error.message)
        existing = self._items.get(key)
        if existing is not None:
            existing.count += 1
            return

        self._items[key] = FormulaDiagnostic(
            code=error.code,
            message=error.message,
            element_id=error.element_id,
            formula=error.formula,
            time=self.time,
        )
        logger.warning(
            f"Formula evaluation failed at t={self.time}: {error}",
            extra={"code": error.code},
        )

    def diagnostics(self) -> List[FormulaDiagnostic]:
        return list(self._items.values())


class SimulationDriver:
    """
    Runs one simulation of a model document

    The simulation follows the standard stock-and-flow paradigm:
    1. Parameters are constants for the run (optionally perturbed)
    2. Stocks hold integrated state, seeded from their initial formulas
    3. Converters and flows are recomputed every tick from the scope
    4. Stocks advance by their net rate times the step size

    Each driver owns its scope and evaluator, so independent drivers can
    run on different threads against the same (unmodified) model.
    """

    def __init__(
        self,
        model: ModelDocument,
        perturbations: Optional[Dict[str, float]] = None,
        passes: Optional[int] = None,
        mode: Optional[str] = None,
        threshold: Optional[float] = None,
        verbose: bool = False,
    ):
        """
        Initialize driver

        Args:
            model: Model document (read only)
            perturbations: Multiplicative factor per parameter id (default 1)
            passes: Resolver pass count (default from settings)
            mode: Resolution mode (default from the model, then settings)
            threshold: Divergence threshold (default from settings)
            verbose: Log model structure and progress at INFO level
        """
        settings = get_settings()
        self.model = model
        self.config = model.simulation_config
        self.perturbations = perturbations or {}
        self.verbose = verbose
        self.state = RunState.INITIALIZING

        self.collector = DiagnosticCollector()
        self.evaluator = FormulaEvaluator(
            max_length=settings.max_formula_length,
            max_depth=settings.max_formula_depth,
            on_diagnostic=self.collector,
        )
        self.resolver = ScopeResolver(
            model,
            self.evaluator,
            passes=passes if passes is not None else settings.resolver_passes,
            mode=mode or self.config.resolution or settings.resolution_mode,
        )
        self.integrator = EulerIntegrator(
            model.stocks,
            self.evaluator,
            threshold=threshold if threshold is not None else settings.divergence_threshold,
        )

        if self.verbose:
            self._log_model_structure()

    def _log_model_structure(self) -> None:
        """Log model structure for debugging"""
        logger.info("=" * 60)
        logger.info(f"MODEL: {self.model.name or self.model.id or '<unnamed>'}")
        logger.info("=" * 60)
        logger.info(f"Parameters: {len(self.model.parameters)}")
        for param in self.model.parameters:
            factor = self.perturbations.get(param.id, 1.0)
            logger.info(f"  - {param.id} = {param.value} (x{factor:.4f})")
        logger.info(f"Stocks: {len(self.model.stocks)}")
        for stock in self.model.stocks:
            logger.info(f"  - {stock.id}: initial '{stock.initial_value}', rate '{stock.formula}'")
        logger.info(f"Converters: {len(self.model.converters)}")
        for converter in self.model.converters:
            logger.info(f"  - {converter.id}: '{converter.formula}'")
        logger.info(f"Flows: {len(self.model.flows)}")
        for flow in self.model.flows:
            logger.info(f"  - {flow.id}: '{flow.formula}'")
        logger.info(f"Resolution: {self.resolver.mode}, passes={self.resolver.passes}")
        logger.info("=" * 60)

    def initialize(self) -> Scope:
        """
        Build the initial scope

        Parameters are loaded (scaled by their perturbation factor), time is
        set to start, then each stock's initial formula is evaluated in
        document order. Initial values are seeded as evaluated; the
        non-negativity floor applies only to integrated values.

        Returns:
            Fresh scope for this run
        """
        self.state = RunState.INITIALIZING
        self.collector.time = self.config.start
        scope: Scope = {TIME_KEY: self.config.start}

        for param in self.model.parameters:
            factor = self.perturbations.get(param.id, 1.0)
            scope[param.id] = param.value * factor

        for stock in self.model.stocks:
            scope[stock.id] = self.evaluator.evaluate(
                stock.initial_value, scope, element_id=stock.id
            )

        return scope

    def run(self) -> SimulationOutput:
        """
        Run the tick loop from start to end inclusive

        Returns:
            SimulationOutput with every produced snapshot. On divergence the
            snapshots produced so far are kept, is_stable is False and error
            carries the instability message.
        """
        scope = self.initialize()
        times = build_time_grid(self.config.start, self.config.end, self.config.dt)
        results: Trajectory = []

        self.state = RunState.RUNNING
        if self.verbose:
            logger.info(
                f"SIMULATION START: t={self.config.start} to {self.config.end}, "
                f"dt={self.config.dt}, ticks={len(times)}"
            )

        for i, time in enumerate(times):
            scope[TIME_KEY] = time
            self.collector.time = time

            self.resolver.resolve(scope)
            results.append(dict(scope))

            last = i == len(times) - 1
            step = self.config.dt if last else times[i + 1] - time

            try:
                next_values = self.integrator.step(scope, step)
            except DivergenceError as e:
                self.state = RunState.DIVERGED
                logger.warning(
                    f"Run diverged at t={e.time:.4f} on stock '{e.stock_id}' "
                    f"after {len(results)} tick(s)"
                )
                return SimulationOutput(
                    results=results,
                    is_stable=False,
                    error=e.message,
                    state=self.state.value,
                    diagnostics=self.collector.diagnostics(),
                )

            # The update after the last tick is only checked for divergence
            if not last:
                scope.update(next_values)

        self.state = RunState.COMPLETED
        if self.verbose:
            logger.info(f"SIMULATION COMPLETE: {len(results)} ticks")

        return SimulationOutput(
            results=results,
            is_stable=True,
            state=self.state.value,
            diagnostics=self.collector.diagnostics(),
        )


def run_simulation(
    model: ModelDocument,
    perturbations: Optional[Dict[str, float]] = None,
    verbose: bool = False,
) -> SimulationOutput:
    """
    Convenience function to run a simulation

    Creates a SimulationDriver and runs it in one call. Never raises for
    formula failures or divergence; both are reported in the output.

    Args:
        model: Model document
        perturbations: Optional multiplicative factor per parameter id
        verbose: Enable detailed logging

    Returns:
        SimulationOutput for the run
    """
    return SimulationDriver(model, perturbations=perturbations, verbose=verbose).run()
