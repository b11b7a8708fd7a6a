"""
Sensitivity batch runner
Re-runs a model with randomly perturbed parameters and keeps the stable runs
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple
import logging
import os

import numpy as np

from stockflow.constants import DEFAULT_BATCH_TRIALS, DEFAULT_PERTURBATION_SPREAD
from stockflow.models import BatchResult, EnvelopeSeries, ModelDocument, SimulationOutput
from stockflow.simulation import SimulationDriver
from stockflow.types import Trajectory

logger = logging.getLogger(__name__)


def draw_perturbations(
    model: ModelDocument,
    rng: np.random.Generator,
    spread: float = DEFAULT_PERTURBATION_SPREAD,
) -> Dict[str, float]:
    """
    One multiplicative factor per parameter, uniform in [1 - spread, 1 + spread]

    Args:
        model: Model whose parameters are perturbed
        rng: Random generator owned by the trial
        spread: Half-width of the factor range

    Returns:
        Dictionary mapping parameter ids to factors
    """
    factors = rng.uniform(1.0 - spread, 1.0 + spread, size=len(model.parameters))
    return {param.id: float(factor) for param, factor in zip(model.parameters, factors)}


def compute_envelope(trajectories: List[Trajectory]) -> Dict[str, EnvelopeSeries]:
    """
    Per-tick mean/min/max of every identifier across trajectories

    Only ticks present in every trajectory are summarized (all stable runs of
    one model share the same time grid, so this is normally all of them).

    Args:
        trajectories: Result sequences of stable runs

    Returns:
        Dictionary mapping identifiers to their envelope series
    """
    if not trajectories:
        return {}

    length = min(len(run) for run in trajectories)
    if length == 0:
        return {}

    keys = [key for key in trajectories[0][0] if all(key in run[0] for run in trajectories)]
    envelope: Dict[str, EnvelopeSeries] = {}
    for key in keys:
        values = np.array(
            [[tick.get(key, 0.0) for tick in run[:length]] for run in trajectories]
        )
        envelope[key] = EnvelopeSeries(
            mean=np.mean(values, axis=0).tolist(),
            min=np.min(values, axis=0).tolist(),
            max=np.max(values, axis=0).tolist(),
        )
    return envelope


class SensitivityBatchRunner:
    """
    Runs perturbed trials of one model

    Every trial gets its own random stream spawned from a single
    SeedSequence, its own driver and its own scope, so results are
    reproducible for a fixed seed whether trials run sequentially or on a
    thread pool.
    """

    def __init__(
        self,
        model: ModelDocument,
        trial_count: int = DEFAULT_BATCH_TRIALS,
        seed: Optional[int] = None,
        spread: float = DEFAULT_PERTURBATION_SPREAD,
        max_workers: Optional[int] = None,
    ):
        """
        Initialize batch runner

        Args:
            model: Model document (read only for the whole batch)
            trial_count: Number of trials (>= 1)
            seed: Optional seed for reproducible perturbations
            spread: Half-width of the perturbation range
            max_workers: Thread count; None or 1 runs sequentially

        Raises:
            ValueError: If trial_count < 1 or spread is negative
        """
        if trial_count < 1:
            raise ValueError(f"trial_count must be at least 1, got {trial_count}")
        if spread < 0:
            raise ValueError(f"spread must be non-negative, got {spread}")

        self.model = model
        self.trial_count = trial_count
        self.seed = seed
        self.spread = spread
        self.max_workers = max_workers

    def _resolve_workers(self) -> int:
        if self.max_workers is None:
            return 1
        cpu = os.cpu_count() or 1
        return max(1, min(self.max_workers, cpu, self.trial_count))

    def _run_trial(
        self, seed_sequence: np.random.SeedSequence
    ) -> Tuple[SimulationOutput, Dict[str, float]]:
        rng = np.random.default_rng(seed_sequence)
        perturbations = draw_perturbations(self.model, rng, self.spread)
        output = SimulationDriver(self.model, perturbations=perturbations).run()
        return output, perturbations

    def run(self) -> BatchResult:
        """
        Run every trial and aggregate the stable ones

        Returns:
            BatchResult with stable trajectories in trial order
        """
        seeds = np.random.SeedSequence(self.seed).spawn(self.trial_count)
        workers = self._resolve_workers()

        logger.info(
            f"Sensitivity batch: {self.trial_count} trials, spread=+/-{self.spread:.0%}, "
            f"workers={workers}"
        )

        if workers == 1:
            outcomes = [self._run_trial(seq) for seq in seeds]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(self._run_trial, seeds))

        result = BatchResult(trial_count=self.trial_count)
        for output, perturbations in outcomes:
            if not output.is_stable:
                result.discarded += 1
                continue
            result.trajectories.append(output.results)
            result.perturbations.append(perturbations)

        result.envelope = compute_envelope(result.trajectories)

        logger.info(
            f"Sensitivity batch completed: {len(result.trajectories)}/{self.trial_count} stable"
        )
        return result


def run_batch(
    model: ModelDocument,
    trial_count: int = DEFAULT_BATCH_TRIALS,
    seed: Optional[int] = None,
    max_workers: Optional[int] = None,
    spread: float = DEFAULT_PERTURBATION_SPREAD,
) -> List[Trajectory]:
    """
    Result sequences of the stable trials of a perturbed batch

    The list may be shorter than trial_count when some trials diverge.

    Args:
        model: Model document
        trial_count: Number of trials
        seed: Optional seed for reproducible perturbations
        max_workers: Optional thread count
        spread: Half-width of the perturbation range

    Returns:
        List of stable trajectories, in trial order
    """
    runner = SensitivityBatchRunner(
        model, trial_count=trial_count, seed=seed, spread=spread, max_workers=max_workers
    )
    return runner.run().trajectories
