"""
Per-tick scope resolution for converters and flows

Converters and flows may reference each other in any order, and the
reference graph is not guaranteed to be acyclic. Two strategies are
provided:

- "passes": re-evaluate every converter then every flow a fixed number of
  times against the scope as most recently updated. Failures are only
  reported on the last pass, since earlier passes routinely read
  forward references that have not been computed yet.
- "ordered": evaluate the strongly connected components of the reference
  graph in dependency order. Acyclic entries are evaluated exactly once;
  only genuine loops fall back to the fixed number of passes.
"""

from typing import Dict, Iterable, List, NamedTuple, Optional, Set, Tuple
import logging

from stockflow.constants import DEFAULT_RESOLVER_PASSES, VALID_RESOLUTION_MODES
from stockflow.evaluator import FormulaEvaluator, formula_references
from stockflow.models import ModelDocument

logger = logging.getLogger(__name__)


# ============================================================================
# Dependency Graph Building
# ============================================================================


def auxiliary_entries(model: ModelDocument) -> List[Tuple[str, str]]:
    """
    Converters then flows, as (id, formula) pairs in document order

    This is the evaluation order used by every pass.
    """
    entries = [(c.id, c.formula) for c in model.converters]
    entries.extend((f.id, f.formula) for f in model.flows)
    return entries


def build_dependency_graph(
    model: ModelDocument, evaluator: Optional[FormulaEvaluator] = None
) -> Dict[str, List[str]]:
    """
    Build the converter/flow reference graph

    IMPORTANT: Stocks and parameters are excluded as dependencies because
    their values are already in the scope before resolution starts. A loop
    that passes through a stock is therefore not a loop here.

    Links are ignored; only formula references count.

    Args:
        model: Model document
        evaluator: Optional evaluator whose parse cache should be reused

    Returns:
        Dictionary mapping each converter/flow id to the converter/flow ids
        its formula references (a self-reference is kept)
    """
    entries = auxiliary_entries(model)
    auxiliary_ids = {entry_id for entry_id, _ in entries}
    dependencies: Dict[str, List[str]] = {entry_id: [] for entry_id, _ in entries}

    for entry_id, formula in entries:
        for name in sorted(formula_references(formula, evaluator)):
            if name in auxiliary_ids and name not in dependencies[entry_id]:
                dependencies[entry_id].append(name)

    return dependencies


def strongly_connected_components(
    dependencies: Dict[str, List[str]]
) -> List[List[str]]:
    """
    Tarjan's algorithm over a dependency graph

    Args:
        dependencies: Dictionary mapping node to the nodes it depends on

    Returns:
        Components in evaluation order: every component appears after the
        components it depends on. Members keep the dictionary's order.
    """
    position = {node: i for i, node in enumerate(dependencies)}
    index: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    stack: List[str] = []
    on_stack: Set[str] = set()
    components: List[List[str]] = []

    def visit(node: str) -> None:
        index[node] = lowlink[node] = len(index)
        stack.append(node)
        on_stack.add(node)

        for dep in dependencies.get(node, []):
            if dep not in dependencies:
                continue
            if dep not in index:
                visit(dep)
                lowlink[node] = min(lowlink[node], lowlink[dep])
            elif dep in on_stack:
                lowlink[node] = min(lowlink[node], index[dep])

        if lowlink[node] == index[node]:
            component: List[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            components.append(sorted(component, key=position.__getitem__))

    for node in dependencies:
        if node not in index:
            visit(node)

    return components


def find_algebraic_loops(
    model: ModelDocument, evaluator: Optional[FormulaEvaluator] = None
) -> List[List[str]]:
    """
    Converter/flow cycles that are not broken by a stock

    Returns:
        One list of ids per loop (a self-referencing entry is a loop of one)
    """
    dependencies = build_dependency_graph(model, evaluator)
    return [
        component
        for component in strongly_connected_components(dependencies)
        if _is_cyclic(component, dependencies)
    ]


def _is_cyclic(component: List[str], dependencies: Dict[str, List[str]]) -> bool:
    if len(component) > 1:
        return True
    node = component[0]
    return node in dependencies.get(node, [])


# ============================================================================
# Resolver
# ============================================================================


class ResolutionStep(NamedTuple):
    """One unit of the ordered plan"""

    entries: Tuple[Tuple[str, str], ...]
    cyclic: bool


class ScopeResolver:
    """
    Computes every converter and flow value for one tick

    The scope passed to resolve() must already hold parameters, time and
    the current stock values; it is updated in place.
    """

    def __init__(
        self,
        model: ModelDocument,
        evaluator: FormulaEvaluator,
        passes: int = DEFAULT_RESOLVER_PASSES,
        mode: str = "passes",
    ):
        """
        Initialize resolver for one model

        Args:
            model: Model document (read only)
            evaluator: Evaluator owned by the current run
            passes: Number of fixed-point passes (>= 1)
            mode: "passes" or "ordered"

        Raises:
            ValueError: If passes < 1 or the mode is unknown
        """
        if passes < 1:
            raise ValueError(f"Resolver needs at least one pass, got {passes}")
        if mode not in VALID_RESOLUTION_MODES:
            raise ValueError(
                f"Unknown resolution mode: {mode}. Valid options: {', '.join(sorted(VALID_RESOLUTION_MODES))}"
            )

        self.evaluator = evaluator
        self.passes = passes
        self.mode = mode
        self.entries = auxiliary_entries(model)
        self.plan: List[ResolutionStep] = []

        if mode == "ordered":
            self.plan = self._build_plan(model)
            loops = [step for step in self.plan if step.cyclic]
            if loops:
                logger.debug(
                    f"Ordered resolution: {len(self.plan)} steps, "
                    f"{len(loops)} cyclic group(s) iterated {passes} times"
                )

    def _build_plan(self, model: ModelDocument) -> List[ResolutionStep]:
        dependencies = build_dependency_graph(model, self.evaluator)
        by_id: Dict[str, List[Tuple[str, str]]] = {}
        for entry_id, formula in self.entries:
            by_id.setdefault(entry_id, []).append((entry_id, formula))

        plan: List[ResolutionStep] = []
        for component in strongly_connected_components(dependencies):
            entries = tuple(entry for node in component for entry in by_id[node])
            plan.append(ResolutionStep(entries, _is_cyclic(component, dependencies)))
        return plan

    def resolve(self, scope: Dict[str, float]) -> None:
        """
        Populate converters and flows in the scope for the current tick

        Args:
            scope: Working scope, updated in place
        """
        if self.mode == "ordered":
            for step in self.plan:
                rounds = self.passes if step.cyclic else 1
                self._run_passes(step.entries, scope, rounds)
        else:
            self._run_passes(self.entries, scope, self.passes)

    def _run_passes(
        self, entries: Iterable[Tuple[str, str]], scope: Dict[str, float], rounds: int
    ) -> None:
        entries = tuple(entries)
        for pass_index in range(rounds):
            quiet = pass_index < rounds - 1
            for entry_id, formula in entries:
                scope[entry_id] = self.evaluator.evaluate(
                    formula, scope, element_id=entry_id, quiet=quiet
                )
