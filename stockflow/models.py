"""
Pydantic models for the stock-and-flow simulation core
Defines the model document, simulation configuration and run payloads
"""

import math

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Dict, Optional, Any

from stockflow.constants import (
    DEFAULT_BATCH_TRIALS,
    TIME_GRID_TOLERANCE,
    VALID_LINK_POLARITIES,
    VALID_RESOLUTION_MODES,
)
from stockflow.exceptions import ValidationError


class DocumentModel(BaseModel):
    """
    Base for every model-document node

    Accepts both the camelCase wire form (initialValue, sourceId, ...) and
    snake_case field names, and serializes back to camelCase.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Position(DocumentModel):
    """Editor canvas position; carried through untouched"""

    x: float
    y: float


class Parameter(DocumentModel):
    """
    Represents a tunable scalar input

    Attributes:
        id: Unique identifier used in formulas
        name: Human-readable name
        value: Current value (not required to lie within [min, max])
        min: Lower bound of the slider range
        max: Upper bound of the slider range
        step: Slider granularity
        unit: Unit label
    """

    id: str
    name: str = ""
    value: float
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    unit: str = ""
    position: Optional[Position] = None

    def in_range(self) -> bool:
        """Check whether the current value lies within the declared range"""
        if self.min is not None and self.value < self.min:
            return False
        if self.max is not None and self.value > self.max:
            return False
        return True


class Stock(DocumentModel):
    """
    Represents an accumulating quantity

    Attributes:
        id: Unique identifier used in formulas
        name: Human-readable name
        initial_value: Formula evaluated once at start time to seed the stock
        formula: Net-rate formula giving dValue/dt (usually inflows - outflows)
    """

    id: str
    name: str = ""
    initial_value: str = "0"
    formula: str = ""
    position: Optional[Position] = None

    @field_validator("initial_value", mode="before")
    @classmethod
    def coerce_initial_value(cls, v: Any) -> Any:
        """Allow a bare number as initial value"""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return repr(v)
        return v


class Flow(DocumentModel):
    """
    Represents an instantaneous rate

    source_id and target_id are presentation hints only; a stock's
    derivative comes from its own net-rate formula.
    """

    id: str
    name: str = ""
    formula: str = ""
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    position: Optional[Position] = None


class Converter(DocumentModel):
    """Represents an auxiliary instantaneous value with no memory"""

    id: str
    name: str = ""
    formula: str = ""
    position: Optional[Position] = None


class Link(DocumentModel):
    """
    Represents a causal connection for diagram rendering

    Attributes:
        id: Unique identifier for the link
        source: ID of the source element
        target: ID of the target element
        polarity: '+' (reinforcing) or '-' (opposing)
    """

    id: str
    source: str
    target: str
    polarity: Optional[str] = None

    @field_validator("polarity")
    @classmethod
    def validate_polarity(cls, v: Optional[str]) -> Optional[str]:
        """Validate polarity tag"""
        if v is not None and v not in VALID_LINK_POLARITIES:
            raise ValueError("Polarity must be '+' or '-'")
        return v


class SimulationConfig(DocumentModel):
    """
    Time window for a simulation run

    Attributes:
        start: Simulation start time
        end: Simulation end time (inclusive)
        dt: Time step size (must be > 0)
        resolution: Optional override of the scope resolution mode
    """

    start: float = 0.0
    end: float = 100.0
    dt: float = Field(1.0, gt=0, description="Time step must be greater than 0")
    resolution: Optional[str] = Field(
        None, description="Scope resolution mode: 'passes' or 'ordered'"
    )

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v: Optional[str]) -> Optional[str]:
        """Validate resolution mode"""
        if v is not None and v not in VALID_RESOLUTION_MODES:
            raise ValueError("Resolution must be 'passes' or 'ordered'")
        return v

    def get_num_steps(self) -> int:
        """
        Calculate the number of simulated ticks

        Matches the length of the time grid, including the extra tick at
        end when (end - start) is not a multiple of dt.
        """
        if self.dt <= 0 or self.end < self.start:
            return 0
        count = math.floor((self.end - self.start) / self.dt + TIME_GRID_TOLERANCE)
        last = self.start + count * self.dt
        if self.end - last > TIME_GRID_TOLERANCE * max(1.0, abs(self.end)):
            return count + 2
        return count + 1


class ModelDocument(DocumentModel):
    """
    Complete declarative stock-and-flow model

    Treated as immutable for the duration of a run.
    """

    id: str = ""
    name: str = ""
    description: str = ""
    parameters: List[Parameter] = []
    stocks: List[Stock] = []
    flows: List[Flow] = []
    converters: List[Converter] = []
    links: List[Link] = []
    simulation_config: SimulationConfig = Field(default_factory=SimulationConfig)

    def element_ids(self) -> Dict[str, str]:
        """Map every declared identifier to its element kind"""
        kinds: Dict[str, str] = {}
        for kind, items in (
            ("parameter", self.parameters),
            ("stock", self.stocks),
            ("flow", self.flows),
            ("converter", self.converters),
        ):
            for item in items:
                kinds.setdefault(item.id, kind)
        return kinds


class FormulaDiagnostic(BaseModel):
    """
    A non-fatal formula failure observed during a run

    Attributes:
        code: Evaluation error code (e.g. 'undefined_variable')
        message: Human-readable message
        element_id: Element whose formula failed
        formula: The formula text
        time: First tick at which it was seen
        count: Number of occurrences during the run
    """

    code: str
    message: str
    element_id: Optional[str] = None
    formula: Optional[str] = None
    time: Optional[float] = None
    count: int = 1


class SimulationOutput(BaseModel):
    """
    Result of one simulation run

    Attributes:
        results: Scope snapshots ordered by time
        is_stable: False when the run stopped on divergence
        error: Instability message when is_stable is False
        state: Final state of the run ('completed' or 'diverged')
        diagnostics: Deduplicated formula failures seen during the run
    """

    results: List[Dict[str, float]] = []
    is_stable: bool = True
    error: Optional[str] = None
    state: str = "completed"
    diagnostics: List[FormulaDiagnostic] = []


class SimulationRequest(BaseModel):
    """
    Payload for a single run

    Attributes:
        model: The model document
        parameter_values: Optional absolute value per parameter id, applied
            before perturbations (slider positions)
        perturbations: Optional multiplicative factor per parameter id
    """

    model: ModelDocument
    parameter_values: Dict[str, float] = {}
    perturbations: Dict[str, float] = {}


class BatchRequest(BaseModel):
    """
    Payload for a sensitivity batch

    Attributes:
        model: The model document
        parameter_values: Optional absolute value per parameter id, applied
            before any trial is drawn
        trial_count: Number of perturbed trials to run
        seed: Optional seed making the batch reproducible
    """

    model: ModelDocument
    parameter_values: Dict[str, float] = {}
    trial_count: int = Field(DEFAULT_BATCH_TRIALS, ge=1)
    seed: Optional[int] = None


class EnvelopeSeries(BaseModel):
    """Per-tick mean/min/max of one identifier across stable trials"""

    mean: List[float]
    min: List[float]
    max: List[float]


class BatchResult(BaseModel):
    """
    Sensitivity batch result

    Attributes:
        trajectories: Result sequences of the stable trials, in trial order
        perturbations: Factors used by each stable trial, aligned with trajectories
        trial_count: Number of trials requested
        discarded: Number of trials dropped because they diverged
        envelope: Per-identifier spread across stable trials
    """

    trajectories: List[List[Dict[str, float]]] = []
    perturbations: List[Dict[str, float]] = []
    trial_count: int = 0
    discarded: int = 0
    envelope: Dict[str, EnvelopeSeries] = {}


class ValidationResponse(BaseModel):
    """
    Model validation result

    Attributes:
        valid: Whether the model has no errors (warnings allowed)
        errors: List of validation errors
        warnings: List of validation warnings
        summary: Summary statistics
    """

    valid: bool
    errors: List[ValidationError] = []
    warnings: List[ValidationError] = []
    summary: Optional[Dict[str, Any]] = None
