"""
Structured exception classes for the stock-and-flow simulation core
Provides unified error handling with structured error responses
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel


class ValidationError(BaseModel):
    """
    Structured validation finding with detailed information

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        element_id: ID of the element causing the error (if applicable)
        field: Field name within the element (if applicable)
        suggestion: Optional suggestion for fixing the error
        context: Optional additional context information
    """

    code: str
    message: str
    element_id: Optional[str] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        """String representation for logging"""
        parts = [f"[{self.code}] {self.message}"]
        if self.element_id:
            parts.append(f"Element: {self.element_id}")
        if self.field:
            parts.append(f"Field: {self.field}")
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


class SimulationError(Exception):
    """
    Exception raised during simulation execution

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        details: Additional error details
    """

    def __init__(
        self, code: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        """String representation for logging"""
        return f"[{self.code}] {self.message}"


class EvaluationError(Exception):
    """
    Exception raised while parsing or evaluating a single formula

    Never escapes FormulaEvaluator.evaluate(); it is converted there into a
    zero value plus a diagnostic.

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        element_id: ID of the element being evaluated
        formula: The formula that failed
        details: Additional error details
    """

    def __init__(
        self,
        code: str,
        message: str,
        element_id: Optional[str] = None,
        formula: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.element_id = element_id
        self.formula = formula
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response with unified format"""
        result = {
            "code": self.code,
            "message": self.message,
            "details": self.details.copy() if self.details else {},
        }
        if self.element_id:
            result["details"]["element_id"] = self.element_id
        if self.formula:
            result["details"]["formula"] = self.formula
        return result

    def __str__(self) -> str:
        """String representation for logging"""
        parts = [f"[{self.code}] {self.message}"]
        if self.element_id:
            parts.append(f"Element: {self.element_id}")
        if self.formula:
            parts.append(f"Formula: {self.formula}")
        return " | ".join(parts)


class DivergenceError(SimulationError):
    """
    Raised by the integrator when a stock value blows up

    The simulation driver turns it into an unstable result; callers of the
    driver never see it.

    Attributes:
        stock_id: Stock whose next value was non-finite or too large
        time: Tick at which the update was attempted
        value: The offending next value
    """

    def __init__(
        self,
        message: str,
        stock_id: str,
        time: float,
        value: float,
    ):
        self.stock_id = stock_id
        self.time = time
        self.value = value
        super().__init__(
            code="numerical_instability",
            message=message,
            details={"stock_id": stock_id, "time": time, "value": repr(value)},
        )


class ModelStructureError(SimulationError):
    """
    Exception for documents that cannot be read as a model at all

    Raised at the ingestion boundary (unparseable JSON, wrong top-level
    shape, schema violations). The simulation core itself never raises it.
    """

    def __init__(
        self, message: str, details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            code="model_structure_error",
            message=message,
            details=details,
        )
