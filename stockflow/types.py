"""
Type definitions for the stock-and-flow simulation service
Provides TypedDict and alias type hints for structured data
"""

from typing import Dict, List, Optional, TypedDict

# Identifier -> value map: parameters, time, stocks, converters and flows
Scope = Dict[str, float]

# Scope snapshots ordered by time
Trajectory = List[Scope]


class ValidationSummaryDict(TypedDict, total=False):
    """
    Typed dictionary for validation summary

    All fields are optional; the API adds element counts on top of the
    counts produced by validation.
    """
    valid: bool
    error_count: int
    warning_count: int
    errors_by_code: Dict[str, int]
    errors_by_element: Dict[str, int]
    warnings_by_code: Dict[str, int]
    parameters: int
    stocks: int
    flows: int
    converters: int
    links: int


class TemplateInfoDict(TypedDict):
    """Typed dictionary describing a built-in model template"""
    id: str
    name: str
    description: str


class ErrorResponseDict(TypedDict):
    """Typed dictionary for structured API error bodies"""
    code: str
    message: str
    details: Optional[Dict]
