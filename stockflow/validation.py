"""
Validation layer for stock-and-flow model documents
Lints identifiers, formulas, links, flow endpoints, ranges and time config

Nothing here blocks a run: the simulation core tolerates every problem
reported below (broken formulas evaluate to 0). Errors mark documents that
will not simulate as their author intended, warnings mark suspicious ones.
"""

from typing import Dict, Iterator, List, Optional, Set, Tuple

from pydantic import BaseModel

from stockflow.config import get_settings
from stockflow.constants import (
    BUILT_IN_VARIABLES,
    HELPER_FUNCTION_NAMES,
    HELPER_NAMESPACE_PREFIX,
)
from stockflow.evaluator import (
    FormulaEvaluator,
    extract_function_calls,
    extract_variable_references,
)
from stockflow.exceptions import EvaluationError, ValidationError
from stockflow.models import ModelDocument, SimulationConfig
from stockflow.resolver import find_algebraic_loops
from stockflow.types import ValidationSummaryDict


class ValidationResult(BaseModel):
    """Result of validation"""

    valid: bool
    errors: List[ValidationError]
    warnings: List[ValidationError] = []


def _new_evaluator() -> FormulaEvaluator:
    settings = get_settings()
    return FormulaEvaluator(
        max_length=settings.max_formula_length,
        max_depth=settings.max_formula_depth,
    )


def _formula_fields(model: ModelDocument) -> Iterator[Tuple[str, str, str]]:
    """Yield (element_id, field, formula) for every non-empty formula"""
    for stock in model.stocks:
        yield stock.id, "initial_value", stock.initial_value
        yield stock.id, "formula", stock.formula
    for converter in model.converters:
        yield converter.id, "formula", converter.formula
    for flow in model.flows:
        yield flow.id, "formula", flow.formula


# ============================================================================
# Configuration Validation
# ============================================================================


def validate_simulation_config(
    config: SimulationConfig, max_steps: Optional[int] = None
) -> List[ValidationError]:
    """
    Validate simulation configuration

    Rules:
    - dt > 0
    - end >= start
    - total ticks <= max_steps
    """
    errors: List[ValidationError] = []
    if max_steps is None:
        max_steps = get_settings().max_simulation_steps

    if config.dt <= 0:
        errors.append(
            ValidationError(
                code="invalid_time_step",
                message=f"Time step must be greater than 0, got {config.dt}",
                field="dt",
                suggestion="Set dt to a positive value (e.g., 0.1, 1.0)",
            )
        )

    if config.end < config.start:
        errors.append(
            ValidationError(
                code="invalid_time_range",
                message=f"End time ({config.end}) must not be before start time ({config.start})",
                field="end",
                suggestion=f"Set end to a value of at least {config.start}",
            )
        )

    # Only meaningful once dt is valid
    if config.dt > 0 and config.end >= config.start:
        steps = config.get_num_steps()
        if steps > max_steps:
            errors.append(
                ValidationError(
                    code="too_many_steps",
                    message=f"Simulation would require {steps} ticks, exceeding maximum of {max_steps:,}",
                    field="dt",
                    suggestion="Increase dt or reduce the time range (end - start)",
                )
            )

    return errors


# ============================================================================
# Identifier Validation
# ============================================================================


def validate_identifiers(model: ModelDocument) -> List[ValidationError]:
    """
    Validate element identifiers

    Rules:
    - Identifiers are unique across parameters, stocks, flows and converters
    - No identifier shadows the reserved time key or a helper function
    """
    errors: List[ValidationError] = []
    seen: Dict[str, str] = {}

    for kind, items in (
        ("parameter", model.parameters),
        ("stock", model.stocks),
        ("flow", model.flows),
        ("converter", model.converters),
    ):
        for item in items:
            if item.id in seen:
                errors.append(
                    ValidationError(
                        code="duplicate_id",
                        message=f"Identifier '{item.id}' is used by a {seen[item.id]} and a {kind}",
                        element_id=item.id,
                        field="id",
                        suggestion="Ensure all element identifiers are unique",
                    )
                )
            else:
                seen[item.id] = kind

            if item.id in BUILT_IN_VARIABLES or item.id in HELPER_FUNCTION_NAMES:
                errors.append(
                    ValidationError(
                        code="reserved_id",
                        message=f"Identifier '{item.id}' is reserved",
                        element_id=item.id,
                        field="id",
                        suggestion="Rename the element; 'time' and helper function names cannot be used",
                    )
                )

    return errors


# ============================================================================
# Formula Validation
# ============================================================================


def validate_formulas(
    model: ModelDocument, evaluator: Optional[FormulaEvaluator] = None
) -> Tuple[List[ValidationError], List[ValidationError]]:
    """
    Validate every formula in the document

    Rules:
    - Formulas parse (errors)
    - Only helper functions are called (errors)
    - Referenced identifiers are declared (warnings; they evaluate to 0)
    - Stock initial values only use parameters, time and earlier stocks
      (warnings; anything else is not yet in scope when stocks are seeded)

    Returns:
        Tuple of (errors, warnings)
    """
    errors: List[ValidationError] = []
    warnings: List[ValidationError] = []
    evaluator = evaluator or _new_evaluator()

    declared = set(model.element_ids())
    known = declared | BUILT_IN_VARIABLES
    seeded = {param.id for param in model.parameters} | BUILT_IN_VARIABLES

    for element_id, field, formula in _formula_fields(model):
        if field == "initial_value":
            visible = set(seeded)
            seeded.add(element_id)

        if not formula or not formula.strip():
            continue

        try:
            tree = evaluator.parse_formula(formula, element_id)
        except EvaluationError as e:
            errors.append(
                ValidationError(
                    code=e.code,
                    message=f"Cannot parse formula '{formula.strip()}': {e.message}",
                    element_id=element_id,
                    field=field,
                    suggestion="Check for balanced parentheses, valid operators, and proper syntax",
                )
            )
            continue

        for func in sorted(extract_function_calls(tree)):
            name = func
            if name.startswith(HELPER_NAMESPACE_PREFIX):
                name = name[len(HELPER_NAMESPACE_PREFIX):]
            if name not in HELPER_FUNCTION_NAMES:
                errors.append(
                    ValidationError(
                        code="function_not_allowed",
                        message=f"Formula calls '{func}', which is not an allowed function",
                        element_id=element_id,
                        field=field,
                        suggestion=f"Use one of: {', '.join(sorted(HELPER_FUNCTION_NAMES))}",
                        context={"formula": formula.strip(), "function": func},
                    )
                )

        for var_name in sorted(extract_variable_references(tree)):
            if var_name in known:
                if field == "initial_value" and var_name not in visible:
                    warnings.append(
                        ValidationError(
                            code="unavailable_at_initialization",
                            message=(
                                f"Initial value references '{var_name}', which is not "
                                f"available when stocks are seeded (evaluates to 0)"
                            ),
                            element_id=element_id,
                            field=field,
                            suggestion=(
                                "Initial values may only use parameters, time and stocks "
                                "declared earlier in the document"
                            ),
                            context={"formula": formula.strip(), "reference": var_name},
                        )
                    )
                continue

            similar = _find_similar_names(var_name, known)
            suggestion = f"Declare an element with identifier '{var_name}'"
            if similar:
                suggestion += f". Did you mean: {', '.join(similar[:3])}?"

            warnings.append(
                ValidationError(
                    code="undefined_variable",
                    message=f"Formula references undefined identifier '{var_name}' (evaluates to 0)",
                    element_id=element_id,
                    field=field,
                    suggestion=suggestion,
                    context={"formula": formula.strip(), "undefined_var": var_name},
                )
            )

    return errors, warnings


def _find_similar_names(name: str, candidates: Set[str]) -> List[str]:
    """Find similar names for typo suggestions"""
    name_lower = name.lower()
    similar: List[str] = []

    for candidate in sorted(candidates):
        candidate_lower = candidate.lower()
        if name_lower == candidate_lower:
            similar.insert(0, candidate)
        elif name_lower in candidate_lower or candidate_lower in name_lower:
            similar.append(candidate)
        elif abs(len(name) - len(candidate)) <= 2:
            common = sum(1 for a, b in zip(name_lower, candidate_lower) if a == b)
            if common >= len(name_lower) * 0.6:
                similar.append(candidate)

    return similar[:5]


# ============================================================================
# Structure Validation (warnings)
# ============================================================================


def validate_links(
    model: ModelDocument, evaluator: Optional[FormulaEvaluator] = None
) -> List[ValidationError]:
    """
    Validate causal links against declared elements and formulas

    Links are diagram metadata and never affect evaluation, so every
    finding here is a warning.

    Checks:
    - Link endpoints name declared elements
    - Every formula dependency on another element has a matching link
    """
    warnings: List[ValidationError] = []
    evaluator = evaluator or _new_evaluator()
    declared = set(model.element_ids())

    for link in model.links:
        for field, endpoint in (("source", link.source), ("target", link.target)):
            if endpoint not in declared:
                warnings.append(
                    ValidationError(
                        code=f"invalid_link_{field}",
                        message=f"Link {field} '{endpoint}' does not exist",
                        element_id=link.id,
                        field=field,
                        suggestion=f"Create an element with identifier '{endpoint}' or remove the link",
                    )
                )

    linked = {(link.source, link.target) for link in model.links}
    reported: Set[Tuple[str, str]] = set()

    for element_id, field, formula in _formula_fields(model):
        if not formula or not formula.strip():
            continue
        try:
            references = extract_variable_references(evaluator.parse_formula(formula, element_id))
        except EvaluationError:
            continue

        for ref in sorted(references):
            if ref == element_id or ref not in declared:
                continue
            if (ref, element_id) in linked or (ref, element_id) in reported:
                continue
            reported.add((ref, element_id))
            warnings.append(
                ValidationError(
                    code="missing_link",
                    message=f"'{element_id}' depends on '{ref}' but no link connects them",
                    element_id=element_id,
                    field=field,
                    suggestion=f"Add a link from '{ref}' to '{element_id}'",
                    context={"source": ref, "target": element_id},
                )
            )

    return warnings


def validate_flow_endpoints(model: ModelDocument) -> List[ValidationError]:
    """Warn when a flow's source or target does not name a stock"""
    warnings: List[ValidationError] = []
    stock_ids = {stock.id for stock in model.stocks}

    for flow in model.flows:
        for field, endpoint in (("source_id", flow.source_id), ("target_id", flow.target_id)):
            if endpoint and endpoint not in stock_ids:
                warnings.append(
                    ValidationError(
                        code="invalid_flow_endpoint",
                        message=f"Flow '{flow.id}' {field} '{endpoint}' is not a stock",
                        element_id=flow.id,
                        field=field,
                        suggestion="Point flow endpoints at stocks, or leave them empty for a cloud",
                    )
                )

    return warnings


def validate_parameter_ranges(model: ModelDocument) -> List[ValidationError]:
    """Warn when a parameter value lies outside its declared [min, max]"""
    warnings: List[ValidationError] = []

    for param in model.parameters:
        if not param.in_range():
            warnings.append(
                ValidationError(
                    code="parameter_out_of_range",
                    message=f"Parameter '{param.id}' value {param.value} is outside [{param.min}, {param.max}]",
                    element_id=param.id,
                    field="value",
                    suggestion="Adjust the value or widen the declared range",
                )
            )

    return warnings


def detect_algebraic_loops(
    model: ModelDocument, evaluator: Optional[FormulaEvaluator] = None
) -> List[ValidationError]:
    """
    Warn about instantaneous loops among converters and flows

    IMPORTANT: Stocks break loops because their values are fixed for the
    tick, so stock-flow-stock feedback is never reported. Loops that remain
    are resolved approximately by repeated passes.
    """
    warnings: List[ValidationError] = []

    for loop in find_algebraic_loops(model, evaluator or _new_evaluator()):
        cycle_path = " -> ".join(loop) + f" -> {loop[0]}"
        warnings.append(
            ValidationError(
                code="algebraic_loop",
                message=f"Algebraic loop detected: {cycle_path}",
                element_id=loop[0],
                field="formula",
                suggestion=f"Break the loop by routing one of {', '.join(loop)} through a stock",
                context={"cycle": loop},
            )
        )

    return warnings


# ============================================================================
# Main Validation Orchestrator
# ============================================================================


def validate_model(model: ModelDocument) -> ValidationResult:
    """
    Orchestrate all validation checks

    Validation order:
    1. Configuration validation
    2. Identifier validation
    3. Formula validation
    4. Link, flow endpoint and parameter range checks (warnings)
    5. Algebraic loop detection (warnings)

    Returns:
        ValidationResult with errors and warnings
    """
    errors: List[ValidationError] = []
    warnings: List[ValidationError] = []
    evaluator = _new_evaluator()

    errors.extend(validate_simulation_config(model.simulation_config))
    errors.extend(validate_identifiers(model))

    formula_errors, formula_warnings = validate_formulas(model, evaluator)
    errors.extend(formula_errors)
    warnings.extend(formula_warnings)

    warnings.extend(validate_links(model, evaluator))
    warnings.extend(validate_flow_endpoints(model))
    warnings.extend(validate_parameter_ranges(model))
    warnings.extend(detect_algebraic_loops(model, evaluator))

    return ValidationResult(
        valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
    )


def get_validation_summary(result: ValidationResult) -> ValidationSummaryDict:
    """
    Get a summary of validation results

    Returns:
        Dictionary with error counts by category
    """
    summary: ValidationSummaryDict = {
        "valid": result.valid,
        "error_count": len(result.errors),
        "warning_count": len(result.warnings),
        "errors_by_code": {},
        "errors_by_element": {},
        "warnings_by_code": {},
    }

    for error in result.errors:
        summary["errors_by_code"][error.code] = summary["errors_by_code"].get(error.code, 0) + 1
        elem_id = error.element_id or "config"
        summary["errors_by_element"][elem_id] = summary["errors_by_element"].get(elem_id, 0) + 1

    for warning in result.warnings:
        summary["warnings_by_code"][warning.code] = summary["warnings_by_code"].get(warning.code, 0) + 1

    return summary
