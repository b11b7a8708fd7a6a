"""
Utility functions for model ingestion and manipulation
The ingestion boundary turns untrusted JSON into a ModelDocument
"""

import json
from typing import Any, Dict, Union

from pydantic import ValidationError as PydanticValidationError

from stockflow.exceptions import ModelStructureError
from stockflow.models import ModelDocument


def parse_model_document(source: Union[str, bytes, Dict[str, Any]]) -> ModelDocument:
    """
    Parse and structurally validate a model document

    Accepts the camelCase wire form (initialValue, sourceId, ...) as well as
    snake_case field names. Formulas are not checked here; broken formulas
    are tolerated by the core and reported by validation.

    Args:
        source: JSON text or an already decoded mapping

    Returns:
        Parsed ModelDocument

    Raises:
        ModelStructureError: If the input is not JSON, not an object, or
            does not match the document schema
    """
    if isinstance(source, (str, bytes)):
        try:
            data = json.loads(source)
        except ValueError as e:
            raise ModelStructureError(
                f"Model document is not valid JSON: {e}",
                details={"position": getattr(e, "pos", None)},
            ) from e
    else:
        data = source

    if not isinstance(data, dict):
        raise ModelStructureError(
            f"Model document must be a JSON object, got {type(data).__name__}"
        )

    try:
        return ModelDocument.model_validate(data)
    except PydanticValidationError as e:
        raise ModelStructureError(
            f"Model document does not match the expected structure ({e.error_count()} error(s))",
            details={
                "errors": [
                    {
                        "field": ".".join(str(loc) for loc in err["loc"]),
                        "message": err["msg"],
                        "type": err["type"],
                    }
                    for err in e.errors()
                ]
            },
        ) from e


def apply_parameter_values(
    model: ModelDocument,
    parameter_values: Dict[str, float],
) -> ModelDocument:
    """
    Create a copy of the model with updated parameter values.

    Used when a caller wants absolute values rather than multiplicative
    perturbations. The original document is left untouched; unknown ids
    are ignored.

    Args:
        model: Original model document
        parameter_values: Dictionary mapping parameter ids to new values

    Returns:
        New ModelDocument with the overridden parameter values

    Example:
        >>> model = ModelDocument(parameters=[Parameter(id="rate", value=0.1)])
        >>> apply_parameter_values(model, {"rate": 0.2}).parameters[0].value
        0.2
    """
    parameters = [
        param.model_copy(update={"value": float(parameter_values[param.id])})
        if param.id in parameter_values
        else param
        for param in model.parameters
    ]
    return model.model_copy(update={"parameters": parameters})
