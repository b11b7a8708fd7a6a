"""
FastAPI application and endpoints for the stock-and-flow simulation service
Includes CORS, request IDs, request size limits, and structured error handling
"""

# Standard library imports
import asyncio
import traceback
from typing import Any, Dict

# Third-party imports
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Local application imports
from stockflow.config import get_settings
from stockflow.exceptions import EvaluationError, ModelStructureError, SimulationError
from stockflow.models import (
    BatchRequest,
    BatchResult,
    ModelDocument,
    SimulationOutput,
    SimulationRequest,
    ValidationResponse,
)
from stockflow.sensitivity import SensitivityBatchRunner
from stockflow.simulation import run_simulation
from stockflow.templates import get_template, list_templates
from stockflow.types import ErrorResponseDict
from stockflow.utils.logging_config import (
    get_logger,
    set_request_id,
    setup_logging_from_settings,
)
from stockflow.utils.model_utils import apply_parameter_values, parse_model_document
from stockflow.validation import get_validation_summary, validate_model

logger = get_logger(__name__)

# Get configuration
settings = get_settings()

setup_logging_from_settings(settings)

app = FastAPI(
    title="Stock-and-Flow Simulation API",
    version="1.0.0",
    description="Deterministic stock-and-flow simulation with sensitivity batches",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configuration constants (from settings)
MAX_REQUEST_SIZE = settings.max_request_size
SIMULATION_TIMEOUT = settings.simulation_timeout


def check_request_size(request: Request) -> None:
    """Check if request size exceeds limit"""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        size = int(content_length)
        if size > MAX_REQUEST_SIZE:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Request size ({size} bytes) exceeds maximum ({MAX_REQUEST_SIZE} bytes)",
            )


def check_run_size(model: ModelDocument) -> None:
    """
    Reject time windows that would produce too many ticks

    Raises:
        HTTPException: If the tick count exceeds max_simulation_steps
    """
    steps = model.simulation_config.get_num_steps()
    if steps > settings.max_simulation_steps:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Simulation would require {steps} ticks, exceeding maximum of "
                f"{settings.max_simulation_steps:,}. Increase dt or reduce the time range."
            ),
        )


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Middleware to add request ID to all requests"""
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def request_size_middleware(request: Request, call_next):
    """Middleware to check request size"""
    try:
        check_request_size(request)
    except HTTPException as exc:
        # Middleware runs outside the exception handlers
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": f"http_{exc.status_code}",
                "message": exc.detail,
                "details": {"status_code": exc.status_code},
            },
        )
    return await call_next(request)


def add_debug_info(error_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Add debug information (traceback) to error dict if DEBUG mode is enabled

    Args:
        error_dict: Error dictionary to add debug info to

    Returns:
        Modified error dictionary with debug info if enabled
    """
    if settings.debug:
        details = error_dict.get("details") or {}
        details.setdefault("traceback", traceback.format_exc())
        error_dict["details"] = details
    return error_dict


@app.exception_handler(ModelStructureError)
async def model_structure_error_handler(request: Request, exc: ModelStructureError):
    """Handle unreadable model documents"""
    logger.warning(f"Rejected model document: {exc.message}", extra={"code": exc.code})
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=add_debug_info(exc.to_dict()),
    )


@app.exception_handler(SimulationError)
async def simulation_error_handler(request: Request, exc: SimulationError):
    """Handle simulation errors with structured format"""
    logger.error(f"Simulation error: {exc.message}", extra={"code": exc.code})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=add_debug_info(exc.to_dict()),
    )


@app.exception_handler(EvaluationError)
async def evaluation_error_handler(request: Request, exc: EvaluationError):
    """Handle evaluation errors with structured format"""
    logger.error(f"Evaluation error: {exc.message}", extra={"code": exc.code})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=add_debug_info(exc.to_dict()),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors with structured format"""
    logger.warning(f"Validation error: {exc.errors()}")

    error_messages = []
    for error in exc.errors():
        loc = " -> ".join(str(x) for x in error.get("loc", []))
        msg = error.get("msg", "Validation error")
        error_messages.append(f"{loc}: {msg}")

    error_response: ErrorResponseDict = {
        "code": "validation_error",
        "message": "; ".join(error_messages),
        "details": {
            "errors": [
                {"loc": list(error.get("loc", [])), "msg": error.get("msg"), "type": error.get("type")}
                for error in exc.errors()
            ],
        },
    }

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=add_debug_info(error_response),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with structured format"""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    error_response: ErrorResponseDict = {
        "code": f"http_{exc.status_code}",
        "message": exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        "details": {
            "status_code": exc.status_code,
        },
    }

    return JSONResponse(status_code=exc.status_code, content=add_debug_info(error_response))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions with structured format"""
    logger.exception("Unhandled exception", exc_info=exc)

    error_response: ErrorResponseDict = {
        "code": "internal_error",
        "message": str(exc) if settings.debug else "An internal error occurred",
        "details": {
            "exception_type": type(exc).__name__,
        },
    }

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=add_debug_info(error_response),
    )


@app.get("/")
def read_root():
    """Root endpoint with API information"""
    logger.info("Root endpoint accessed")
    return {
        "message": "Stock-and-Flow Simulation API",
        "version": "1.0.0",
        "endpoints": {
            "simulate": "/simulate",
            "simulate_batch": "/simulate/batch",
            "validate": "/validate",
            "health": "/health",
            "templates": "/templates",
            "template": "/templates/{id}",
        },
    }


@app.get("/health")
def health_check():
    """Health check endpoint"""
    logger.debug("Health check requested")
    return {"status": "healthy"}


@app.post("/simulate", response_model=SimulationOutput)
async def simulate(request: SimulationRequest):
    """
    Run one simulation

    Divergence is not an HTTP error: the response carries is_stable=false,
    the instability message and every tick produced before it.
    """
    model = apply_parameter_values(request.model, request.parameter_values)
    config = model.simulation_config
    logger.info(
        f"Simulation request received: time_range=[{config.start}, {config.end}], dt={config.dt}, "
        f"stocks={len(model.stocks)}, flows={len(model.flows)}, converters={len(model.converters)}"
    )

    check_run_size(model)

    try:
        output = await asyncio.wait_for(
            asyncio.to_thread(run_simulation, model, request.perturbations),
            timeout=SIMULATION_TIMEOUT,
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            detail=(
                f"Simulation exceeded timeout of {SIMULATION_TIMEOUT} seconds. "
                f"Consider reducing the time range or increasing dt."
            ),
        )

    if output.is_stable:
        logger.info(f"Simulation completed: {len(output.results)} ticks")
    else:
        logger.warning(f"Simulation unstable after {len(output.results)} ticks: {output.error}")
    return output


@app.post("/simulate/batch", response_model=BatchResult)
async def simulate_batch(request: BatchRequest):
    """
    Run a sensitivity batch of perturbed trials

    Diverged trials are dropped; the response counts them in `discarded`.
    """
    logger.info(
        f"Batch request received: trials={request.trial_count}, seed={request.seed}"
    )

    if request.trial_count > settings.max_batch_trials:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Batch of {request.trial_count} trials exceeds maximum of "
                f"{settings.max_batch_trials}"
            ),
        )
    model = apply_parameter_values(request.model, request.parameter_values)
    check_run_size(model)

    runner = SensitivityBatchRunner(
        model,
        trial_count=request.trial_count,
        seed=request.seed,
        max_workers=settings.batch_max_workers,
    )

    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(runner.run),
            timeout=SIMULATION_TIMEOUT,
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            detail=(
                f"Batch exceeded timeout of {SIMULATION_TIMEOUT} seconds. "
                f"Consider fewer trials or a shorter time range."
            ),
        )

    return result


@app.post("/validate", response_model=ValidationResponse)
async def validate_model_endpoint(request: Request):
    """
    Validate a model without running simulation

    The body is the model document itself. Documents that cannot be read
    as a model at all are rejected with 422; everything else gets a
    structured list of errors and warnings.
    """
    model = parse_model_document(await request.body())
    logger.info(
        f"Validation request received: parameters={len(model.parameters)}, "
        f"stocks={len(model.stocks)}, flows={len(model.flows)}, "
        f"converters={len(model.converters)}, links={len(model.links)}"
    )

    result = validate_model(model)

    summary = get_validation_summary(result)
    summary.update(
        {
            "parameters": len(model.parameters),
            "stocks": len(model.stocks),
            "flows": len(model.flows),
            "converters": len(model.converters),
            "links": len(model.links),
        }
    )

    if result.valid:
        logger.info(f"Validation passed with {len(result.warnings)} warning(s)")
    else:
        logger.warning(f"Validation failed: {len(result.errors)} errors found")

    return ValidationResponse(
        valid=result.valid,
        errors=result.errors,
        warnings=result.warnings,
        summary=summary,
    )


@app.get("/templates")
def templates_index():
    """List built-in model templates"""
    templates = list_templates()
    logger.info(f"Listed {len(templates)} templates")
    return {"templates": templates}


@app.get("/templates/{template_id}")
def template_detail(template_id: str):
    """Load a built-in model template in its camelCase wire form"""
    try:
        model = get_template(template_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Template not found: {template_id}",
        )

    logger.info(f"Loaded template: {template_id}")
    return model.model_dump(by_alias=True, exclude_none=True)
