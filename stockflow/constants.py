"""
Shared constants for the stock-and-flow simulation core
Centralizes names and limits so the validator and evaluator agree
"""

import math

# ============================================================================
# Built-in Variables
# ============================================================================

# Reserved scope key holding the current simulated instant
TIME_KEY = "time"

BUILT_IN_VARIABLES = {TIME_KEY}

# ============================================================================
# Helper Functions
# ============================================================================

# Function names allowed in formulas
# This set is used by the validator to check formula safety
HELPER_FUNCTION_NAMES = {
    "min",
    "max",
    "clamp",
    "abs",
    "round",
    "sqrt",
    "pow",
    "exp",
    "log",
    "sin",
    "cos",
}

# Helpers may also be written with a Math. prefix, e.g. Math.min(a, b)
HELPER_NAMESPACE_PREFIX = "Math."

# Literal names recognised by the parser
LITERAL_NAMES = {
    "true": 1.0,
    "false": 0.0,
}

# Constants only reachable through the Math. prefix (Math.PI), never as bare names
MATH_CONSTANTS = {
    "PI": math.pi,
    "E": math.e,
}

# ============================================================================
# Operators
# ============================================================================

# Multi-character tokens must be listed before their single-character prefixes
OPERATOR_TOKENS = (
    "===",
    "!==",
    "**",
    "==",
    "!=",
    "<=",
    ">=",
    "&&",
    "||",
    "+",
    "-",
    "*",
    "/",
    "%",
    "<",
    ">",
    "!",
    "?",
    ":",
    "(",
    ")",
    ",",
)

COMPARISON_OPERATORS = {"<", "<=", ">", ">=", "==", "!=", "===", "!=="}

# ============================================================================
# Model Element Kinds
# ============================================================================

VALID_LINK_POLARITIES = {"+", "-"}

# ============================================================================
# Simulation Limits
# ============================================================================

# Number of fixed-point passes over converters and flows per tick
DEFAULT_RESOLVER_PASSES = 3

VALID_RESOLUTION_MODES = {"passes", "ordered"}

# Stock magnitude beyond which a run is declared unstable
DIVERGENCE_THRESHOLD = 1e12

DIVERGENCE_MESSAGE = "Numerical instability detected. Check feedback gains."

# Tolerance used when snapping the last grid point onto the end time
TIME_GRID_TOLERANCE = 1e-9

MAX_SIMULATION_STEPS = 1_000_000

# Multiplicative spread of each sensitivity perturbation (+/-5%)
DEFAULT_PERTURBATION_SPREAD = 0.05

DEFAULT_BATCH_TRIALS = 10
