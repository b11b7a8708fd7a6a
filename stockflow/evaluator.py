"""
Formula evaluator for the stock-and-flow simulation core
Parses formulas with a closed recursive-descent grammar and evaluates them
against a scope of named numbers plus a fixed set of math helpers
"""

from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Set, Tuple, Union
import logging
import math
import re

from stockflow.constants import (
    COMPARISON_OPERATORS,
    HELPER_NAMESPACE_PREFIX,
    LITERAL_NAMES,
    MATH_CONSTANTS,
    OPERATOR_TOKENS,
)
from stockflow.exceptions import EvaluationError

logger = logging.getLogger(__name__)


# ============================================================================
# Syntax Tree
# ============================================================================


class Number(NamedTuple):
    value: float


class Name(NamedTuple):
    name: str


class Unary(NamedTuple):
    op: str
    operand: "Node"


class Power(NamedTuple):
    base: "Node"
    exponent: "Node"


class Chain(NamedTuple):
    """Left-associative run of operators of equal precedence: a + b - c"""

    first: "Node"
    rest: Tuple[Tuple[str, "Node"], ...]


class Logical(NamedTuple):
    """Short-circuit run of && or ||"""

    op: str
    operands: Tuple["Node", ...]


class Conditional(NamedTuple):
    test: "Node"
    body: "Node"
    orelse: "Node"


class Call(NamedTuple):
    func: str
    args: Tuple["Node", ...]


Node = Union[Number, Name, Unary, Power, Chain, Logical, Conditional, Call]


# ============================================================================
# Tokenizer
# ============================================================================


class Token(NamedTuple):
    kind: str  # "number", "name", "op" or "end"
    value: str
    position: int


_NUMBER_RE = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_NAME_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")


def tokenize(formula: str) -> List[Token]:
    """
    Split a formula into tokens

    Args:
        formula: Formula text

    Returns:
        List of tokens terminated by an "end" token

    Raises:
        EvaluationError: On a character that cannot start any token
    """
    tokens: List[Token] = []
    pos = 0
    length = len(formula)

    while pos < length:
        char = formula[pos]
        if char.isspace():
            pos += 1
            continue

        match = _NUMBER_RE.match(formula, pos)
        if match:
            tokens.append(Token("number", match.group(), pos))
            pos = match.end()
            continue

        match = _NAME_RE.match(formula, pos)
        if match:
            name = match.group()
            end = match.end()
            # Fold Math.min into a single name token
            if name + "." == HELPER_NAMESPACE_PREFIX and end < length and formula[end] == ".":
                member = _NAME_RE.match(formula, end + 1)
                if member:
                    name = HELPER_NAMESPACE_PREFIX + member.group()
                    end = member.end()
            tokens.append(Token("name", name, pos))
            pos = end
            continue

        for op in OPERATOR_TOKENS:
            if formula.startswith(op, pos):
                tokens.append(Token("op", op, pos))
                pos += len(op)
                break
        else:
            raise EvaluationError(
                code="syntax_error",
                message=f"Unexpected character '{char}' at position {pos}",
                formula=formula,
            )

    tokens.append(Token("end", "", length))
    return tokens


# ============================================================================
# Parser
# ============================================================================


class FormulaParser:
    """
    Recursive-descent parser producing a syntax tree

    Precedence, lowest first: ?: , ||, &&, equality, relational,
    additive, multiplicative, unary, **, primary.
    """

    def __init__(self, formula: str, max_depth: int = 50):
        self.formula = formula
        self.tokens = tokenize(formula)
        self.index = 0
        self.depth = 0
        self.max_depth = max_depth

    def parse(self) -> Node:
        node = self._expression()
        token = self._peek()
        if token.kind != "end":
            self._fail(f"Unexpected '{token.value}' at position {token.position}")
        return node

    # --- token helpers ---

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *ops: str) -> Optional[str]:
        token = self._peek()
        if token.kind == "op" and token.value in ops:
            self.index += 1
            return token.value
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            token = self._peek()
            found = token.value or "end of formula"
            self._fail(f"Expected '{op}' but found '{found}' at position {token.position}")

    def _fail(self, message: str) -> None:
        raise EvaluationError(code="syntax_error", message=message, formula=self.formula)

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            raise EvaluationError(
                code="formula_too_complex",
                message=f"Formula nesting exceeds maximum depth of {self.max_depth}",
                formula=self.formula,
            )

    # --- grammar ---

    def _expression(self) -> Node:
        self._enter()
        try:
            return self._ternary()
        finally:
            self.depth -= 1

    def _ternary(self) -> Node:
        test = self._logical("||", self._and)
        if self._accept("?") is None:
            return test
        body = self._expression()
        self._expect(":")
        orelse = self._expression()
        return Conditional(test, body, orelse)

    def _and(self) -> Node:
        return self._logical("&&", self._equality)

    def _logical(self, op: str, operand: Callable[[], Node]) -> Node:
        operands = [operand()]
        while self._accept(op):
            operands.append(operand())
        if len(operands) == 1:
            return operands[0]
        return Logical(op, tuple(operands))

    def _equality(self) -> Node:
        return self._chain(("==", "!=", "===", "!=="), self._relational)

    def _relational(self) -> Node:
        return self._chain(("<", "<=", ">", ">="), self._additive)

    def _additive(self) -> Node:
        return self._chain(("+", "-"), self._multiplicative)

    def _multiplicative(self) -> Node:
        return self._chain(("*", "/", "%"), self._unary)

    def _chain(self, ops: Tuple[str, ...], operand: Callable[[], Node]) -> Node:
        first = operand()
        rest: List[Tuple[str, Node]] = []
        while True:
            op = self._accept(*ops)
            if op is None:
                break
            rest.append((op, operand()))
        if not rest:
            return first
        return Chain(first, tuple(rest))

    def _unary(self) -> Node:
        op = self._accept("-", "+", "!")
        if op is None:
            return self._power()
        self._enter()
        try:
            return Unary(op, self._unary())
        finally:
            self.depth -= 1

    def _power(self) -> Node:
        base = self._primary()
        if self._accept("**") is None:
            return base
        # Right-associative: 2 ** 3 ** 2 == 2 ** 9
        self._enter()
        try:
            return Power(base, self._unary())
        finally:
            self.depth -= 1

    def _primary(self) -> Node:
        token = self._advance()

        if token.kind == "number":
            return Number(float(token.value))

        if token.kind == "name":
            if self._accept("("):
                return Call(token.value, self._arguments())
            return Name(token.value)

        if token.kind == "op" and token.value == "(":
            node = self._expression()
            self._expect(")")
            return node

        if token.kind == "end":
            self._fail("Unexpected end of formula")
        self._fail(f"Unexpected '{token.value}' at position {token.position}")

    def _arguments(self) -> Tuple[Node, ...]:
        args: List[Node] = []
        if self._accept(")"):
            return tuple(args)
        while True:
            args.append(self._expression())
            if self._accept(")"):
                return tuple(args)
            self._expect(",")


# ============================================================================
# Helpers
# ============================================================================


def _js_round(x: float) -> float:
    """Round half toward positive infinity"""
    if not math.isfinite(x):
        return x
    return float(math.floor(x + 0.5))


def _min(*args: float) -> float:
    if any(math.isnan(a) for a in args):
        return math.nan
    return min(args)


def _max(*args: float) -> float:
    if any(math.isnan(a) for a in args):
        return math.nan
    return max(args)


def _clamp(lower: float, upper: float, value: float) -> float:
    return _min(_max(value, lower), upper)


def _is_odd_integer(x: float) -> bool:
    return math.isfinite(x) and x == math.floor(x) and x % 2 == 1


def _pow(base: float, exponent: float) -> float:
    """math.pow with IEEE results instead of ValueError / OverflowError"""
    try:
        return math.pow(base, exponent)
    except OverflowError:
        return -math.inf if base < 0 and _is_odd_integer(exponent) else math.inf
    except ValueError:
        if base == 0:
            # 0 ** negative
            return math.copysign(math.inf, base) if _is_odd_integer(exponent) else math.inf
        return math.nan


def _exp(x: float) -> float:
    try:
        return math.exp(x)
    except OverflowError:
        return math.inf


def _log(x: float) -> float:
    if x == 0:
        return -math.inf
    if x < 0 or math.isnan(x):
        return math.nan
    return math.log(x)


def _sqrt(x: float) -> float:
    return math.nan if x < 0 else math.sqrt(x)


def _sin(x: float) -> float:
    return math.sin(x) if math.isfinite(x) else math.nan


def _cos(x: float) -> float:
    return math.cos(x) if math.isfinite(x) else math.nan


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def _remainder(left: float, right: float) -> float:
    """% keeps the sign of the dividend"""
    if right == 0 or math.isinf(left):
        return math.nan
    return math.fmod(left, right)


def _truthy(value: float) -> bool:
    """NaN and 0 are false"""
    return value == value and value != 0


class Helper(NamedTuple):
    func: Callable[..., float]
    min_args: int
    max_args: Optional[int]  # None = variadic


HELPERS: Dict[str, Helper] = {
    "min": Helper(_min, 1, None),
    "max": Helper(_max, 1, None),
    "clamp": Helper(_clamp, 3, 3),
    "abs": Helper(abs, 1, 1),
    "round": Helper(_js_round, 1, 1),
    "sqrt": Helper(_sqrt, 1, 1),
    "pow": Helper(_pow, 2, 2),
    "exp": Helper(_exp, 1, 1),
    "log": Helper(_log, 1, 1),
    "sin": Helper(_sin, 1, 1),
    "cos": Helper(_cos, 1, 1),
}


def _strip_namespace(name: str) -> str:
    if name.startswith(HELPER_NAMESPACE_PREFIX):
        return name[len(HELPER_NAMESPACE_PREFIX):]
    return name


def _is_constant_name(name: str) -> bool:
    if name in LITERAL_NAMES:
        return True
    return name.startswith(HELPER_NAMESPACE_PREFIX) and _strip_namespace(name) in MATH_CONSTANTS


# ============================================================================
# Evaluator
# ============================================================================


DiagnosticSink = Callable[[EvaluationError], None]


class FormulaEvaluator:
    """
    Safely evaluate formulas against a scope of named values

    Supports:
    - Arithmetic (+, -, *, /, %, **)
    - Comparison (<, <=, >, >=, ==, !=) yielding 1.0 / 0.0
    - Logical operators (&&, ||, !) with short-circuiting
    - Ternary conditional (cond ? a : b)
    - Helpers: min, max, clamp(min, max, val), abs, round, sqrt, pow,
      exp, log, sin, cos (optionally spelled Math.min, ...)
    - Identifier lookups against the scope by exact name

    Arithmetic inside a formula follows IEEE rules (1 / 0 is inf, sqrt(-1)
    is nan, NaN is falsy), so min(cap, x / 0) is cap. Only a non-finite
    final result is replaced by 0.

    Nothing else is reachable from a formula: there is no attribute
    access, no assignment and no call outside the helper table.

    Instances cache parsed formulas and are meant to be owned by a single
    run; do not share one between threads.
    """

    def __init__(
        self,
        max_length: int = 2000,
        max_depth: int = 50,
        on_diagnostic: Optional[DiagnosticSink] = None,
    ):
        """
        Initialize evaluator

        Args:
            max_length: Longest accepted formula, in characters
            max_depth: Deepest accepted nesting
            on_diagnostic: Receives every non-quiet failure; when None,
                failures are logged as warnings
        """
        self.max_length = max_length
        self.max_depth = max_depth
        self.on_diagnostic = on_diagnostic
        self._tree_cache: Dict[str, Union[Node, EvaluationError]] = {}

    def clear_cache(self) -> None:
        """Clear the internal parse cache"""
        self._tree_cache.clear()

    def parse_formula(self, formula: str, element_id: Optional[str] = None) -> Node:
        """
        Parse formula string into a syntax tree, with caching

        Parse failures are cached too, so a broken formula is only
        tokenized once per evaluator.

        Raises:
            EvaluationError: If the formula is malformed or too large
        """
        formula = formula.strip()
        cached = self._tree_cache.get(formula)
        if cached is None:
            try:
                if len(formula) > self.max_length:
                    raise EvaluationError(
                        code="formula_too_long",
                        message=f"Formula exceeds maximum length of {self.max_length} characters",
                        formula=formula,
                    )
                cached = FormulaParser(formula, self.max_depth).parse()
            except EvaluationError as e:
                cached = e
            self._tree_cache[formula] = cached

        if isinstance(cached, EvaluationError):
            raise EvaluationError(
                code=cached.code,
                message=cached.message,
                element_id=element_id,
                formula=formula,
            )
        return cached

    def eval_node(
        self, node: Node, scope: Mapping[str, float], element_id: Optional[str] = None
    ) -> float:
        """
        Recursively evaluate a syntax tree node

        Raises:
            EvaluationError: If evaluation fails
        """
        if isinstance(node, Number):
            return node.value

        if isinstance(node, Name):
            return self._lookup(node.name, scope, element_id)

        if isinstance(node, Chain):
            return self._eval_chain(node, scope, element_id)

        if isinstance(node, Call):
            return self._eval_call(node, scope, element_id)

        if isinstance(node, Conditional):
            if _truthy(self.eval_node(node.test, scope, element_id)):
                return self.eval_node(node.body, scope, element_id)
            return self.eval_node(node.orelse, scope, element_id)

        if isinstance(node, Logical):
            return self._eval_logical(node, scope, element_id)

        if isinstance(node, Unary):
            operand = self.eval_node(node.operand, scope, element_id)
            if node.op == "-":
                return -operand
            if node.op == "!":
                return 0.0 if _truthy(operand) else 1.0
            return operand

        if isinstance(node, Power):
            base = self.eval_node(node.base, scope, element_id)
            exponent = self.eval_node(node.exponent, scope, element_id)
            return _pow(base, exponent)

        raise EvaluationError(
            code="unsupported_node_type",
            message=f"Unsupported expression type: {type(node).__name__}",
            element_id=element_id,
        )

    def _lookup(self, name: str, scope: Mapping[str, float], element_id: Optional[str]) -> float:
        """Resolve an identifier"""
        if name in scope:
            return float(scope[name])
        if name in LITERAL_NAMES:
            return LITERAL_NAMES[name]
        if name.startswith(HELPER_NAMESPACE_PREFIX):
            constant = _strip_namespace(name)
            if constant in MATH_CONSTANTS:
                return MATH_CONSTANTS[constant]
        raise EvaluationError(
            code="undefined_variable",
            message=f"Undefined variable: {name}",
            element_id=element_id,
            details={"name": name},
        )

    def _eval_chain(self, node: Chain, scope: Mapping[str, float], element_id: Optional[str]) -> float:
        """Evaluate a left-associative operator chain"""
        left = self.eval_node(node.first, scope, element_id)
        for op, operand in node.rest:
            right = self.eval_node(operand, scope, element_id)
            if op in COMPARISON_OPERATORS:
                left = 1.0 if _compare(op, left, right) else 0.0
            elif op == "+":
                left = left + right
            elif op == "-":
                left = left - right
            elif op == "*":
                left = left * right
            elif op == "/":
                left = _divide(left, right)
            else:
                left = _remainder(left, right)
        return left

    def _eval_logical(self, node: Logical, scope: Mapping[str, float], element_id: Optional[str]) -> float:
        """Evaluate && / || with short-circuiting; yields the deciding operand"""
        value = 0.0
        for operand in node.operands:
            value = self.eval_node(operand, scope, element_id)
            if node.op == "&&" and not _truthy(value):
                return value
            if node.op == "||" and _truthy(value):
                return value
        return value

    def _eval_call(self, node: Call, scope: Mapping[str, float], element_id: Optional[str]) -> float:
        """Evaluate a helper call"""
        func_name = _strip_namespace(node.func)
        helper = HELPERS.get(func_name)
        if helper is None:
            raise EvaluationError(
                code="function_not_allowed",
                message=(
                    f"Function not allowed: {node.func}. "
                    f"Allowed functions: {', '.join(sorted(HELPERS))}"
                ),
                element_id=element_id,
            )

        count = len(node.args)
        if count < helper.min_args or (helper.max_args is not None and count > helper.max_args):
            expected = (
                f"at least {helper.min_args}"
                if helper.max_args is None
                else str(helper.min_args)
            )
            raise EvaluationError(
                code="invalid_function_args",
                message=f"{func_name} expects {expected} argument(s), got {count}",
                element_id=element_id,
            )

        args = tuple(self.eval_node(arg, scope, element_id) for arg in node.args)
        return float(helper.func(*args))

    def evaluate_strict(
        self,
        formula: str,
        scope: Mapping[str, float],
        element_id: Optional[str] = None,
    ) -> float:
        """
        Evaluate formula and raise on any failure

        Args:
            formula: Formula string
            scope: Named values visible to the formula
            element_id: Optional element ID for error reporting

        Returns:
            Evaluated numeric result, possibly non-finite

        Raises:
            EvaluationError: If parsing or evaluation fails
        """
        if not formula or formula.strip() == "":
            return 0.0

        tree = self.parse_formula(formula, element_id)
        try:
            return float(self.eval_node(tree, scope, element_id))
        except EvaluationError as e:
            e.formula = e.formula or formula.strip()
            e.element_id = e.element_id or element_id
            raise
        except (ArithmeticError, RecursionError, TypeError, ValueError) as e:
            raise EvaluationError(
                code="evaluation_error",
                message=f"Error evaluating '{formula}': {str(e)}",
                element_id=element_id,
                formula=formula,
            ) from e

    def evaluate(
        self,
        formula: str,
        scope: Mapping[str, float],
        element_id: Optional[str] = None,
        quiet: bool = False,
    ) -> float:
        """
        Evaluate formula, degrading every failure to 0

        Args:
            formula: Formula string
            scope: Named values visible to the formula (not modified)
            element_id: Optional element ID for diagnostics
            quiet: Suppress the diagnostic (used during warm-up passes)

        Returns:
            Finite numeric result; 0.0 on any failure or non-finite value
        """
        try:
            result = self.evaluate_strict(formula, scope, element_id)
        except EvaluationError as e:
            if not quiet:
                self._report(e)
            return 0.0

        if not math.isfinite(result):
            if not quiet:
                self._report(
                    EvaluationError(
                        code="non_finite_result",
                        message=f"Formula produced a non-finite value ({result})",
                        element_id=element_id,
                        formula=formula.strip(),
                    )
                )
            return 0.0
        return result

    def _report(self, error: EvaluationError) -> None:
        if self.on_diagnostic is not None:
            self.on_diagnostic(error)
        else:
            logger.warning(f"Formula evaluation failed: {error}", extra={"code": error.code})


def _compare(op: str, left: float, right: float) -> bool:
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    if op == ">=":
        return left >= right
    if op in ("==", "==="):
        return left == right
    return left != right


def evaluate(formula: str, scope: Mapping[str, float]) -> float:
    """
    Evaluate one formula against a scope with a throwaway evaluator

    Never raises; failures are logged and yield 0.
    """
    return FormulaEvaluator().evaluate(formula, scope)


# ============================================================================
# Reference Extraction
# ============================================================================


def extract_variable_references(node: Node) -> Set[str]:
    """
    Extract all identifiers referenced in a syntax tree

    Helper names in call position, literals and Math.* constants are
    excluded.

    Args:
        node: Syntax tree to analyze

    Returns:
        Set of identifiers referenced
    """
    variables: Set[str] = set()
    _walk(node, variables, None)
    return variables


def extract_function_calls(node: Node) -> Set[str]:
    """Extract the names of every function called in a syntax tree"""
    calls: Set[str] = set()
    _walk(node, None, calls)
    return calls


def _walk(node: Node, variables: Optional[Set[str]], calls: Optional[Set[str]]) -> None:
    """Recursive helper for reference extraction"""
    if isinstance(node, Name):
        if variables is not None and not _is_constant_name(node.name):
            variables.add(node.name)
    elif isinstance(node, Call):
        if calls is not None:
            calls.add(node.func)
        for arg in node.args:
            _walk(arg, variables, calls)
    elif isinstance(node, Chain):
        _walk(node.first, variables, calls)
        for _, operand in node.rest:
            _walk(operand, variables, calls)
    elif isinstance(node, Logical):
        for operand in node.operands:
            _walk(operand, variables, calls)
    elif isinstance(node, Conditional):
        _walk(node.test, variables, calls)
        _walk(node.body, variables, calls)
        _walk(node.orelse, variables, calls)
    elif isinstance(node, Unary):
        _walk(node.operand, variables, calls)
    elif isinstance(node, Power):
        _walk(node.base, variables, calls)
        _walk(node.exponent, variables, calls)


def formula_references(formula: str, evaluator: Optional[FormulaEvaluator] = None) -> Set[str]:
    """
    Identifiers referenced by a formula string

    Unparseable formulas reference nothing.
    """
    if not formula or not formula.strip():
        return set()
    evaluator = evaluator or FormulaEvaluator()
    try:
        return extract_variable_references(evaluator.parse_formula(formula))
    except EvaluationError:
        return set()
