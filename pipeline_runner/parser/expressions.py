"""
Expressions
===========
Evaluates the ``${{ ... }}`` expression dialect used in pipeline files.

Supported:
    - Literals: 'single quoted strings' ('' escapes a quote), numbers,
      true, false, null
    - References: dotted paths such as trigger.branch, github.ref, env.NAME,
      secrets.NAME, needs.build.result, run.id
    - Operators (lowest to highest precedence): ||, &&, == / !=, !
    - Parentheses
    - Functions: success(), failure(), always(), cancelled(),
      contains(a, b), startsWith(a, b), endsWith(a, b)

Semantics follow GitHub Actions where it matters for gating:
    - String comparison is case-insensitive.
    - A condition that calls no status function is implicitly
      ``success() && (<condition>)``.
    - An empty condition means ``success()``.

Deterministic: same expression + same context → same result.
"""
import re
from functools import lru_cache
from typing import Any, Callable, Mapping, Optional

from pipeline_runner.core.errors import ExpressionError, MissingSecretError

_TOKEN_RE = re.compile(
    r"""
    (?P<string>'(?:[^']|'')*')
    |(?P<number>\d+(?:\.\d+)?)
    |(?P<op>==|!=|&&|\|\||!|\(|\)|,)
    |(?P<ident>[A-Za-z_][\w\-]*(?:\.[A-Za-z_][\w\-]*)*)
    """,
    re.VERBOSE,
)

_INTERPOLATION_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
_VALUE_FUNCTIONS = frozenset({"contains", "startswith", "endswith"})

_LITERALS = {"true": True, "false": False, "null": None}


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------
def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    length = len(expression)
    while pos < length:
        if expression[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(expression, pos)
        if not match:
            raise ExpressionError(
                f"Unexpected character {expression[pos]!r} at position {pos} in '{expression}'"
            )
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


# ---------------------------------------------------------------------------
# Parser (recursive descent → tuple AST)
# ---------------------------------------------------------------------------
class _Parser:
    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    def _peek(self) -> Optional[tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise ExpressionError(f"Unexpected end of expression '{self.expression}'")
        self.pos += 1
        return token

    def _accept_op(self, op: str) -> bool:
        token = self._peek()
        if token == ("op", op):
            self.pos += 1
            return True
        return False

    def _expect_op(self, op: str) -> None:
        if not self._accept_op(op):
            found = self._peek()
            raise ExpressionError(
                f"Expected '{op}' but found {found[1] if found else 'end'!r} in '{self.expression}'"
            )

    def parse(self) -> tuple:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self._or()
        if self._peek() is not None:
            raise ExpressionError(
                f"Unexpected token {self._peek()[1]!r} in '{self.expression}'"
            )
        return node

    def _or(self) -> tuple:
        node = self._and()
        while self._accept_op("||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._equality()
        while self._accept_op("&&"):
            node = ("and", node, self._equality())
        return node

    def _equality(self) -> tuple:
        node = self._unary()
        while True:
            if self._accept_op("=="):
                node = ("eq", node, self._unary())
            elif self._accept_op("!="):
                node = ("ne", node, self._unary())
            else:
                return node

    def _unary(self) -> tuple:
        if self._accept_op("!"):
            return ("not", self._unary())
        return self._primary()

    def _primary(self) -> tuple:
        kind, value = self._take()
        if kind == "string":
            return ("lit", value[1:-1].replace("''", "'"))
        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "op" and value == "(":
            node = self._or()
            self._expect_op(")")
            return node
        if kind == "ident":
            lowered = value.lower()
            if lowered in _LITERALS:
                return ("lit", _LITERALS[lowered])
            if self._accept_op("("):
                return self._call(value)
            return ("ref", tuple(value.split(".")))
        raise ExpressionError(f"Unexpected token {value!r} in '{self.expression}'")

    def _call(self, name: str) -> tuple:
        lowered = name.lower()
        if lowered not in STATUS_FUNCTIONS and lowered not in _VALUE_FUNCTIONS:
            raise ExpressionError(f"Unknown function '{name}()' in '{self.expression}'")
        args: list[tuple] = []
        if not self._accept_op(")"):
            args.append(self._or())
            while self._accept_op(","):
                args.append(self._or())
            self._expect_op(")")
        expected = 0 if lowered in STATUS_FUNCTIONS else 2
        if len(args) != expected:
            raise ExpressionError(
                f"{name}() takes {expected} argument(s), got {len(args)} in '{self.expression}'"
            )
        return ("call", lowered, tuple(args))


@lru_cache(maxsize=512)
def parse_expression(expression: str) -> tuple:
    """Parse an expression into a tuple AST. Raises ExpressionError."""
    return _Parser(expression).parse()


def strip_wrapper(expression: str) -> str:
    """Remove an optional ${{ }} wrapper around a condition."""
    text = expression.strip()
    match = _INTERPOLATION_RE.fullmatch(text)
    if match:
        return match.group(1).strip()
    return text


def uses_status_function(node: tuple) -> bool:
    kind = node[0]
    if kind == "call":
        return node[1] in STATUS_FUNCTIONS or any(uses_status_function(a) for a in node[2])
    if kind in ("and", "or", "eq", "ne"):
        return uses_status_function(node[1]) or uses_status_function(node[2])
    if kind == "not":
        return uses_status_function(node[1])
    return False


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
class ExpressionContext:
    """
    Values and status callbacks an expression is evaluated against.

    Parameters
    ----------
    values : Mapping
        Nested mapping addressed by dotted references (e.g. {"trigger": {...}}).
    status_functions : Mapping[str, Callable[[], bool]]
        Overrides for success() / failure() / always() / cancelled().
    strict_secrets : bool
        If True, a missing secrets.NAME raises MissingSecretError instead of
        rendering as an empty string.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        status_functions: Optional[Mapping[str, Callable[[], bool]]] = None,
        strict_secrets: bool = True,
    ) -> None:
        self.values = dict(values or {})
        self.status_functions = {
            "success": lambda: True,
            "failure": lambda: False,
            "always": lambda: True,
            "cancelled": lambda: False,
        }
        if status_functions:
            self.status_functions.update(status_functions)
        self.strict_secrets = strict_secrets

    def resolve(self, path: tuple[str, ...]) -> Any:
        current: Any = self.values
        for part in path:
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            else:
                if self.strict_secrets and path[0] == "secrets" and len(path) == 2:
                    raise MissingSecretError(path[1])
                return None
        return current


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _normalise(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).lower()


def _evaluate(node: tuple, ctx: ExpressionContext) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "ref":
        return ctx.resolve(node[1])
    if kind == "not":
        return not _truthy(_evaluate(node[1], ctx))
    if kind == "and":
        left = _evaluate(node[1], ctx)
        return _evaluate(node[2], ctx) if _truthy(left) else left
    if kind == "or":
        left = _evaluate(node[1], ctx)
        return left if _truthy(left) else _evaluate(node[2], ctx)
    if kind == "eq":
        return _normalise(_evaluate(node[1], ctx)) == _normalise(_evaluate(node[2], ctx))
    if kind == "ne":
        return _normalise(_evaluate(node[1], ctx)) != _normalise(_evaluate(node[2], ctx))
    if kind == "call":
        name, args = node[1], node[2]
        if name in STATUS_FUNCTIONS:
            return bool(ctx.status_functions[name]())
        haystack = _evaluate(args[0], ctx)
        needle = _normalise(_evaluate(args[1], ctx))
        if name == "contains":
            if isinstance(haystack, (list, tuple, set)):
                return any(_normalise(item) == needle for item in haystack)
            return needle in _normalise(haystack)
        if name == "startswith":
            return _normalise(haystack).startswith(needle)
        return _normalise(haystack).endswith(needle)
    raise ExpressionError(f"Unknown expression node: {kind}")


def evaluate(expression: str, context: ExpressionContext) -> Any:
    """Evaluate a bare expression (no ${{ }} wrapper) and return its value."""
    return _evaluate(parse_expression(expression), context)


def validate_condition(condition: Optional[str]) -> None:
    """Parse a condition only to surface syntax errors at load time."""
    if condition and str(condition).strip():
        parse_expression(strip_wrapper(str(condition)))


def validate_interpolations(text: Optional[str]) -> None:
    """Parse every ${{ }} placeholder in *text*. Raises ExpressionError."""
    for match in _INTERPOLATION_RE.finditer(text or ""):
        parse_expression(match.group(1))


def evaluate_condition(condition: Optional[str], context: ExpressionContext) -> bool:
    """
    Evaluate an ``if:`` condition.

    Empty → success(). A condition without any status function is
    combined with success() the way GitHub Actions does it.
    """
    if condition is None or not str(condition).strip():
        return bool(context.status_functions["success"]())

    node = parse_expression(strip_wrapper(str(condition)))
    if not uses_status_function(node):
        node = ("and", ("call", "success", ()), node)
    return _truthy(_evaluate(node, context))


def render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate(text: str, context: ExpressionContext) -> str:
    """Replace every ${{ expr }} in *text* with its rendered value."""
    if "${{" not in text:
        return text
    return _INTERPOLATION_RE.sub(
        lambda m: render_value(evaluate(m.group(1), context)),
        text,
    )


def find_references(text: str, root: str) -> set[str]:
    """Return the second path segment of every <root>.<name> reference in *text*."""
    names: set[str] = set()
    for match in _INTERPOLATION_RE.finditer(text or ""):
        for kind, value in _tokenize(match.group(1)):
            if kind != "ident":
                continue
            parts = value.split(".")
            if len(parts) >= 2 and parts[0] == root:
                names.add(parts[1])
    return names
