"""Expression evaluation for playbook node configuration.

Expressions use Jinja2 expression syntax evaluated in an immutable sandbox:
member access with ``.``, comparison and boolean operators (``==``, ``and``,
``not``...), arithmetic, string concatenation with ``~`` and the built-in
functions ``len``, ``sprintf``, ``contains``, ``filter``, ``map``, ``now``,
``to_table_markdown`` and ``to_table_html``.

Variable roots:
- ``incident``: incident record supplied by the trigger
- ``steps``: ``steps.<nodeId>.status|output|error`` of completed nodes
- ``env``: the whole trigger payload

Accessing an absent key yields ``None`` instead of failing. Arithmetic
coerces numeric strings; any other operand mix raises
``EvalError(TYPE_MISMATCH)``.

Config string values follow one templating rule:
- no ``{{ ... }}`` placeholder: literal text
- exactly one placeholder spanning the whole value: the typed value of the
  expression (a dict stays a dict, a number stays a number)
- anything else: a text template; each placeholder is rendered to text
  (``None`` as empty, booleans as ``true``/``false``, collections as JSON)
"""

import json
import logging
import operator
import re
import threading
from collections import OrderedDict
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from jinja2 import ChainableUndefined, Template, Undefined, nodes, pass_context
from jinja2.exceptions import SecurityError, TemplateSyntaxError, UndefinedError
from jinja2.parser import Parser
from jinja2.sandbox import ImmutableSandboxedEnvironment

from .exceptions import EvalError, EvalErrorKind

logger = logging.getLogger(__name__)

VARIABLE_ROOTS = ("incident", "steps", "env")

_WHOLE_PLACEHOLDER = re.compile(r"^\s*\{\{(?P<expr>.*)\}\}\s*$", re.DOTALL)

_ARITHMETIC = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "//": operator.floordiv,
    "%": operator.mod,
    "**": operator.pow,
}


def _mismatch(message: str) -> EvalError:
    return EvalError(EvalErrorKind.TYPE_MISMATCH, message)


def _to_number(value: Any, op: str) -> Any:
    if isinstance(value, bool) or value is None or isinstance(value, Undefined):
        raise _mismatch(f"operator '{op}' does not accept {_type_name(value)}")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            raise _mismatch(f"operator '{op}' received non-numeric string {value!r}")
    raise _mismatch(f"operator '{op}' does not accept {_type_name(value)}")


def _type_name(value: Any) -> str:
    if value is None or isinstance(value, Undefined):
        return "nil"
    return type(value).__name__


def coerce_bool(value: Any) -> bool:
    """Coerce an expression result to a boolean.

    ``None`` is ``False`` so that a condition on a missing field never
    matches.
    """
    if value is None or isinstance(value, Undefined):
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    raise _mismatch(f"cannot use {_type_name(value)} as a boolean")


def to_serializable(value: Any) -> Any:
    """Convert an expression result into JSON-compatible data."""
    if value is None or isinstance(value, Undefined):
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_serializable(v) for v in value]
    return value


def _to_text(value: Any) -> Any:
    """Finalize hook used when rendering text templates."""
    if value is None or isinstance(value, Undefined):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(to_serializable(value), default=str)
    return value


class _PlaybookEnvironment(ImmutableSandboxedEnvironment):
    """Sandbox with mapping-first member access and strict arithmetic."""

    intercepted_binops = frozenset(_ARITHMETIC)

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, Mapping):
            if attribute in obj:
                return obj[attribute]
            return self.undefined(obj=obj, name=attribute)
        return super().getattr(obj, attribute)

    def call_binop(self, context: Any, operator: str, left: Any, right: Any) -> Any:
        if operator == "+":
            if isinstance(left, str) and isinstance(right, str):
                return left + right
            if isinstance(left, list) and isinstance(right, list):
                return left + right
        func = _ARITHMETIC[operator]
        try:
            return func(_to_number(left, operator), _to_number(right, operator))
        except ZeroDivisionError:
            raise _mismatch("division by zero")
        except OverflowError as e:
            raise _mismatch(f"numeric overflow in '{operator}': {e}")


class ExpressionEvaluator:
    """Compiles and evaluates expressions against an execution context.

    Compiled expressions are cached by source string; compilation is pure so
    the cache is shared safely between concurrent executions.
    """

    def __init__(self, cache_size: int = 512):
        self._environment = _PlaybookEnvironment(
            undefined=ChainableUndefined,
            finalize=_to_text,
            autoescape=False,
        )
        self._environment.globals.update(self._builtins())
        self._cache_size = cache_size
        self._expressions: "OrderedDict[str, Callable[..., Any]]" = OrderedDict()
        self._templates: "OrderedDict[str, Template]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def function_names(self) -> List[str]:
        return sorted(self._environment.globals)

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    @staticmethod
    def unwrap(source: str) -> str:
        """Strip surrounding whitespace and an optional ``{{ }}`` wrapper."""
        source = (source or "").strip()
        match = _WHOLE_PLACEHOLDER.match(source)
        if match and "{{" not in match.group("expr") and "}}" not in match.group("expr"):
            return match.group("expr").strip()
        return source

    def compile(self, source: str) -> Callable[..., Any]:
        """Compile an expression, reusing the cached form when present.

        Raises:
            EvalError: SYNTAX for malformed input, UNDEFINED_FUNCTION when a
                call names a function that does not exist
        """
        source = self.unwrap(source)
        with self._lock:
            compiled = self._expressions.get(source)
            if compiled is not None:
                self._expressions.move_to_end(source)
                return compiled

        if not source:
            raise EvalError(EvalErrorKind.SYNTAX, "empty expression", source)

        try:
            compiled = self._environment.compile_expression(source, undefined_to_none=True)
            tree = Parser(self._environment, source, state="variable").parse_expression()
        except TemplateSyntaxError as e:
            raise EvalError(EvalErrorKind.SYNTAX, e.message or str(e), source)

        self._check_calls(tree, source)

        with self._lock:
            self._expressions[source] = compiled
            if len(self._expressions) > self._cache_size:
                self._expressions.popitem(last=False)
        return compiled

    def _check_calls(self, tree: nodes.Node, source: str) -> None:
        for call in tree.find_all(nodes.Call):
            target = call.node
            if isinstance(target, nodes.Name) and target.name not in self._environment.globals:
                raise EvalError(
                    EvalErrorKind.UNDEFINED_FUNCTION,
                    f"unknown function '{target.name}'",
                    source,
                )

    def _compile_template(self, text: str) -> Template:
        with self._lock:
            template = self._templates.get(text)
            if template is not None:
                self._templates.move_to_end(text)
                return template

        try:
            template = self._environment.from_string(text)
        except TemplateSyntaxError as e:
            raise EvalError(EvalErrorKind.SYNTAX, e.message or str(e), text)

        with self._lock:
            self._templates[text] = template
            if len(self._templates) > self._cache_size:
                self._templates.popitem(last=False)
        return template

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def _variables(ctx: Any) -> Dict[str, Any]:
        if ctx is None:
            return {}
        if hasattr(ctx, "to_expression_env"):
            return ctx.to_expression_env()
        return dict(ctx)

    def evaluate(self, source: str, ctx: Any) -> Any:
        """Evaluate an expression against a context.

        Args:
            source: Expression text (an optional ``{{ }}`` wrapper is ignored)
            ctx: ``Context`` or plain mapping of variable roots

        Returns:
            The expression value; absent keys evaluate to ``None``

        Raises:
            EvalError: On syntax, type or sandbox violations
        """
        compiled = self.compile(source)
        return self._run(lambda: compiled(**self._variables(ctx)), source)

    def evaluate_condition(self, source: str, ctx: Any) -> bool:
        """Evaluate an expression and coerce the result to a boolean."""
        return coerce_bool(self.evaluate(source, ctx))

    def render(self, text: str, ctx: Any) -> str:
        """Render a text template containing ``{{ ... }}`` placeholders."""
        template = self._compile_template(text)
        return self._run(lambda: template.render(**self._variables(ctx)), text)

    def resolve(self, value: Any, ctx: Any) -> Any:
        """Resolve a config value, recursing into mappings and lists.

        See the module docstring for the templating rule applied to strings.
        """
        if isinstance(value, str):
            if "{{" not in value:
                return value
            match = _WHOLE_PLACEHOLDER.match(value)
            if match and "{{" not in match.group("expr") and "}}" not in match.group("expr"):
                return self.evaluate(match.group("expr"), ctx)
            return self.render(value, ctx)
        if isinstance(value, Mapping):
            return {k: self.resolve(v, ctx) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v, ctx) for v in value]
        return value

    def resolve_text(self, value: Any, ctx: Any) -> str:
        """Resolve a config value that must end up as text."""
        resolved = self.resolve(value, ctx)
        text = _to_text(resolved)
        return text if isinstance(text, str) else str(text)

    @staticmethod
    def _run(func: Callable[[], Any], source: str) -> Any:
        try:
            return func()
        except EvalError as e:
            if not e.source:
                e.source = source
            raise
        except SecurityError as e:
            raise EvalError(EvalErrorKind.FORBIDDEN, str(e), source)
        except TemplateSyntaxError as e:
            raise EvalError(EvalErrorKind.SYNTAX, e.message or str(e), source)
        except UndefinedError as e:
            raise EvalError(EvalErrorKind.TYPE_MISMATCH, f"operation on nil value: {e}", source)
        except (TypeError, ValueError, KeyError, IndexError, AttributeError, ArithmeticError) as e:
            raise EvalError(EvalErrorKind.TYPE_MISMATCH, str(e), source)

    # ------------------------------------------------------------------
    # Built-in functions
    # ------------------------------------------------------------------

    def _builtins(self) -> Dict[str, Any]:
        evaluator = self

        def _item_vars(context: Any, item: Any) -> Dict[str, Any]:
            variables = {k: v for k, v in context.get_all().items() if k in VARIABLE_ROOTS}
            variables["item"] = item
            return variables

        @pass_context
        def filter_(context: Any, items: Any, predicate: str) -> List[Any]:
            compiled = evaluator.compile(predicate)
            return [
                item for item in _iterable(items)
                if coerce_bool(compiled(**_item_vars(context, item)))
            ]

        @pass_context
        def map_(context: Any, items: Any, projection: str) -> List[Any]:
            compiled = evaluator.compile(projection)
            return [compiled(**_item_vars(context, item)) for item in _iterable(items)]

        return {
            "len": _len,
            "sprintf": _sprintf,
            "contains": _contains,
            "filter": filter_,
            "map": map_,
            "now": _now,
            "to_table_markdown": to_table_markdown,
            "to_table_html": to_table_html,
        }


def _iterable(items: Any) -> List[Any]:
    if items is None or isinstance(items, Undefined):
        return []
    if isinstance(items, Mapping):
        return list(items.values())
    if isinstance(items, (list, tuple, set)):
        return list(items)
    raise _mismatch(f"expected a list, got {_type_name(items)}")


def _len(value: Any) -> int:
    if value is None or isinstance(value, Undefined):
        return 0
    try:
        return len(value)
    except TypeError:
        raise _mismatch(f"len() does not accept {_type_name(value)}")


def _sprintf(fmt: str, *args: Any) -> str:
    """Printf-style formatting; ``%v`` formats any value."""
    fmt = re.sub(r"%(-?\d*)v", r"%\1s", str(fmt))
    values = tuple(_to_text(a) if isinstance(a, (bool, Mapping, list)) or a is None else a for a in args)
    try:
        return fmt % values
    except (TypeError, ValueError) as e:
        raise _mismatch(f"sprintf: {e}")


def _contains(container: Any, item: Any) -> bool:
    if container is None or isinstance(container, Undefined):
        return False
    if isinstance(container, str):
        return str(item) in container
    try:
        return item in container
    except TypeError:
        raise _mismatch(f"contains() does not accept {_type_name(container)}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _rows(data: Any) -> Optional[List[Mapping]]:
    if not isinstance(data, (list, tuple)) or not data:
        return None
    return [row for row in data if isinstance(row, Mapping)]


def to_table_markdown(data: Any, *columns: str) -> str:
    """Render a list of mappings as a Markdown table."""
    rows = _rows(data)
    if rows is None:
        return "No Data"

    lines = [
        "| " + " | ".join(columns) + " |",
        "| " + " --- |" * len(columns),
    ]
    for row in rows:
        lines.append("| " + " | ".join(str(_to_text(row.get(c))) for c in columns) + " |")
    return "\n".join(lines) + "\n"


def to_table_html(data: Any, *columns: str) -> str:
    """Render a list of mappings as an inline-styled HTML table for email."""
    rows = _rows(data)
    if rows is None:
        return "<p style='color: gray;'>No Data Available</p>"

    cell = "padding: 8px; border: 1px solid #ddd;"
    parts = [
        "<table border='1' cellpadding='5' cellspacing='0' style='border-collapse: collapse; "
        "width: 100%; font-family: sans-serif; font-size: 14px;'>",
        "<tr style='background-color: #f2f2f2; text-align: left;'>",
    ]
    parts.extend(f"<th style='{cell}'>{c}</th>" for c in columns)
    parts.append("</tr>")
    for row in rows:
        parts.append("<tr>")
        for c in columns:
            value = row.get(c)
            text = "-" if value is None else _to_text(value)
            parts.append(f"<td style='{cell}'>{text}</td>")
        parts.append("</tr>")
    parts.append("</table>")
    return "".join(parts)
