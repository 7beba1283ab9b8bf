"""Safety gate for formulas before they are persisted, plus a Decimal evaluator."""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Mapping, Optional

from tariff_formula.errors import FormulaEvaluationError
from tariff_formula.models import VARIABLE_NAMES

_VARIABLE_RE = re.compile(r"\b(value|weight|quantity)\b")
_FORBIDDEN_RE = re.compile(
    r"eval|function|=>|require|import|export|async|await|process|global|window|lambda|exec|__"
)
_ALLOWED_CHARS_RE = re.compile(r"^[\d\s+\-*/().a-z_]+$", re.IGNORECASE)
_IDENTIFIER_RE = re.compile(r"[a-z_]+")


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    variables: List[str] = field(default_factory=list)


def extract_variables(formula: str) -> List[str]:
    """Return the canonical variables referenced by ``formula`` in order of first use."""

    variables: List[str] = []
    for match in _VARIABLE_RE.finditer(formula or ""):
        name = match.group(1)
        if name not in variables:
            variables.append(name)
    return variables


def unknown_identifiers(formula: str) -> List[str]:
    """Names in ``formula`` other than ``value``, ``weight`` and ``quantity``."""

    unknown: List[str] = []
    for name in _IDENTIFIER_RE.findall((formula or "").lower()):
        if name not in VARIABLE_NAMES and name not in unknown:
            unknown.append(name)
    return unknown


def validate_formula(formula: str) -> ValidationResult:
    """Whitelist check for any formula, whatever produced it. Never raises."""

    if not isinstance(formula, str) or not formula.strip():
        return ValidationResult(valid=False, error="Formula is empty")
    if _FORBIDDEN_RE.search(formula):
        return ValidationResult(valid=False, error="Formula contains forbidden keywords")
    if not _ALLOWED_CHARS_RE.match(formula):
        return ValidationResult(valid=False, error="Formula contains invalid characters")
    return ValidationResult(valid=True, variables=extract_variables(formula))


def _decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise FormulaEvaluationError(f"Unable to coerce '{value}' to Decimal.") from exc


def evaluate_formula(formula: str, values: Mapping[str, object]) -> Decimal:
    """Evaluate a validated formula with Decimal arithmetic.

    Only ``+ - * /``, unary signs, numeric literals and the three canonical
    variables are accepted; anything else raises :class:`FormulaEvaluationError`.
    """

    check = validate_formula(formula)
    if not check.valid:
        raise FormulaEvaluationError(check.error or "Invalid formula")
    inputs = {str(key).strip().lower(): _decimal(item) for key, item in (values or {}).items()}
    try:
        tree = ast.parse(formula, mode="eval")
    except SyntaxError as exc:
        raise FormulaEvaluationError(f"Formula is not a valid expression: {formula}") from exc

    def _eval(node: ast.AST) -> Decimal:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.BinOp):
            left = _eval(node.left)
            right = _eval(node.right)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if isinstance(node.op, ast.Div):
                if right == 0:
                    raise FormulaEvaluationError("Division by zero in formula.")
                return left / right
            raise FormulaEvaluationError(f"Unsupported operator: {ast.dump(node.op)}")
        if isinstance(node, ast.UnaryOp):
            operand = _eval(node.operand)
            if isinstance(node.op, ast.UAdd):
                return operand
            if isinstance(node.op, ast.USub):
                return -operand
            raise FormulaEvaluationError(f"Unsupported unary operator: {ast.dump(node.op)}")
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return _decimal(node.value)
        if isinstance(node, ast.Name):
            key = node.id.lower()
            if key not in VARIABLE_NAMES:
                raise FormulaEvaluationError(f"Unknown variable referenced in formula: {node.id}")
            if key not in inputs:
                raise FormulaEvaluationError(f"Missing value for formula variable: {node.id}")
            return inputs[key]
        raise FormulaEvaluationError(f"Unsupported expression element: {ast.dump(node)}")

    return _eval(tree)
