"""Compile tariff rate text into formulas and layer Chapter 99 adjustments on top."""

from tariff_formula.errors import (
    FormulaError,
    FormulaEvaluationError,
    FormulaGenerationError,
    ProviderError,
)
from tariff_formula.models import CompiledFormula, NeedsFallback, RateSpecification, ScheduleEntry
from tariff_formula.pattern_compiler import compile_pattern, generate_formula_by_pattern
from tariff_formula.formula_validator import validate_formula

__all__ = [
    "CompiledFormula",
    "FormulaError",
    "FormulaEvaluationError",
    "FormulaGenerationError",
    "NeedsFallback",
    "ProviderError",
    "RateSpecification",
    "ScheduleEntry",
    "compile_pattern",
    "generate_formula_by_pattern",
    "validate_formula",
]
