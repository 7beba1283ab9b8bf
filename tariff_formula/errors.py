"""Exception hierarchy shared by the formula compiler and synthesis passes."""

from __future__ import annotations


class FormulaError(Exception):
    """Base error for formula compilation and evaluation."""


class FormulaEvaluationError(FormulaError):
    """Raised when a formula cannot be evaluated."""


class ProviderError(FormulaError):
    """Raised when the generative provider cannot return a usable response body."""


class FormulaGenerationError(FormulaError):
    """Raised when generative compilation of a rate fails for any reason."""

    def __init__(self, rate_text: str = "", detail: str = "") -> None:
        message = "formula generation failed"
        if rate_text:
            message = f"{message} for rate '{rate_text}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.rate_text = rate_text
        self.detail = detail
