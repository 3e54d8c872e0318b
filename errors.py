class BTRFError(Exception):
    """Base class for backtracking tree errors."""


class InputMismatchError(BTRFError, ValueError):
    """Training inputs have inconsistent sizes or out-of-range indices."""


class EmptyInputError(BTRFError, ValueError):
    """No training samples were supplied."""


class NotBuiltError(BTRFError, RuntimeError):
    """The tree has no leaves yet."""


class InvalidBudgetError(BTRFError, ValueError):
    """The backtracking budget is smaller than one leaf."""


class DescriptorShapeMismatchError(BTRFError, ValueError):
    """An imported descriptor matrix does not match the current leaves."""
