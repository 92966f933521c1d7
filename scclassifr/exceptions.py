"""Exception types raised by scclassifr."""


class ScClassifRError(Exception):
    """Base class for all scclassifr errors."""


class InvalidClassifierError(ScClassifRError, ValueError):
    """
    A classifier field violates one of its invariants.

    Parameters
    ----------
    field : str
        Name of the offending field.
    rule : str
        Human-readable description of the violated rule.
    """

    def __init__(self, field: str, rule: str) -> None:
        self.field = field
        self.rule = rule
        super().__init__(f"'{field}' {rule}")


class IllegalOperationError(ScClassifRError):
    """A structurally disallowed change was requested."""


class UnknownCellTypeError(ScClassifRError, KeyError):
    """A requested cell type has no classifier in the registry."""

    def __str__(self) -> str:
        # KeyError quotes its argument otherwise
        return str(self.args[0]) if self.args else ""


class BrokenLineageError(ScClassifRError):
    """A parent reference cannot be resolved inside the registry."""


class FeatureMismatchError(ScClassifRError, ValueError):
    """Features required by a classifier are absent from the expression matrix."""


class LoadError(ScClassifRError):
    """A classifier collection could not be read or contains invalid entries."""
