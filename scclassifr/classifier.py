"""Cell type classifier record."""

import dataclasses
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Iterable, List, Optional, Tuple

from .exceptions import IllegalOperationError, InvalidClassifierError
from .features import decode_feature_name


def _check_cell_type(cell_type: Any) -> None:
    if isinstance(cell_type, (list, tuple)):
        raise InvalidClassifierError('cell_type', "can contain only one string")
    if not isinstance(cell_type, str):
        raise InvalidClassifierError('cell_type', "must be a string")
    if len(cell_type) < 1:
        raise InvalidClassifierError('cell_type', "must be set")


def _check_model(model: Any) -> None:
    if model is None:
        raise InvalidClassifierError('model', "must be set")
    if not callable(getattr(model, 'predict_proba', None)):
        raise InvalidClassifierError('model', "must provide a predict_proba method")


def _check_features(features: Any) -> Tuple[str, ...]:
    if isinstance(features, str) or not isinstance(features, Iterable):
        raise InvalidClassifierError('features', "must be a sequence of strings")
    
    features = tuple(features)
    if len(features) < 1:
        raise InvalidClassifierError('features', "must contain at least one feature")
    if not all(isinstance(f, str) for f in features):
        raise InvalidClassifierError('features', "must be a sequence of strings")
    if any(len(f) < 1 for f in features):
        raise InvalidClassifierError('features', "must not contain empty names")
    
    return tuple(str(f) for f in features)


def _check_probability_threshold(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidClassifierError('probability_threshold', "must be a number")
    if not value > 0:
        raise InvalidClassifierError('probability_threshold', "must be positive")


def _check_parent(parent: Any, cell_type: str) -> None:
    if parent is None:
        return
    if not isinstance(parent, str):
        raise InvalidClassifierError('parent', "must be a string or None")
    if len(parent) < 1:
        raise InvalidClassifierError('parent', "can be None but not an empty string")
    if parent == cell_type:
        raise InvalidClassifierError('parent', "cannot be the classifier's own cell type")


def model_features(model: Any) -> List[str]:
    """
    Derive feature names from the term labels stored on a fitted model.
    
    Term labels are read from ``feature_names_in_`` (set by scikit-learn when
    fitting on a DataFrame) and decoded back to gene names.
    
    Raises
    ------
    InvalidClassifierError
        If the model does not expose its term labels.
    """
    terms = getattr(model, 'feature_names_in_', None)
    if terms is None:
        raise InvalidClassifierError(
            'model', "must expose feature_names_in_ to derive its features"
        )
    return [decode_feature_name(str(term)) for term in terms]


@dataclass(frozen=True)
class CellTypeClassifier:
    """
    A trained model bundled with the metadata needed to apply it.
    
    Records are immutable: the ``with_*`` methods return validated copies
    and leave the original untouched.
    
    Parameters
    ----------
    cell_type : str
        Name of the cell type predicted by this classifier.
    model : object
        Trained model with a ``predict_proba`` method.
    features : sequence of str
        Features the model was trained on, in training order.
    probability_threshold : float
        Minimum probability for a cell to be assigned the cell type.
        Values above 1 are allowed and disable positive predictions.
    parent : str, optional
        Cell type of the parent classifier. ``None`` for root classifiers.
        
    Raises
    ------
    InvalidClassifierError
        If any field is invalid. Fields are checked in declaration order
        and the first failure is reported.
    
    Examples
    --------
    >>> clf_b = CellTypeClassifier('B cells', model, ['CD19', 'MS4A1'], 0.5)
    >>> clf_b = clf_b.with_probability_threshold(0.4)
    >>> print(clf_b)
    """
    
    cell_type: str
    model: Any = field(repr=False, compare=False)
    features: Tuple[str, ...]
    probability_threshold: float
    parent: Optional[str] = None
    
    def __post_init__(self) -> None:
        _check_cell_type(self.cell_type)
        _check_model(self.model)
        object.__setattr__(self, 'features', _check_features(self.features))
        _check_probability_threshold(self.probability_threshold)
        _check_parent(self.parent, self.cell_type)
    
    @property
    def is_root(self) -> bool:
        """Whether the classifier has no parent."""
        return self.parent is None
    
    def with_cell_type(self, value: str) -> 'CellTypeClassifier':
        """Return a copy with a new cell type."""
        if not isinstance(value, str) or len(value) < 1:
            raise InvalidClassifierError('cell_type', "must be a non-empty string")
        return dataclasses.replace(self, cell_type=value)
    
    def with_probability_threshold(self, value: float) -> 'CellTypeClassifier':
        """Return a copy with a new probability threshold."""
        if isinstance(value, bool) or not isinstance(value, Real) or not value > 0:
            raise InvalidClassifierError('probability_threshold', "must be a positive number")
        return dataclasses.replace(self, probability_threshold=value)
    
    def with_parent(self, value: str) -> 'CellTypeClassifier':
        """
        Return a copy attached to a new parent cell type.
        
        Detaching from a parent is not supported here; build a new record
        with ``parent=None`` instead.
        """
        if not isinstance(value, str) or len(value) < 1:
            raise InvalidClassifierError('parent', "must be a non-empty string")
        return dataclasses.replace(self, parent=value)
    
    def with_model(self, model: Any) -> 'CellTypeClassifier':
        """
        Return a copy using a new model, with features taken from the model.
        
        Only root classifiers can swap models. A child classifier has to be
        retrained against its parent with ``train_classifier``.
        
        Raises
        ------
        IllegalOperationError
            If the classifier has a parent.
        InvalidClassifierError
            If the new model is invalid or does not expose its features.
        """
        if self.parent is not None:
            raise IllegalOperationError(
                "Can only assign a new model to a cell type that has no parent. "
                "For a sub cell type, train a new classifier based on the parent classifier."
            )
        
        _check_model(model)
        return dataclasses.replace(self, model=model, features=model_features(model))
    
    def with_features(self, value: Iterable[str]) -> 'CellTypeClassifier':
        """
        Return a copy with a hand-edited feature list.
        
        Features should follow the model, so prefer ``with_model``. Features
        that the model was not trained on will make prediction fail.
        """
        return dataclasses.replace(self, features=_check_features(value))
    
    def describe(self) -> str:
        """Human-readable summary of the classifier."""
        lines = [
            f"A CellTypeClassifier for {self.cell_type}",
            f"* {len(self.features)} features applied: {', '.join(self.features)}",
            f"* Predicting probability threshold: {self.probability_threshold}",
        ]
        if self.parent is not None:
            lines.append(f"* A child model of: {self.parent}")
        else:
            lines.append("* No parent model")
        return '\n'.join(lines)
    
    def __str__(self) -> str:
        return self.describe()
