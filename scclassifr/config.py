"""Configuration classes for scclassifr."""

from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass
class ClassifyConfig:
    """
    Configuration for hierarchical classification.
    
    Parameters
    ----------
    expression_layer : str, default='X'
        Expression layer to read ('X', 'raw', or layer name).
    missing_features : str, default='zero'
        What to do when some classifier features are absent from the data.
        - 'zero': fill the missing features with 0 and warn
        - 'error': raise FeatureMismatchError
        A classifier with none of its features present always raises.
    unknown_label : str, default='unknown'
        Label for cells without an unambiguous assignment.
    ambiguity_separator : str, default='/'
        Separator joining sibling labels in the predicted column.
    predicted_key : str, default='predicted_cell_type'
        Column for predicted labels (ambiguity preserved).
    most_probable_key : str, default='most_probable_cell_type'
        Column for the single most specific label.
    probability_suffix : str, default='_p'
        Suffix of the per-cell-type probability columns.
    """
    
    expression_layer: str = 'X'
    missing_features: str = 'zero'
    unknown_label: str = 'unknown'
    ambiguity_separator: str = '/'
    predicted_key: str = 'predicted_cell_type'
    most_probable_key: str = 'most_probable_cell_type'
    probability_suffix: str = '_p'
    
    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.missing_features not in ['zero', 'error']:
            raise ValueError(
                f"missing_features must be 'zero' or 'error', got '{self.missing_features}'"
            )
        
        if not self.unknown_label:
            raise ValueError("unknown_label must be a non-empty string")
        
        if not self.ambiguity_separator:
            raise ValueError("ambiguity_separator must be a non-empty string")
        
        if not self.predicted_key or not self.most_probable_key:
            raise ValueError("Output column keys must be non-empty strings")
        
        if self.predicted_key == self.most_probable_key:
            raise ValueError("predicted_key and most_probable_key must differ")


@dataclass
class TrainConfig:
    """
    Configuration for training a cell type classifier.
    
    Parameters
    ----------
    n_folds : int, default=5
        Number of stratified cross-validation folds for tuning.
    c_values : tuple of float, default=(0.01, 0.1, 1.0, 10.0)
        Grid of SVM regularisation strengths to search.
    probability_threshold : float, default=0.5
        Threshold stored in the trained classifier.
    random_state : int, optional
        Random state for reproducible results.
    expression_layer : str, default='X'
        Expression layer to train on ('X', 'raw', or layer name).
    subtype_labels : tuple of str, default=()
        Additional labels counted as positive (e.g. subtypes of the cell type).
    """
    
    n_folds: int = 5
    c_values: Tuple[float, ...] = (0.01, 0.1, 1.0, 10.0)
    probability_threshold: float = 0.5
    random_state: Optional[int] = None
    expression_layer: str = 'X'
    subtype_labels: Tuple[str, ...] = field(default_factory=tuple)
    
    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.n_folds < 2:
            raise ValueError("n_folds must be at least 2")
        
        self.c_values = tuple(self.c_values)
        if len(self.c_values) == 0 or any(c <= 0 for c in self.c_values):
            raise ValueError("c_values must be a non-empty sequence of positive numbers")
        
        if self.probability_threshold <= 0:
            raise ValueError("probability_threshold must be positive")
        
        if isinstance(self.subtype_labels, str):
            self.subtype_labels = (self.subtype_labels,)
        else:
            self.subtype_labels = tuple(self.subtype_labels)
