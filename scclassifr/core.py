"""Core hierarchical classification implementation."""

import dataclasses
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from anndata import AnnData

from .classifier import CellTypeClassifier
from .config import ClassifyConfig
from .features import FeatureExtractor
from .registry import ClassifierRegistry, load_default_classifiers

logger = logging.getLogger(__name__)

_POSITIVE_CLASSES = (True, 'yes', 'Yes', 'positive')


def positive_class_index(model: Any, cell_type: Optional[str] = None) -> int:
    """
    Column of ``predict_proba`` holding the probability of the cell type.
    
    Looks the positive class up in ``model.classes_`` and falls back to the
    last column, which is the positive class for binary scikit-learn models
    fitted on 0/1 or False/True labels.
    """
    classes = getattr(model, 'classes_', None)
    if classes is None:
        return -1
    
    classes = list(classes)
    candidates = list(_POSITIVE_CLASSES)
    if cell_type is not None:
        candidates.append(cell_type)
    for candidate in candidates:
        if candidate in classes:
            return classes.index(candidate)
    return len(classes) - 1


def predict_probability(classifier: CellTypeClassifier, X: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
    """
    Probability of the classifier's cell type for each row of ``X``.
    
    Raises
    ------
    ValueError
        If the model returns a malformed probability matrix.
    """
    proba = np.asarray(classifier.model.predict_proba(X), dtype=np.float64)
    
    if proba.ndim == 1:
        proba = proba[:, np.newaxis]
    if proba.ndim != 2 or proba.shape[0] != X.shape[0]:
        raise ValueError(
            f"Model for '{classifier.cell_type}' returned probabilities of shape "
            f"{proba.shape} for {X.shape[0]} cells"
        )
    
    return proba[:, positive_class_index(classifier.model, classifier.cell_type)]


def probability_column(cell_type: str, suffix: str = '_p') -> str:
    """Name of the probability column for a cell type."""
    return cell_type.replace(' ', '_') + suffix


class HierarchicalClassifier:
    """
    Hierarchical cell type classification with pre-trained classifiers.
    
    Classifiers are applied parent first. A child classifier only sees the
    cells that passed its parent's threshold, so a cell can only be labelled
    with a subtype after being labelled with its parent type.
    
    Parameters
    ----------
    adata : AnnData
        Annotated data object containing expression data.
    config : ClassifyConfig, optional
        Configuration object with classification parameters.
        
    Examples
    --------
    >>> import scclassifr as scc
    >>> 
    >>> registry = scc.load_classifiers('my_classifiers.joblib')
    >>> predictor = scc.HierarchicalClassifier(adata, scc.ClassifyConfig(expression_layer='log1p'))
    >>> predictor.predict(registry, cell_types=['B cells', 'CD4+ T cells'])
    >>> adata.obs['most_probable_cell_type'].value_counts()
    """
    
    def __init__(self, adata: AnnData, config: Optional[ClassifyConfig] = None) -> None:
        """Initialize HierarchicalClassifier with AnnData object."""
        self.adata = adata
        self.config = config or ClassifyConfig()
        
        # Basic validation
        if adata.X is None:
            raise ValueError("AnnData object must contain expression matrix")

        # Validates the expression layer
        self.extractor = FeatureExtractor(
            adata,
            layer=self.config.expression_layer,
            missing_features=self.config.missing_features,
        )
    
    def _evaluation_order(self,
                          registry: ClassifierRegistry,
                          classifiers: List[CellTypeClassifier]) -> List[CellTypeClassifier]:
        """Order classifiers by hierarchy level, keeping registration order within a level."""
        depths = {c.cell_type: registry.depth(c) for c in classifiers}
        return sorted(classifiers, key=lambda c: depths[c.cell_type])

    def _check_output_columns(self, classifiers: Sequence[CellTypeClassifier]) -> None:
        """Raise ValueError if two output columns would share a name."""
        owners: Dict[str, str] = {
            self.config.predicted_key: 'the predicted label',
            self.config.most_probable_key: 'the most probable label',
        }
        for classifier in classifiers:
            column = probability_column(classifier.cell_type, self.config.probability_suffix)
            if column in owners:
                raise ValueError(
                    f"Cell type '{classifier.cell_type}' would write column '{column}', "
                    f"already used by {owners[column]}"
                )
            owners[column] = f"cell type '{classifier.cell_type}'"

    def _evaluate(self,
                  classifiers: Sequence[CellTypeClassifier]) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Apply classifiers parent first with gating.
        
        Parameters
        ----------
        classifiers : sequence
            Classifiers in evaluation order. Every parent must precede its
            children.
            
        Returns
        -------
        probabilities : pd.DataFrame
            Cells x cell types, NaN where a classifier was not applied.
        positives : pd.DataFrame
            Cells x cell types, True where the cell passed the threshold.
        """
        n_cells = self.adata.n_obs
        probabilities: Dict[str, np.ndarray] = {}
        positives: Dict[str, np.ndarray] = {}
        
        for classifier in classifiers:
            # The first classifier of a lineage sees every cell
            eligible = positives.get(classifier.parent)
            if eligible is None:
                eligible = np.ones(n_cells, dtype=bool)
            
            proba = np.full(n_cells, np.nan, dtype=np.float64)
            positive = np.zeros(n_cells, dtype=bool)
            if eligible.any():
                X = self.extractor.extract(classifier, eligible)
                proba[eligible] = predict_probability(classifier, X)
                positive[eligible] = proba[eligible] >= classifier.probability_threshold
            
            probabilities[classifier.cell_type] = proba
            positives[classifier.cell_type] = positive
            
            logger.debug(
                "Classifier '%s': %d eligible cells, %d positive (threshold %s)",
                classifier.cell_type, int(eligible.sum()), int(positive.sum()),
                classifier.probability_threshold,
            )
        
        index = self.adata.obs_names
        return (
            pd.DataFrame(probabilities, index=index),
            pd.DataFrame(positives, index=index),
        )
    
    def _assign_labels(self,
                       positives: pd.DataFrame,
                       classifiers: Sequence[CellTypeClassifier]) -> pd.DataFrame:
        """
        Turn per-classifier decisions into final labels.
        
        For each cell only the deepest positive cell types are kept: a
        positive type is dropped when one of its children is positive too.
        One remaining type becomes the label. Several remaining types are
        joined in evaluation order for the predicted label and make the
        most probable label unknown.
        
        Returns
        -------
        labels : pd.DataFrame
            Columns ``predicted_key`` and ``most_probable_key``.
        """
        unknown = self.config.unknown_label
        separator = self.config.ambiguity_separator
        
        # Cell types that have a positive child on the same cell
        deepest = positives.copy()
        for classifier in classifiers:
            if classifier.parent is not None:
                deepest[classifier.parent] &= ~positives[classifier.cell_type]
        
        cell_types = np.array([c.cell_type for c in classifiers], dtype=object)
        mask = deepest[list(cell_types)].to_numpy(dtype=bool)
        
        predicted = []
        most_probable = []
        for row in mask:
            assigned = cell_types[row]
            if len(assigned) == 0:
                predicted.append(unknown)
                most_probable.append(unknown)
            elif len(assigned) == 1:
                predicted.append(assigned[0])
                most_probable.append(assigned[0])
            else:
                predicted.append(separator.join(assigned))
                most_probable.append(unknown)
        
        return pd.DataFrame(
            {
                self.config.predicted_key: predicted,
                self.config.most_probable_key: most_probable,
            },
            index=positives.index,
        )
    
    def predict(self,
                classifiers: Any,
                cell_types: Union[str, Sequence[str]] = 'all',
                inplace: bool = True,
                return_probabilities: bool = False) -> Optional[Union[pd.DataFrame, Tuple[pd.DataFrame, pd.DataFrame]]]:
        """
        Predict cell types using the hierarchical classifiers.
        
        This is the main method that orchestrates the prediction pipeline:
        1. Resolve the requested cell types and their ancestors
        2. Order the classifiers parent first
        3. Apply each classifier to the cells positive for its parent
        4. Assign the most specific positive label to each cell
        
        Parameters
        ----------
        classifiers : ClassifierRegistry or loadable source
            Classifiers to use. Anything accepted by ``ClassifierRegistry.load``.
        cell_types : str or sequence of str, default='all'
            Cell types to predict. Their ancestors are always included.
        inplace : bool, default=True
            If True, add columns to adata.obs. If False, return DataFrame.
        return_probabilities : bool, default=False
            If True, also return the cells x cell types probability table.
            
        Returns
        -------
        predictions : pd.DataFrame or None
            If inplace=False, one probability column per evaluated cell type
            plus the predicted and most probable labels.
            If inplace=True, returns None and modifies adata.obs.
        probabilities : pd.DataFrame, optional
            If return_probabilities=True, the raw probabilities keyed by
            cell type name.
            
        Raises
        ------
        UnknownCellTypeError
            If a requested cell type has no classifier.
        BrokenLineageError
            If a classifier's parent is missing from the registry.
        FeatureMismatchError
            If a classifier's features cannot be found in the data.
        ValueError
            If two cell types map to the same probability column name.
        """
        registry = ClassifierRegistry.load(classifiers)
        
        # Step 1: Resolve requested classifiers and ancestors
        resolved = registry.resolve(cell_types)
        
        # Step 2: Parent before child
        ordered = self._evaluation_order(registry, resolved)
        self._check_output_columns(ordered)

        logger.info(
            "Classifying %d cells with %d classifiers: %s",
            self.adata.n_obs, len(ordered), [c.cell_type for c in ordered],
        )
        
        # Step 3: Gated evaluation
        probabilities, positives = self._evaluate(ordered)
        
        # Step 4: Final labels
        labels = self._assign_labels(positives, ordered)
        
        predictions = probabilities.rename(
            columns=lambda ct: probability_column(ct, self.config.probability_suffix)
        )
        predictions = pd.concat([predictions, labels], axis=1)
        
        logger.info(
            "Assigned %d/%d cells to a single cell type",
            int((labels[self.config.most_probable_key] != self.config.unknown_label).sum()),
            self.adata.n_obs,
        )
        
        # Step 5: Handle output format
        if inplace:
            for column in predictions.columns:
                self.adata.obs[column] = predictions[column].to_numpy()
            
            if return_probabilities:
                return predictions, probabilities
            return None
        
        if return_probabilities:
            return predictions, probabilities
        return predictions
    
    def positive_cells(self, lineage: Sequence[CellTypeClassifier]) -> np.ndarray:
        """
        Cells positive for the last classifier of a lineage.
        
        Parameters
        ----------
        lineage : sequence of CellTypeClassifier
            Classifiers ordered root first, each the parent of the next.
            The first one is applied to every cell.
            
        Returns
        -------
        mask : np.ndarray
            Boolean mask over ``adata.obs_names``.
        """
        if not lineage:
            return np.ones(self.adata.n_obs, dtype=bool)
        
        _, positives = self._evaluate(lineage)
        return positives[lineage[-1].cell_type].to_numpy(dtype=bool)


def classify_cells(adata: AnnData,
                   classifiers: Any = None,
                   cell_types: Union[str, Sequence[str]] = 'all',
                   layer: Optional[str] = None,
                   config: Optional[ClassifyConfig] = None,
                   inplace: bool = False) -> AnnData:
    """
    Classify cells in an AnnData object.
    
    Parameters
    ----------
    adata : AnnData
        Dataset to classify.
    classifiers : optional
        Classifiers to use, in any form accepted by ``ClassifierRegistry.load``.
        The bundled default classifiers when omitted.
    cell_types : str or sequence of str, default='all'
        Cell types to predict.
    layer : str, optional
        Expression layer to read. Overrides ``config.expression_layer``.
    config : ClassifyConfig, optional
        Classification parameters.
    inplace : bool, default=False
        If True, annotate ``adata`` itself, otherwise a copy.
        
    Returns
    -------
    adata : AnnData
        The annotated dataset, with one ``<cell type>_p`` probability column per
        evaluated cell type plus ``predicted_cell_type`` and
        ``most_probable_cell_type`` in ``obs``.
        
    Examples
    --------
    >>> annotated = classify_cells(adata, 'my_classifiers.joblib', cell_types=['B cells'])
    >>> annotated.obs['predicted_cell_type'].value_counts()
    """
    config = config or ClassifyConfig()
    if layer is not None:
        config = dataclasses.replace(config, expression_layer=layer)
    
    if classifiers is None:
        classifiers = load_default_classifiers()
    
    target = adata if inplace else adata.copy()
    predictor = HierarchicalClassifier(target, config)
    predictions = predictor.predict(classifiers, cell_types=cell_types, inplace=False)
    
    # Nothing is written before every classifier has run
    for column in predictions.columns:
        target.obs[column] = predictions[column].to_numpy()
    
    return target
