"""Training and evaluation of cell type classifiers."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from anndata import AnnData
from sklearn.metrics import accuracy_score, confusion_matrix, roc_auc_score, roc_curve
from sklearn.model_selection import GridSearchCV, StratifiedKFold
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVC

from .classifier import CellTypeClassifier
from .config import ClassifyConfig, TrainConfig
from .core import HierarchicalClassifier, predict_probability
from .features import FeatureExtractor, encode_feature_name
from .registry import ClassifierRegistry

logger = logging.getLogger(__name__)


def _cell_labels(adata: AnnData, label_key: str) -> pd.Series:
    if label_key not in adata.obs.columns:
        raise ValueError(
            f"Label column '{label_key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )
    return adata.obs[label_key].astype(str)


def _lineage(parent: Optional[CellTypeClassifier],
             registry: Optional[ClassifierRegistry]) -> List[CellTypeClassifier]:
    """Classifiers gating the cells a child is trained or tested on, root first."""
    if parent is None:
        return []
    if registry is None:
        return [parent]
    return registry.ancestor_chain(parent) + [parent]


def train_classifier(adata: AnnData,
                     cell_type: str,
                     features: Sequence[str],
                     label_key: str = 'cell_type',
                     parent: Optional[CellTypeClassifier] = None,
                     registry: Optional[ClassifierRegistry] = None,
                     config: Optional[TrainConfig] = None) -> CellTypeClassifier:
    """
    Train a classifier for one cell type.
    
    A linear SVM with probability estimates is tuned over ``config.c_values``
    with stratified cross-validation on standardized expression of the
    given features.
    
    Parameters
    ----------
    adata : AnnData
        Training data with cell labels in ``adata.obs[label_key]``.
    cell_type : str
        Cell type to train for. Cells labelled with it (or with one of
        ``config.subtype_labels``) are positives, all others negatives.
    features : sequence of str
        Features (genes) used by the model.
    label_key : str, default='cell_type'
        Column of ``adata.obs`` holding the cell labels.
    parent : CellTypeClassifier, optional
        Classifier of the parent cell type. Training is then restricted to
        the cells the parent classifies as positive.
    registry : ClassifierRegistry, optional
        Registry used to resolve the ancestors of ``parent``, so that the
        whole lineage gates the training cells. Required when ``parent``
        has a parent itself.
    config : TrainConfig, optional
        Training parameters.
        
    Returns
    -------
    classifier : CellTypeClassifier
        The trained classifier, child of ``parent`` when given.
        
    Raises
    ------
    ValueError
        If labels are missing, ``parent`` is itself a child and no registry
        is given, or the training cells hold a single class or too few cells
        for cross-validation.
    FeatureMismatchError
        If a feature is absent from the training data.
        
    Examples
    --------
    >>> clf_t = train_classifier(adata, 'T cells', ['CD3D', 'CD3E', 'CD2'])
    >>> clf_cd4 = train_classifier(adata, 'CD4+ T cells', ['CD4', 'IL7R'], parent=clf_t)
    """
    config = config or TrainConfig()
    labels = _cell_labels(adata, label_key)

    if parent is not None and parent.parent is not None and registry is None:
        raise ValueError(
            f"Parent '{parent.cell_type}' has parent '{parent.parent}'; "
            f"pass the registry holding its ancestors"
        )

    features = list(dict.fromkeys(features))
    if len(features) == 0:
        raise ValueError("At least one feature is required")
    
    # Restrict to cells positive for the parent lineage
    lineage = _lineage(parent, registry)
    if lineage:
        predictor = HierarchicalClassifier(adata, ClassifyConfig(expression_layer=config.expression_layer))
        cells = predictor.positive_cells(lineage)
        logger.info(
            "Training '%s' on %d/%d cells positive for '%s'",
            cell_type, int(cells.sum()), adata.n_obs, parent.cell_type,
        )
    else:
        cells = np.ones(adata.n_obs, dtype=bool)
    
    positive_labels = {cell_type, *config.subtype_labels}
    y = labels[cells].isin(positive_labels).to_numpy()
    
    n_positive = int(y.sum())
    n_negative = int(len(y) - n_positive)
    if n_positive == 0 or n_negative == 0:
        raise ValueError(
            f"Training '{cell_type}' needs positive and negative cells, "
            f"got {n_positive} positive and {n_negative} negative"
        )
    if min(n_positive, n_negative) < config.n_folds:
        raise ValueError(
            f"Training '{cell_type}' needs at least {config.n_folds} cells of each class "
            f"for {config.n_folds}-fold cross-validation, "
            f"got {n_positive} positive and {n_negative} negative"
        )
    
    extractor = FeatureExtractor(adata, layer=config.expression_layer, missing_features='error')
    X = pd.DataFrame(
        extractor.matrix(features, cells, owner=cell_type),
        columns=[encode_feature_name(f) for f in features],
    )
    
    pipeline = Pipeline([
        ('scaler', StandardScaler()),
        ('svc', SVC(
            kernel='linear',
            probability=True,
            class_weight='balanced',
            random_state=config.random_state,
        )),
    ])
    cv = StratifiedKFold(
        n_splits=config.n_folds,
        shuffle=True,
        random_state=config.random_state,
    )
    search = GridSearchCV(
        pipeline,
        {'svc__C': list(config.c_values)},
        cv=cv,
        scoring='roc_auc',
    )
    search.fit(X, y)
    
    logger.info(
        "Trained '%s' on %d positive / %d negative cells; best %s, CV AUC %.3f",
        cell_type, n_positive, n_negative, search.best_params_, search.best_score_,
    )
    
    return CellTypeClassifier(
        cell_type=cell_type,
        model=search.best_estimator_,
        features=features,
        probability_threshold=config.probability_threshold,
        parent=parent.cell_type if parent is not None else None,
    )


def test_classifier(adata: AnnData,
                    classifier: CellTypeClassifier,
                    label_key: str = 'cell_type',
                    registry: Optional[ClassifierRegistry] = None,
                    layer: str = 'X',
                    subtype_labels: Sequence[str] = ()) -> Dict[str, Any]:
    """
    Evaluate a classifier on labelled cells.
    
    Child classifiers are evaluated on the cells their lineage classifies
    as positive, which requires the registry holding their ancestors.
    
    Parameters
    ----------
    adata : AnnData
        Test data with cell labels in ``adata.obs[label_key]``.
    classifier : CellTypeClassifier
        Classifier to evaluate.
    label_key : str, default='cell_type'
        Column of ``adata.obs`` holding the cell labels.
    registry : ClassifierRegistry, optional
        Registry with the classifier's ancestors. Required for child classifiers.
    layer : str, default='X'
        Expression layer to use.
    subtype_labels : sequence of str, default=()
        Additional labels counted as positive.
        
    Returns
    -------
    metrics : dict
        ``n_cells``, ``accuracy``, ``sensitivity``, ``specificity``, ``auc``
        (NaN when a class is absent), ``confusion`` (DataFrame) and ``roc``
        (DataFrame with ``fpr``, ``tpr`` and ``threshold``).
    """
    labels = _cell_labels(adata, label_key)
    
    if classifier.parent is not None and registry is None:
        raise ValueError(
            f"Classifier '{classifier.cell_type}' has parent '{classifier.parent}'; "
            f"pass the registry holding its ancestors"
        )
    
    predictor = HierarchicalClassifier(adata, ClassifyConfig(expression_layer=layer))
    lineage = registry.ancestor_chain(classifier) if classifier.parent is not None else []
    cells = predictor.positive_cells(lineage)
    
    if not cells.any():
        raise ValueError(f"No test cells are positive for the lineage of '{classifier.cell_type}'")
    
    y_true = labels[cells].isin({classifier.cell_type, *subtype_labels}).to_numpy()
    X = predictor.extractor.extract(classifier, cells)
    proba = predict_probability(classifier, X)
    y_pred = proba >= classifier.probability_threshold
    
    tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[False, True]).ravel()
    
    if y_true.all() or not y_true.any():
        auc = float('nan')
        roc = pd.DataFrame(columns=['fpr', 'tpr', 'threshold'], dtype=float)
    else:
        auc = float(roc_auc_score(y_true, proba))
        fpr, tpr, thresholds = roc_curve(y_true, proba)
        roc = pd.DataFrame({'fpr': fpr, 'tpr': tpr, 'threshold': thresholds})
    
    metrics = {
        'n_cells': int(cells.sum()),
        'accuracy': float(accuracy_score(y_true, y_pred)),
        'sensitivity': float(tp / (tp + fn)) if (tp + fn) > 0 else float('nan'),
        'specificity': float(tn / (tn + fp)) if (tn + fp) > 0 else float('nan'),
        'auc': auc,
        'confusion': pd.DataFrame(
            [[tn, fp], [fn, tp]],
            index=['actual_negative', 'actual_positive'],
            columns=['predicted_negative', 'predicted_positive'],
        ),
        'roc': roc,
    }
    
    logger.info(
        "Tested '%s' on %d cells: accuracy %.3f, AUC %.3f",
        classifier.cell_type, metrics['n_cells'], metrics['accuracy'], auc,
    )
    return metrics


# Keep pytest from collecting the function when it is imported into a test module
test_classifier.__test__ = False
