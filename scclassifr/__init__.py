"""
scclassifr: Hierarchical Single-Cell Type Classification

Classify cell types in single-cell RNA sequencing data with pre-trained or
user-trained classifiers, applied parent first so that a cell is only
tested for a subtype once it has been assigned the parent cell type.

This package works with AnnData objects and requires users to handle their
own preprocessing pipeline.

Examples
--------
>>> import scanpy as sc
>>> import scclassifr as scc
>>> 
>>> # User handles preprocessing
>>> sc.pp.normalize_total(adata, target_sum=1e4)
>>> sc.pp.log1p(adata)
>>> 
# scclassifr trains and applies the classifiers
>>> clf_t = scc.train_classifier(train, 'T cells', ['CD3D', 'CD3E', 'CD2'])
>>> clf_cd4 = scc.train_classifier(train, 'CD4+ T cells', ['CD4', 'IL7R'], parent=clf_t)
>>> registry = scc.ClassifierRegistry([clf_t, clf_cd4])
>>> registry.save('my_classifiers.joblib')
>>> 
>>> annotated = scc.classify_cells(adata, 'my_classifiers.joblib')
>>> annotated.obs['most_probable_cell_type'].value_counts()
"""

import logging

from .classifier import CellTypeClassifier
from .config import ClassifyConfig, TrainConfig
from .core import HierarchicalClassifier, classify_cells
from .exceptions import (
    BrokenLineageError,
    FeatureMismatchError,
    IllegalOperationError,
    InvalidClassifierError,
    LoadError,
    ScClassifRError,
    UnknownCellTypeError,
)
from .features import FeatureExtractor
from .registry import ClassifierRegistry, load_classifiers, load_default_classifiers
from .training import test_classifier, train_classifier

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "CellTypeClassifier",
    "ClassifierRegistry",
    "ClassifyConfig",
    "FeatureExtractor",
    "HierarchicalClassifier",
    "TrainConfig",
    "classify_cells",
    "load_classifiers",
    "load_default_classifiers",
    "test_classifier",
    "train_classifier",
    "ScClassifRError",
    "InvalidClassifierError",
    "IllegalOperationError",
    "UnknownCellTypeError",
    "BrokenLineageError",
    "FeatureMismatchError",
    "LoadError",
]
