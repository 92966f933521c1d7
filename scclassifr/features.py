"""Mapping of classifier features onto an expression matrix."""

import logging
import re
import warnings
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp
from anndata import AnnData

from .exceptions import FeatureMismatchError

logger = logging.getLogger(__name__)

# Prefix added to encoded feature names so every term is a valid identifier
TERM_PREFIX = 'G_'


def encode_feature_name(name: str) -> str:
    """Encode a gene name into the term label used when fitting models."""
    return TERM_PREFIX + name.replace('-', '_')


def decode_feature_name(term: str) -> str:
    """Decode a model term label back into a gene name."""
    term = re.sub(f'^{TERM_PREFIX}', '', term)
    return term.replace('_', '-')


def canonicalize_feature(name: str) -> str:
    """
    Normalize a feature name for lookup across naming conventions.
    
    Upper-cases and treats '_', '.' and '-' as the same separator, so that
    'HLA_DRA', 'hla.dra' and 'HLA-DRA' all match.
    """
    return re.sub(r'[_.]', '-', str(name).strip()).upper()


def validate_expression_layer(adata: AnnData, layer: str) -> None:
    """Validate that the specified expression layer exists."""
    if layer == 'X':
        # Always valid
        return
    elif layer == 'raw':
        if adata.raw is None:
            raise ValueError("expression_layer='raw' but adata.raw is None")
    else:
        # Custom layer
        if layer not in adata.layers:
            available = list(adata.layers.keys())
            raise ValueError(
                f"Layer '{layer}' not found. Available layers: {available}"
            )


def _dense(arr: Union[np.ndarray, sp.spmatrix]) -> np.ndarray:
    return arr.toarray() if sp.issparse(arr) else np.asarray(arr)


class FeatureExtractor:
    """
    Pull the features a classifier needs out of an AnnData object.
    
    Parameters
    ----------
    adata : AnnData
        Annotated data object containing the expression matrix.
    layer : str, default='X'
        Expression layer to use ('X', 'raw', or layer name).
    missing_features : str, default='zero'
        'zero' fills absent features with 0 and warns, 'error' raises
        FeatureMismatchError. A classifier with no feature present at all
        always raises.
    """
    
    def __init__(self, adata: AnnData, layer: str = 'X', missing_features: str = 'zero') -> None:
        validate_expression_layer(adata, layer)
        
        self.adata = adata
        self.layer = layer
        self.missing_features = missing_features
        
        self._exact_index: Dict[str, int] = {}
        self._canonical_index: Dict[str, int] = {}
        self._build_index()
    
    @property
    def var_names(self) -> pd.Index:
        """Feature names of the selected expression layer."""
        if self.layer == 'raw':
            return self.adata.raw.var_names
        return self.adata.var_names
    
    def _build_index(self) -> None:
        collisions = []
        for i, name in enumerate(self.var_names.astype(str)):
            self._exact_index.setdefault(name, i)
            
            canon = canonicalize_feature(name)
            if canon in self._canonical_index:
                collisions.append(name)
                continue
            self._canonical_index[canon] = i
        
        if collisions:
            warnings.warn(
                f"{len(collisions)} features share a normalized name with an earlier feature "
                f"and can only be matched exactly: "
                f"{collisions[:5]}{'...' if len(collisions) > 5 else ''}"
            )
    
    def _get_expression_matrix(self) -> Union[np.ndarray, sp.spmatrix]:
        """Get expression matrix based on the selected layer."""
        if self.layer == 'X':
            return self.adata.X
        elif self.layer == 'raw':
            return self.adata.raw.X
        else:
            return self.adata.layers[self.layer]
    
    def locate(self, features: Sequence[str]) -> List[Optional[int]]:
        """
        Find the column index of each feature.
        
        Returns
        -------
        indices : list
            Column index per feature, or None for features that are absent.
        """
        indices = []
        for feature in features:
            idx = self._exact_index.get(feature)
            if idx is None:
                idx = self._canonical_index.get(canonicalize_feature(feature))
            indices.append(idx)
        return indices
    
    def matrix(self,
               features: Sequence[str],
               cells: Optional[np.ndarray] = None,
               owner: str = 'features') -> np.ndarray:
        """
        Dense cells x features matrix in the order of ``features``.
        
        Parameters
        ----------
        features : sequence of str
            Feature names, matched exactly first and then after normalization.
        cells : np.ndarray, optional
            Boolean mask or integer indices of the cells to extract.
            All cells when omitted.
        owner : str, default='features'
            Name used in warnings and errors, usually the cell type.
            
        Raises
        ------
        FeatureMismatchError
            If no feature is present, or any is missing under the 'error' policy.
        """
        indices = self.locate(features)
        missing = [f for f, idx in zip(features, indices) if idx is None]
        
        if len(missing) == len(features):
            raise FeatureMismatchError(
                f"'{owner}': none of its {len(features)} features "
                f"were found in the expression matrix"
            )
        
        if missing:
            message = (
                f"'{owner}': {len(missing)} features not found: "
                f"{missing[:5]}{'...' if len(missing) > 5 else ''}"
            )
            if self.missing_features == 'error':
                raise FeatureMismatchError(message)
            warnings.warn(f"{message}. Filling them with 0.")
        
        present_cols = [i for i, idx in enumerate(indices) if idx is not None]
        # Slice genes before cells so only the needed columns are copied
        X = self._get_expression_matrix()[:, [indices[i] for i in present_cols]]
        if cells is not None:
            cells = np.asarray(cells)
            if cells.dtype == bool:
                cells = np.flatnonzero(cells)
            X = X[cells]

        n_cells = X.shape[0]
        values = np.zeros((n_cells, len(features)), dtype=np.float64)
        values[:, present_cols] = _dense(X)
        
        logger.debug(
            "Extracted %d/%d features for '%s' over %d cells",
            len(present_cols), len(features), owner, n_cells,
        )
        return values
    
    def extract(self, classifier: Any, cells: Optional[np.ndarray] = None) -> Union[np.ndarray, pd.DataFrame]:
        """
        Build the input matrix for a classifier's model.
        
        Parameters
        ----------
        classifier : CellTypeClassifier
            Classifier whose features are extracted.
        cells : np.ndarray, optional
            Boolean mask or integer indices of the cells to extract.
            All cells when omitted.
            
        Returns
        -------
        X : np.ndarray or pd.DataFrame
            A DataFrame whose columns follow ``model.feature_names_in_`` when
            the model records them, otherwise an array in
            ``classifier.features`` order.
        """
        terms = getattr(classifier.model, 'feature_names_in_', None)
        if terms is None:
            return self.matrix(classifier.features, cells, owner=classifier.cell_type)
        
        columns = [str(term) for term in terms]
        features = [decode_feature_name(term) for term in columns]
        values = self.matrix(features, cells, owner=classifier.cell_type)
        return pd.DataFrame(values, columns=columns)
