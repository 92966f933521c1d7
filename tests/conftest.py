"""Shared fixtures: synthetic AnnData objects and stand-in models."""

import numpy as np
import pandas as pd
import pytest
import anndata as ad
from scipy import sparse

from scclassifr import CellTypeClassifier, ClassifierRegistry


class ColumnProbabilityModel:
    """Model returning the first input column as the positive probability."""
    
    classes_ = np.array([False, True])
    
    def predict_proba(self, X):
        p = np.clip(np.asarray(X, dtype=float)[:, 0], 0.0, 1.0)
        return np.column_stack([1.0 - p, p])


class FailingModel:
    """Model whose inference always fails."""
    
    def predict_proba(self, X):
        raise RuntimeError("inference failed")


# Per-cell probabilities encoded directly as expression values
SCORE_GENES = ['B_SCORE', 'T_SCORE', 'NK_SCORE', 'CD4_SCORE', 'ACTB']
SCORES = {
    #            B     T     NK    CD4   ACTB
    'cell_X': [0.90, 0.10, 0.05, 0.70, 5.0],  # B cells
    'cell_Y': [0.10, 0.80, 0.05, 0.70, 5.0],  # T cells -> CD4+ T cells
    'cell_Z': [0.60, 0.00, 0.70, 0.00, 5.0],  # B cells and NK
    'cell_W': [0.00, 0.00, 0.00, 0.00, 5.0],  # nothing
    'cell_V': [0.10, 0.90, 0.00, 0.20, 5.0],  # T cells, CD4 fails
}


def make_classifier(cell_type, gene, threshold=0.5, parent=None):
    return CellTypeClassifier(cell_type, ColumnProbabilityModel(), [gene], threshold, parent)


@pytest.fixture
def score_adata():
    """Small dataset whose expression values are classifier probabilities."""
    X = np.array(list(SCORES.values()), dtype=np.float32)
    adata = ad.AnnData(X=X)
    adata.var_names = SCORE_GENES
    adata.obs_names = list(SCORES.keys())
    adata.obs['sample'] = 'S1'
    return adata


@pytest.fixture
def immune_registry():
    """B cells, T cells and NK roots with a CD4+ T cells child."""
    return ClassifierRegistry([
        make_classifier('B cells', 'B_SCORE'),
        make_classifier('T cells', 'T_SCORE'),
        make_classifier('NK', 'NK_SCORE'),
        make_classifier('CD4+ T cells', 'CD4_SCORE', parent='T cells'),
    ])


def create_synthetic_data(n_cells=300, n_genes=60, seed=42):
    """Create synthetic single-cell data with known cell types."""
    rng = np.random.default_rng(seed)
    
    # Define cell type proportions
    cell_types = ['B cells', 'CD4+ T cells', 'CD8+ T cells', 'NK']
    proportions = [0.3, 0.2, 0.2, 0.3]
    
    cell_labels = []
    for ct, prop in zip(cell_types, proportions):
        cell_labels.extend([ct] * int(n_cells * prop))
    cell_labels = (cell_labels + [cell_types[0]] * n_cells)[:n_cells]
    
    marker_genes = {
        'B cells': ['CD19', 'MS4A1'],
        'CD4+ T cells': ['CD3D', 'CD3E', 'CD4', 'IL7R'],
        'CD8+ T cells': ['CD3D', 'CD3E', 'CD8A'],
        'NK': ['KLRD1', 'NCR1'],
    }
    
    # Create gene list
    all_marker_genes = []
    for genes in marker_genes.values():
        all_marker_genes.extend(g for g in genes if g not in all_marker_genes)
    random_genes = [f'GENE_{i:04d}' for i in range(len(all_marker_genes), n_genes)]
    gene_names = all_marker_genes + random_genes
    
    # Background expression
    X = rng.poisson(1.0, size=(n_cells, n_genes)).astype(np.float32)
    
    # Add cell-type-specific signal
    for i, cell_type in enumerate(cell_labels):
        for gene in marker_genes[cell_type]:
            X[i, gene_names.index(gene)] += rng.poisson(12)
    
    X = np.log1p(X)
    
    adata = ad.AnnData(X=sparse.csr_matrix(X))
    adata.var_names = gene_names
    adata.obs_names = [f'CELL_{i:06d}' for i in range(n_cells)]
    adata.obs['cell_type'] = pd.Categorical(cell_labels)
    return adata


@pytest.fixture(scope='module')
def training_adata():
    return create_synthetic_data()
