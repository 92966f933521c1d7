"""Tests for hierarchical classification."""

import numpy as np
import pandas as pd
import pytest
import anndata as ad

from scclassifr import (
    CellTypeClassifier,
    ClassifierRegistry,
    ClassifyConfig,
    FeatureMismatchError,
    HierarchicalClassifier,
    LoadError,
    UnknownCellTypeError,
    classify_cells,
)
from scclassifr.core import positive_class_index, probability_column
from scclassifr.registry import DEFAULT_CLASSIFIERS_ENV

from conftest import ColumnProbabilityModel, FailingModel, make_classifier


class TestHelpers:
    
    def test_probability_column(self):
        assert probability_column('CD4+ T cells') == 'CD4+_T_cells_p'
        assert probability_column('NK', suffix='_prob') == 'NK_prob'
    
    @pytest.mark.parametrize('classes, expected', [
        ([False, True], 1),
        ([0, 1], 1),
        (['no', 'yes'], 1),
        (['B cells', 'others'], 0),
        (['a', 'b', 'c'], 2),
    ])
    def test_positive_class_index(self, classes, expected):
        class Model:
            classes_ = np.array(classes)
        
        assert positive_class_index(Model(), 'B cells') == expected
    
    def test_positive_class_index_without_classes(self):
        assert positive_class_index(object()) == -1


class TestConfig:
    
    def test_defaults(self):
        config = ClassifyConfig()
        assert config.expression_layer == 'X'
        assert config.missing_features == 'zero'
        assert config.unknown_label == 'unknown'
        assert config.ambiguity_separator == '/'
        assert config.predicted_key == 'predicted_cell_type'
        assert config.most_probable_key == 'most_probable_cell_type'
    
    @pytest.mark.parametrize('kwargs', [
        {'missing_features': 'impute'},
        {'unknown_label': ''},
        {'ambiguity_separator': ''},
        {'predicted_key': 'label', 'most_probable_key': 'label'},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ClassifyConfig(**kwargs)


class TestPredict:
    
    def test_end_to_end(self, score_adata, immune_registry):
        predictions = HierarchicalClassifier(score_adata).predict(immune_registry, inplace=False)
        
        assert predictions.loc['cell_X', 'most_probable_cell_type'] == 'B cells'
        assert predictions.loc['cell_X', 'predicted_cell_type'] == 'B cells'
        
        assert predictions.loc['cell_Y', 'CD4+_T_cells_p'] == pytest.approx(0.7)
        assert predictions.loc['cell_Y', 'most_probable_cell_type'] == 'CD4+ T cells'
        assert predictions.loc['cell_Y', 'predicted_cell_type'] == 'CD4+ T cells'
        
        assert predictions.loc['cell_V', 'most_probable_cell_type'] == 'T cells'
        assert predictions.loc['cell_V', 'CD4+_T_cells_p'] == pytest.approx(0.2)
    
    def test_output_columns(self, score_adata, immune_registry):
        predictions = HierarchicalClassifier(score_adata).predict(immune_registry, inplace=False)
        assert list(predictions.columns) == [
            'B_cells_p', 'T_cells_p', 'NK_p', 'CD4+_T_cells_p',
            'predicted_cell_type', 'most_probable_cell_type',
        ]
        assert list(predictions.index) == list(score_adata.obs_names)
    
    def test_gating_leaves_child_missing(self, score_adata, immune_registry):
        predictions = HierarchicalClassifier(score_adata).predict(immune_registry, inplace=False)
        
        # cell_X fails T cells, so CD4 is never evaluated despite a 0.7 score
        assert np.isnan(predictions.loc['cell_X', 'CD4+_T_cells_p'])
        assert predictions.loc['cell_X', 'T_cells_p'] == pytest.approx(0.1)
        assert not np.isnan(predictions['B_cells_p']).any()
    
    @pytest.mark.parametrize('child_threshold', [0.01, 0.5, 1.0])
    def test_gated_cells_never_get_child_label(self, score_adata, child_threshold):
        registry = ClassifierRegistry([
            make_classifier('B cells', 'B_SCORE'),
            make_classifier('T cells', 'T_SCORE'),
            make_classifier('CD4+ T cells', 'CD4_SCORE', threshold=child_threshold, parent='T cells'),
        ])
        predictions = HierarchicalClassifier(score_adata).predict(registry, inplace=False)
        
        for cell in ['cell_X', 'cell_Z', 'cell_W']:
            assert 'CD4+ T cells' not in predictions.loc[cell, 'predicted_cell_type']
            assert np.isnan(predictions.loc[cell, 'CD4+_T_cells_p'])
    
    def test_ambiguous_siblings(self, score_adata, immune_registry):
        predictions = HierarchicalClassifier(score_adata).predict(immune_registry, inplace=False)
        assert predictions.loc['cell_Z', 'predicted_cell_type'] == 'B cells/NK'
        assert predictions.loc['cell_Z', 'most_probable_cell_type'] == 'unknown'
    
    def test_ambiguity_follows_evaluation_order(self, score_adata):
        registry = ClassifierRegistry([
            make_classifier('NK', 'NK_SCORE'),
            make_classifier('B cells', 'B_SCORE'),
        ])
        predictions = HierarchicalClassifier(score_adata).predict(registry, inplace=False)
        assert predictions.loc['cell_Z', 'predicted_cell_type'] == 'NK/B cells'
    
    def test_ambiguity_between_child_and_other_root(self, score_adata):
        registry = ClassifierRegistry([
            make_classifier('T cells', 'T_SCORE'),
            make_classifier('CD4+ T cells', 'CD4_SCORE', parent='T cells'),
            make_classifier('Doublets', 'ACTB'),
        ])
        predictions = HierarchicalClassifier(score_adata).predict(registry, inplace=False)
        assert predictions.loc['cell_Y', 'predicted_cell_type'] == 'Doublets/CD4+ T cells'
        assert predictions.loc['cell_Y', 'most_probable_cell_type'] == 'unknown'
    
    def test_no_positive(self, score_adata, immune_registry):
        predictions = HierarchicalClassifier(score_adata).predict(immune_registry, inplace=False)
        assert predictions.loc['cell_W', 'predicted_cell_type'] == 'unknown'
        assert predictions.loc['cell_W', 'most_probable_cell_type'] == 'unknown'
        assert predictions.loc['cell_W', 'B_cells_p'] == 0.0
    
    def test_threshold_is_inclusive(self):
        adata = ad.AnnData(X=np.array([[0.5], [0.49]], dtype=np.float32))
        adata.var_names = ['B_SCORE']
        adata.obs_names = ['at', 'below']
        registry = ClassifierRegistry([make_classifier('B cells', 'B_SCORE', threshold=0.5)])
        
        predictions = HierarchicalClassifier(adata).predict(registry, inplace=False)
        assert list(predictions['predicted_cell_type']) == ['B cells', 'unknown']
    
    def test_threshold_above_one_never_positive(self, score_adata):
        registry = ClassifierRegistry([make_classifier('B cells', 'B_SCORE', threshold=1.5)])
        predictions = HierarchicalClassifier(score_adata).predict(registry, inplace=False)
        assert (predictions['predicted_cell_type'] == 'unknown').all()
    
    def test_child_registered_before_parent(self, score_adata):
        registry = ClassifierRegistry([
            make_classifier('CD4+ T cells', 'CD4_SCORE', parent='T cells'),
            make_classifier('T cells', 'T_SCORE'),
        ])
        predictions = HierarchicalClassifier(score_adata).predict(registry, inplace=False)
        assert predictions.loc['cell_Y', 'most_probable_cell_type'] == 'CD4+ T cells'
        assert np.isnan(predictions.loc['cell_X', 'CD4+_T_cells_p'])
    
    def test_requested_subset_includes_ancestors(self, score_adata, immune_registry):
        predictions = HierarchicalClassifier(score_adata).predict(
            immune_registry, cell_types=['CD4+ T cells'], inplace=False
        )
        assert [c for c in predictions.columns if c.endswith('_p')] == ['T_cells_p', 'CD4+_T_cells_p']
        assert predictions.loc['cell_X', 'predicted_cell_type'] == 'unknown'
    
    def test_unknown_cell_type(self, score_adata, immune_registry):
        with pytest.raises(UnknownCellTypeError):
            HierarchicalClassifier(score_adata).predict(immune_registry, cell_types=['Monocytes'])
    
    def test_no_eligible_cells_for_child(self, score_adata):
        registry = ClassifierRegistry([
            make_classifier('T cells', 'T_SCORE', threshold=0.99),
            CellTypeClassifier('CD4+ T cells', FailingModel(), ['CD4_SCORE'], 0.5, 'T cells'),
        ])
        predictions = HierarchicalClassifier(score_adata).predict(registry, inplace=False)
        assert predictions['CD4+_T_cells_p'].isna().all()
    
    def test_inplace(self, score_adata, immune_registry):
        result = HierarchicalClassifier(score_adata).predict(immune_registry)
        assert result is None
        assert score_adata.obs.loc['cell_Y', 'most_probable_cell_type'] == 'CD4+ T cells'
        assert 'CD4+_T_cells_p' in score_adata.obs.columns
        assert list(score_adata.obs['sample']) == ['S1'] * 5
    
    def test_return_probabilities(self, score_adata, immune_registry):
        predictions, probabilities = HierarchicalClassifier(score_adata).predict(
            immune_registry, inplace=False, return_probabilities=True
        )
        assert list(probabilities.columns) == ['B cells', 'T cells', 'NK', 'CD4+ T cells']
        np.testing.assert_allclose(
            probabilities['B cells'].to_numpy(), predictions['B_cells_p'].to_numpy()
        )
    
    def test_custom_keys(self, score_adata, immune_registry):
        config = ClassifyConfig(
            unknown_label='Unassigned',
            ambiguity_separator=' | ',
            predicted_key='label',
            most_probable_key='best_label',
            probability_suffix='_prob',
        )
        predictions = HierarchicalClassifier(score_adata, config).predict(immune_registry, inplace=False)
        assert predictions.loc['cell_Z', 'label'] == 'B cells | NK'
        assert predictions.loc['cell_Z', 'best_label'] == 'Unassigned'
        assert 'NK_prob' in predictions.columns
    
    def test_idempotent(self, score_adata, immune_registry):
        predictor = HierarchicalClassifier(score_adata)
        predictor.predict(immune_registry)
        first = score_adata.obs.copy()
        predictor.predict(immune_registry)
        pd.testing.assert_frame_equal(first, score_adata.obs)
    
    def test_failing_model_aborts_run(self, score_adata):
        registry = ClassifierRegistry([
            make_classifier('B cells', 'B_SCORE'),
            CellTypeClassifier('NK', FailingModel(), ['NK_SCORE'], 0.5),
        ])
        with pytest.raises(RuntimeError, match='inference failed'):
            HierarchicalClassifier(score_adata).predict(registry)
        assert 'B_cells_p' not in score_adata.obs.columns
        assert 'predicted_cell_type' not in score_adata.obs.columns
    
    def test_malformed_probabilities(self, score_adata):
        class ShortModel:
            def predict_proba(self, X):
                return np.zeros((1, 2))
        
        registry = ClassifierRegistry([CellTypeClassifier('B cells', ShortModel(), ['B_SCORE'], 0.5)])
        with pytest.raises(ValueError, match='shape'):
            HierarchicalClassifier(score_adata).predict(registry)
    
    def test_missing_features_error_policy(self, score_adata):
        registry = ClassifierRegistry([
            CellTypeClassifier('B cells', ColumnProbabilityModel(), ['B_SCORE', 'CD79A'], 0.5),
        ])
        config = ClassifyConfig(missing_features='error')
        with pytest.raises(FeatureMismatchError):
            HierarchicalClassifier(score_adata, config).predict(registry)
    
    def test_missing_features_zero_policy(self, score_adata):
        registry = ClassifierRegistry([
            CellTypeClassifier('B cells', ColumnProbabilityModel(), ['B_SCORE', 'CD79A'], 0.5),
        ])
        with pytest.warns(UserWarning, match='CD79A'):
            predictions = HierarchicalClassifier(score_adata).predict(registry, inplace=False)
        assert predictions.loc['cell_X', 'predicted_cell_type'] == 'B cells'
    
    def test_empty_dataset(self, score_adata, immune_registry):
        empty = score_adata[:0].copy()
        predictions = HierarchicalClassifier(empty).predict(immune_registry, inplace=False)
        assert len(predictions) == 0
        assert 'CD4+_T_cells_p' in predictions.columns
        assert 'most_probable_cell_type' in predictions.columns
        
        annotated = classify_cells(empty, immune_registry)
        assert annotated.n_obs == 0
        assert 'predicted_cell_type' in annotated.obs.columns
    
    def test_colliding_probability_columns(self, score_adata):
        registry = ClassifierRegistry([
            make_classifier('CD4 T', 'CD4_SCORE'),
            make_classifier('CD4_T', 'T_SCORE'),
        ])
        with pytest.raises(ValueError, match='CD4_T_p'):
            HierarchicalClassifier(score_adata).predict(registry)
        assert 'CD4_T_p' not in score_adata.obs.columns
    
    def test_probability_column_colliding_with_label_key(self, score_adata):
        config = ClassifyConfig(predicted_key='NK_p')
        registry = ClassifierRegistry([make_classifier('NK', 'NK_SCORE')])
        with pytest.raises(ValueError, match='predicted label'):
            HierarchicalClassifier(score_adata, config).predict(registry)


class TestClassifyCells:
    
    def test_returns_copy(self, score_adata, immune_registry):
        annotated = classify_cells(score_adata, immune_registry)
        assert annotated is not score_adata
        assert 'predicted_cell_type' not in score_adata.obs.columns
        assert annotated.obs.loc['cell_X', 'most_probable_cell_type'] == 'B cells'
        assert annotated.obs.loc['cell_Y', 'most_probable_cell_type'] == 'CD4+ T cells'
    
    def test_inplace(self, score_adata, immune_registry):
        annotated = classify_cells(score_adata, immune_registry, inplace=True)
        assert annotated is score_adata
        assert 'NK_p' in score_adata.obs.columns
    
    def test_accepts_records_and_subset(self, score_adata, immune_registry):
        annotated = classify_cells(score_adata, list(immune_registry.values()), cell_types='NK')
        assert annotated.obs.loc['cell_Z', 'predicted_cell_type'] == 'NK'
        assert 'B_cells_p' not in annotated.obs.columns
    
    def test_layer_selector(self, score_adata, immune_registry):
        score_adata.layers['shifted'] = score_adata.X * 0.0
        annotated = classify_cells(score_adata, immune_registry, layer='shifted')
        assert (annotated.obs['predicted_cell_type'] == 'unknown').all()
    
    def test_saved_classifiers(self, score_adata, tmp_path):
        path = tmp_path / 'classifiers.joblib'
        ClassifierRegistry([make_classifier('B cells', 'B_SCORE')]).save(path)
        annotated = classify_cells(score_adata, path)
        assert annotated.obs.loc['cell_X', 'predicted_cell_type'] == 'B cells'
    
    def test_default_classifiers_missing(self, score_adata, tmp_path, monkeypatch):
        monkeypatch.setenv(DEFAULT_CLASSIFIERS_ENV, str(tmp_path / 'missing.joblib'))
        with pytest.raises(LoadError):
            classify_cells(score_adata)
