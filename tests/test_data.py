"""
Tests for the ARD dataset container.

This module tests input validation, the DataFrame constructor and the derived
quantities of ARDDataset.
"""

import numpy as np
import pandas as pd
import pytest

from ard_nsum.data import ARDDataset, coerce_dataset
from ard_nsum.errors import ARDValidationError, ValidationError


class TestValidation:
    """Malformed inputs fail before any computation."""

    def test_valid_dataset(self, small_ard):
        dataset = ARDDataset.from_arrays(**small_ard)
        assert dataset.n_respondents == 5
        assert dataset.n_subpopulations == 4
        assert dataset.population_total == 1000.0
        assert dataset.ard.dtype == np.int64

    def test_arrays_are_read_only(self, small_ard):
        """Stored arrays cannot be mutated, not even through the caller's original."""
        dataset = ARDDataset.from_arrays(**small_ard)
        with pytest.raises(ValueError):
            dataset.ard[0, 0] = 99
        small_ard['ard'][0, 0] = 99
        assert dataset.ard[0, 0] == 2

    def test_validation_error_alias(self):
        assert ValidationError is ARDValidationError
        assert issubclass(ARDValidationError, ValueError)

    @pytest.mark.parametrize("ard, message", [
        ([[1, -1], [0, 2]], "negative"),
        ([[1.5, 1], [0, 2]], "non-integer"),
        ([[1, np.nan], [0, 2]], "non-finite"),
        ([1, 2, 3], "2-dimensional"),
        (np.zeros((0, 2)), "non-empty"),
    ])
    def test_bad_ard_matrix(self, ard, message):
        with pytest.raises(ARDValidationError, match=message):
            ARDDataset.from_arrays(ard, [10.0], [0], 100.0)

    def test_float_counts_with_integer_values_are_accepted(self):
        dataset = ARDDataset.from_arrays([[1.0, 2.0], [0.0, 3.0]], [10.0], [0], 100.0)
        assert dataset.ard.dtype == np.int64

    def test_known_index_out_of_range(self, small_ard):
        small_ard['known_indices'] = np.array([0, 4])
        with pytest.raises(ARDValidationError, match="outside the column range"):
            ARDDataset.from_arrays(**small_ard)

    def test_duplicate_known_indices(self, small_ard):
        small_ard['known_indices'] = np.array([1, 1])
        with pytest.raises(ARDValidationError, match="duplicate"):
            ARDDataset.from_arrays(**small_ard)

    def test_known_sizes_length_mismatch(self, small_ard):
        small_ard['known_sizes'] = np.array([100.0])
        with pytest.raises(ARDValidationError, match="known_sizes has 1 entries"):
            ARDDataset.from_arrays(**small_ard)

    def test_empty_known_indices(self, small_ard):
        small_ard['known_indices'] = np.array([], dtype=int)
        small_ard['known_sizes'] = np.array([])
        with pytest.raises(ARDValidationError, match="at least one"):
            ARDDataset.from_arrays(**small_ard)

    def test_non_positive_known_size(self, small_ard):
        small_ard['known_sizes'] = np.array([100.0, 0.0])
        with pytest.raises(ARDValidationError, match="positive"):
            ARDDataset.from_arrays(**small_ard)

    @pytest.mark.parametrize("total", [0, -5, 150.0])
    def test_population_total_checks(self, small_ard, total):
        """The total must be positive and at least the largest known size."""
        small_ard['population_total'] = total
        with pytest.raises(ARDValidationError):
            ARDDataset.from_arrays(**small_ard)

    def test_covariate_dimension_mismatch(self, small_ard):
        with pytest.raises(ARDValidationError, match="x has 3 columns"):
            ARDDataset.from_arrays(**small_ard, x=np.zeros((5, 3)))
        with pytest.raises(ARDValidationError, match="z_global has 4 rows"):
            ARDDataset.from_arrays(**small_ard, z_global=np.zeros((4, 2)))

    def test_one_dimensional_covariate_becomes_column(self, small_ard):
        dataset = ARDDataset.from_arrays(**small_ard, z_global=np.arange(5.0))
        assert dataset.z_global.shape == (5, 1)

    def test_group_indices_must_be_known(self, small_ard):
        with pytest.raises(ARDValidationError, match="subset of known_indices"):
            ARDDataset.from_arrays(**small_ard, group1_index=[2])

    def test_group2_requires_group1(self, small_ard):
        with pytest.raises(ARDValidationError, match="group2_index requires group1_index"):
            ARDDataset.from_arrays(**small_ard, group2_index=[1])

    def test_secondary_requires_group2(self, small_ard):
        with pytest.raises(ARDValidationError, match="requires group2_index"):
            ARDDataset.from_arrays(**small_ard, group1_index=[0], group2_secondary_index=[1])


class TestDerivedQuantities:
    """Properties computed from a validated dataset."""

    def test_unknown_indices_and_prevalences(self, small_ard):
        dataset = ARDDataset.from_arrays(**small_ard)
        np.testing.assert_array_equal(dataset.unknown_indices, [2, 3])
        np.testing.assert_allclose(dataset.known_prevalences, [0.1, 0.2])
        assert dataset.known_size_map == {0: 100.0, 1: 200.0}
        assert not dataset.has_groups

    def test_default_labels(self, small_ard):
        dataset = ARDDataset.from_arrays(**small_ard)
        assert dataset.column_labels() == ['subpop_0', 'subpop_1', 'subpop_2', 'subpop_3']
        assert dataset.row_labels()[0] == 'respondent_0'

    def test_with_options_revalidates(self, small_ard):
        dataset = ARDDataset.from_arrays(**small_ard)
        assert dataset.with_options() is dataset
        with_groups = dataset.with_options(group1_index=[0, 1])
        assert with_groups.has_groups
        with pytest.raises(ARDValidationError):
            dataset.with_options(group1_index=[3])

    def test_coerce_dataset_requires_anchors_for_raw_arrays(self, small_ard):
        with pytest.raises(ARDValidationError, match="required"):
            coerce_dataset(small_ard['ard'])

    def test_coerce_dataset_keeps_dataset_anchors(self, small_ard):
        dataset = ARDDataset.from_arrays(**small_ard)
        coerced = coerce_dataset(dataset, z_global=np.ones(5))
        np.testing.assert_array_equal(coerced.known_indices, dataset.known_indices)
        assert coerced.z_global.shape == (5, 1)


class TestFromFrame:
    """Building a dataset from a respondents-by-subpopulations table."""

    @pytest.fixture
    def frame(self):
        return pd.DataFrame({
            'respondent_id': ['r1', 'r2', 'r3'],
            'nurses': [2, 0, 1],
            'teachers': [1, 3, 0],
            'hidden': [0, 1, 4],
        })

    def test_from_frame(self, frame):
        dataset = ARDDataset.from_frame(
            frame,
            known_sizes={'teachers': 300.0, 'nurses': 200.0},
            population_total=10000,
            respondent_id_column='respondent_id',
            group1=['nurses'],
        )
        assert dataset.subpopulation_names == ['nurses', 'teachers', 'hidden']
        assert dataset.respondent_ids == ['r1', 'r2', 'r3']
        np.testing.assert_array_equal(dataset.known_indices, [1, 0])
        np.testing.assert_array_equal(dataset.known_sizes, [300.0, 200.0])
        np.testing.assert_array_equal(dataset.group1_index, [0])
        np.testing.assert_array_equal(dataset.ard[:, 2], [0, 1, 4])

    def test_from_frame_rejects_negative_counts(self, frame):
        frame.loc[0, 'hidden'] = -1
        with pytest.raises(ARDValidationError, match="failed validation"):
            ARDDataset.from_frame(frame, {'nurses': 200.0}, 10000, respondent_id_column='respondent_id')

    def test_from_frame_rejects_fractional_counts(self, frame):
        """Fractional counts fail validation instead of being truncated."""
        frame['hidden'] = [0.0, 1.5, 4.0]
        with pytest.raises(ARDValidationError, match="failed validation"):
            ARDDataset.from_frame(frame, {'nurses': 200.0}, 10000, respondent_id_column='respondent_id')

    def test_from_frame_accepts_whole_float_counts(self, frame):
        frame['hidden'] = [0.0, 1.0, 4.0]
        dataset = ARDDataset.from_frame(frame, {'nurses': 200.0}, 10000, respondent_id_column='respondent_id')
        assert dataset.ard.dtype == np.int64
        np.testing.assert_array_equal(dataset.ard[:, 2], [0, 1, 4])

    def test_from_frame_unknown_subpopulation(self, frame):
        with pytest.raises(ARDValidationError, match="unknown subpopulations"):
            ARDDataset.from_frame(frame, {'doctors': 50.0}, 10000, respondent_id_column='respondent_id')

    def test_from_frame_missing_id_column(self, frame):
        with pytest.raises(ARDValidationError, match="not found"):
            ARDDataset.from_frame(frame, {'nurses': 200.0}, 10000, respondent_id_column='id')
