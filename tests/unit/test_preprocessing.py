"""Unit tests for preprocessing module."""

import pytest
import numpy as np
import pandas as pd

from heterocell.core import ExpressionMatrix
from heterocell.core.preprocessing import (
    BatchPartitioner,
    CellQC,
    FeatureSelectionConfig,
    FeatureSelector,
    MetadataBuilder,
    MetadataConfig,
    NormalizationConfig,
    Normalizer,
    QCConfig,
    log_normalize,
)
from heterocell.errors import (
    DegenerateInput,
    DuplicateAnnotationKey,
    EmptyAfterFilter,
    MalformedIdentifier,
)


def build_matrix(table: pd.DataFrame) -> ExpressionMatrix:
    metadata = MetadataBuilder().build(table.columns).metadata
    return ExpressionMatrix.from_gene_by_cell(table, obs=metadata)


def normalize(table: pd.DataFrame, **kwargs):
    partition = BatchPartitioner("donor").partition(build_matrix(table))
    return Normalizer(NormalizationConfig(**kwargs)).normalize(partition)


class TestConfigs:
    """Tests for preprocessing config defaults."""

    def test_qc_defaults(self):
        """Test default QC bounds."""
        config = QCConfig()
        assert config.min_features == 500
        assert config.max_percent_mito == 15.0
        assert config.max_total_counts == 100000

    def test_metadata_defaults(self):
        """Test default metadata settings."""
        config = MetadataConfig()
        assert config.batch_col == "donor"
        assert config.duplicate_policy == "first"


class TestMetadataBuilder:
    """Tests for MetadataBuilder."""

    def test_parse_identifier(self):
        """Test an identifier splits into donor, barcode and replicate."""
        fields = MetadataBuilder().parse_identifier("D7.ACGTTGCA.2")
        assert fields == {
            "donor": "D7",
            "barcode": "ACGTTGCA",
            "replicate": "2",
            "replicate_name": "D7_2",
        }

    @pytest.mark.parametrize("bad", ["D1_ACGT_1", "D1.ACGX.1", "D1.ACGT", "D1.ACGT.12"])
    def test_malformed_identifier(self, bad):
        """Test identifiers outside the pattern abort parsing."""
        with pytest.raises(MalformedIdentifier):
            MetadataBuilder().parse_identifier(bad)

    def test_malformed_position_reported(self):
        """Test the first malformed identifier is reported with its position."""
        with pytest.raises(MalformedIdentifier) as exc_info:
            MetadataBuilder().parse_identifiers(["D1.AC.1", "D1.AG.1", "oops"])
        assert exc_info.value.position == 2

    def test_build_preserves_order(self, counts):
        """Test one metadata row per cell, in input order."""
        result = MetadataBuilder().build(counts.columns)
        assert result.n_cells == counts.shape[1]
        assert list(result.metadata.index) == list(counts.columns)
        assert sorted(result.metadata["donor"].unique()) == ["D1", "D2", "D3"]

    def test_annotation_join_normalizes_separators(self, counts, annotations):
        """Test annotation keys written with '_' match '.' identifiers."""
        result = MetadataBuilder().build(counts.columns, annotations)
        assert result.n_annotated == counts.shape[1]
        assert result.unmatched_cells == []
        assert result.metadata["cell_type"].iloc[0] == "type_0"
        assert result.metadata["cell_type"].iloc[1] == "type_1"

    def test_unmatched_cells_left_empty(self, counts, annotations):
        """Test cells without an annotation row keep empty fields."""
        partial = annotations.iloc[10:]
        result = MetadataBuilder().build(counts.columns, partial)
        assert len(result.metadata) == counts.shape[1]
        assert len(result.unmatched_cells) == 10
        assert result.metadata["cell_type"].iloc[:10].isna().all()
        assert result.metadata["cell_type"].iloc[10:].notna().all()

    def test_extra_annotation_rows_ignored(self, counts):
        """Test annotation rows with no matching cell do not add cells."""
        from tests.fixtures import create_mock_annotations

        table = create_mock_annotations(list(counts.columns), extra_rows=["D9_AAAA_1"])
        result = MetadataBuilder().build(counts.columns, table)
        assert result.n_cells == counts.shape[1]

    def test_duplicate_keys_first_wins(self, counts, annotations):
        """Test the first duplicate row is kept and duplicates are reported."""
        dup = annotations.iloc[[0]].assign(cell_type="other")
        table = pd.concat([annotations, dup], ignore_index=True)
        result = MetadataBuilder().build(counts.columns, table)
        assert result.metadata["cell_type"].iloc[0] == "type_0"
        assert len(result.duplicate_keys) == 1

    def test_duplicate_keys_rejected(self, counts, annotations):
        """Test the reject policy raises on duplicate keys."""
        table = pd.concat([annotations, annotations.iloc[[0]]], ignore_index=True)
        builder = MetadataBuilder(MetadataConfig(duplicate_policy="reject"))
        with pytest.raises(DuplicateAnnotationKey):
            builder.build(counts.columns, table)

    def test_derived_column_clash_renamed(self, counts, annotations):
        """Test an annotation column named like a derived column is suffixed."""
        table = annotations.assign(donor="X")
        result = MetadataBuilder().build(counts.columns, table)
        assert result.metadata["donor"].iloc[0] == "D1"
        assert result.metadata["donor_annotation"].iloc[0] == "X"


class TestCellQC:
    """Tests for CellQC."""

    def test_high_count_cells_removed(self, counts_with_outliers):
        """Test inflated cells fail the total-count bound with their reason."""
        matrix = build_matrix(counts_with_outliers)
        qc = CellQC(QCConfig(min_features=20, max_total_counts=5000)).filter(matrix)
        assert qc.cells_total == 180
        assert qc.cells_removed == 15
        assert qc.cells_retained == 165
        assert qc.reason_counts["high_counts"] == 15
        removed = qc.removal_table()
        assert set(removed["reasons"]) == {"high_counts"}
        assert qc.matrix.n_cells == 165

    def test_bounds_are_strict(self, tiny_counts):
        """Test a cell exactly at the mito bound is removed."""
        matrix = build_matrix(tiny_counts)
        qc = CellQC(QCConfig(min_features=2, max_percent_mito=30.0)).filter(matrix)
        assert qc.cells_removed == 2
        assert list(qc.matrix.cell_ids) == [matrix.cell_ids[1], matrix.cell_ids[3]]

    def test_total_counts_bound_strict(self, tiny_counts):
        """Test a cell whose total equals max_total_counts is removed for high counts."""
        matrix = build_matrix(tiny_counts)
        qc = CellQC(
            QCConfig(min_features=2, max_percent_mito=100.0, max_total_counts=20)
        ).filter(matrix)
        assert qc.cells_removed == 1
        assert qc.reason_counts == {"low_features": 0, "high_mito": 0, "high_counts": 1}
        assert bool(qc.reasons.loc[matrix.cell_ids[0], "high_counts"]) is True
        assert qc.removal_table()["reasons"].tolist() == ["high_counts"]
        assert list(qc.matrix.cell_ids) == list(matrix.cell_ids[1:])

    def test_min_features_strict(self, tiny_counts):
        """Test cells with exactly min_features detected genes are removed."""
        matrix = build_matrix(tiny_counts)
        with pytest.raises(EmptyAfterFilter) as exc_info:
            CellQC(QCConfig(min_features=3)).filter(matrix)
        assert exc_info.value.stage == "qc"
        assert exc_info.value.counts_before == 4
        assert exc_info.value.counts_after == 0

    def test_input_not_modified(self, tiny_counts):
        """Test filtering leaves the input matrix untouched."""
        matrix = build_matrix(tiny_counts)
        CellQC(QCConfig(min_features=2, max_percent_mito=30.0)).filter(matrix)
        assert matrix.n_cells == 4
        assert "total_counts" not in matrix.obs.columns

    def test_summarize_by_donor(self, counts_with_outliers):
        """Test per-donor retained and removed counts."""
        qc_engine = CellQC(QCConfig(min_features=20, max_total_counts=5000))
        qc = qc_engine.filter(build_matrix(counts_with_outliers))
        summary = qc_engine.summarize_by(qc, "donor")
        assert summary["donor"].tolist() == ["D1", "D2", "D3"]
        assert summary["cells_removed"].tolist() == [5, 5, 5]
        assert summary["cells_retained"].tolist() == [55, 55, 55]


class TestBatchPartitioner:
    """Tests for BatchPartitioner."""

    def test_partition_covers_all_cells(self, counts):
        """Test views are disjoint and cover every cell."""
        matrix = build_matrix(counts)
        partition = BatchPartitioner("donor").partition(matrix)
        assert partition.labels == ["D1", "D2", "D3"]
        assert partition.sizes() == {"D1": 60, "D2": 60, "D3": 60}
        positions = np.concatenate([v.positions for v in partition])
        assert sorted(positions.tolist()) == list(range(180))

    def test_cell_batches(self, counts):
        """Test per-cell batch labels follow cell identity."""
        matrix = build_matrix(counts)
        batches = BatchPartitioner("donor").partition(matrix).cell_batches()
        assert batches.loc[counts.columns[0]] == "D1"
        assert batches.loc[counts.columns[-1]] == "D3"

    def test_missing_column(self, counts):
        """Test an unknown batch column raises."""
        with pytest.raises(KeyError):
            BatchPartitioner("sample").partition(build_matrix(counts))


class TestNormalizer:
    """Tests for per-batch log normalization."""

    def test_rows_sum_to_scale_factor(self, counts):
        """Test every cell's un-logged values sum to the scale factor."""
        normalized = normalize(counts, scale_factor=1000.0)
        totals = np.expm1(normalized.values.toarray()).sum(axis=1)
        np.testing.assert_allclose(totals, 1000.0)

    def test_rows_in_parent_order(self, counts):
        """Test normalized rows follow the matrix cell order."""
        normalized = normalize(counts)
        assert list(normalized.cell_ids) == list(counts.columns)
        assert set(normalized.per_batch) == {"D1", "D2", "D3"}

    def test_batch_uses_own_totals(self, counts):
        """Test a batch normalized alone equals its rows in the full result."""
        normalized = normalize(counts)
        partition = BatchPartitioner("donor").partition(build_matrix(counts))
        alone = Normalizer().normalize_view(partition.view("D2"))
        rows = normalized.values[alone.positions].toarray()
        np.testing.assert_allclose(rows, alone.normalized.toarray())

    def test_zero_total_cell_stays_zero(self):
        """Test a cell with no counts normalizes to all zeros."""
        values, totals = log_normalize(np.array([[0, 0], [1, 3]]), 10.0)
        assert totals.tolist() == [0.0, 4.0]
        np.testing.assert_array_equal(values.toarray()[0], [0.0, 0.0])
        np.testing.assert_allclose(values.toarray()[1], np.log1p([2.5, 7.5]))

    def test_parallel_matches_serial(self, counts):
        """Test joblib workers give the same result as serial normalization."""
        serial = normalize(counts, n_jobs=1)
        parallel = normalize(counts, n_jobs=2)
        np.testing.assert_allclose(serial.values.toarray(), parallel.values.toarray())

    def test_summary(self, counts):
        """Test one summary row per batch."""
        summary = Normalizer().summary(normalize(counts))
        assert len(summary) == 3


class TestFeatureSelector:
    """Tests for FeatureSelector."""

    def test_selects_top_n(self, counts):
        """Test exactly n_top_genes genes are selected, in rank order."""
        result = FeatureSelector(FeatureSelectionConfig(n_top_genes=50)).select(normalize(counts))
        assert result.n_selected == 50
        assert result.table["selected"].sum() == 50
        ranks = result.table.loc[result.selected, "rank"].tolist()
        assert ranks == list(range(1, 51))

    def test_marker_genes_preferred(self, counts):
        """Test cell-type marker genes rank above background genes."""
        result = FeatureSelector(FeatureSelectionConfig(n_top_genes=100)).select(normalize(counts))
        markers = [f"GENE{i:04d}" for i in range(45)]
        assert len(set(markers) & set(result.selected)) >= 35

    def test_zero_variance_gene_excluded(self, counts):
        """Test an all-zero gene is excluded and recorded."""
        table = counts.copy()
        table.loc["SILENT"] = 0
        result = FeatureSelector(FeatureSelectionConfig(n_top_genes=500)).select(normalize(table))
        assert "SILENT" in result.table.index
        assert not result.table.loc["SILENT", "selected"]
        assert result.excluded.loc[result.excluded["name"] == "SILENT", "reason"].item() == "zero_variance"
        assert result.n_selected == len(result.table) - len(result.excluded)

    def test_all_degenerate(self, tiny_counts):
        """Test a matrix with no variable gene raises DegenerateInput."""
        flat = pd.DataFrame(0, index=tiny_counts.index, columns=tiny_counts.columns)
        with pytest.raises(DegenerateInput):
            FeatureSelector().select(normalize(flat))

    def test_deterministic(self, counts):
        """Test two runs give the same ranking."""
        normalized = normalize(counts)
        first = FeatureSelector(FeatureSelectionConfig(n_top_genes=80)).select(normalized)
        second = FeatureSelector(FeatureSelectionConfig(n_top_genes=80)).select(normalized)
        assert first.selected == second.selected
