"""Unit tests for the error taxonomy."""

import pytest

from heterocell.errors import (
    DegenerateInput,
    DuplicateAnnotationKey,
    EmptyAfterFilter,
    InsufficientOverlap,
    MalformedIdentifier,
    PipelineError,
    RegistryConflict,
)


class TestPipelineError:
    """Tests for the base error."""

    def test_context_fields(self):
        """Test the context carries stage, params and counts."""
        err = PipelineError(
            "QC removed all cells",
            stage="qc",
            params={"min_features": 500},
            counts_before=10,
            counts_after=0,
        )
        ctx = err.context()
        assert ctx["error"] == "PipelineError"
        assert ctx["stage"] == "qc"
        assert ctx["params"] == {"min_features": 500}
        assert ctx["counts_before"] == 10
        assert ctx["counts_after"] == 0

    def test_str_includes_stage_and_counts(self):
        """Test string form includes stage and counts."""
        err = EmptyAfterFilter("QC removed all cells", stage="qc", counts_before=4, counts_after=0)
        text = str(err)
        assert "QC removed all cells" in text
        assert "stage=qc" in text
        assert "counts=4->0" in text

    def test_str_without_context(self):
        """Test string form of a bare error is the message."""
        assert str(PipelineError("boom")) == "boom"

    @pytest.mark.parametrize(
        "cls",
        [EmptyAfterFilter, DegenerateInput, RegistryConflict],
    )
    def test_subclasses_are_pipeline_errors(self, cls):
        """Test every taxonomy member derives from PipelineError."""
        assert issubclass(cls, PipelineError)


class TestSpecificErrors:
    """Tests for errors with extra fields."""

    def test_malformed_identifier(self):
        """Test identifier and position are recorded."""
        err = MalformedIdentifier("bad-id", position=3)
        assert err.identifier == "bad-id"
        assert err.position == 3
        assert err.stage == "metadata"
        assert "'bad-id'" in err.message
        assert "position 3" in err.message

    def test_insufficient_overlap_pair(self):
        """Test the failing pair is part of the context."""
        err = InsufficientOverlap("too few anchors", pair=("D1", "D2"))
        assert err.pair == ("D1", "D2")
        assert err.stage == "integration"
        assert err.context()["pair"] == ["D1", "D2"]

    def test_degenerate_input_name(self):
        """Test the degenerate item name is kept."""
        err = DegenerateInput("zero variance", name="GENE1", stage="pca")
        assert err.name == "GENE1"
        assert err.stage == "pca"

    def test_duplicate_annotation_key_preview(self):
        """Test the message lists at most five keys."""
        keys = [f"k{i}" for i in range(7)]
        err = DuplicateAnnotationKey(keys)
        assert err.keys == keys
        assert "7 duplicate key(s)" in err.message
        assert "k4, ..." in err.message
        assert "k5" not in err.message
