"""Unit tests for position compression."""

import pytest

from src.liveaid.compression import PositionCompressor, compressed_mapping, preserves_order
from src.liveaid.errors import ContentionError, ErrorCode
from src.liveaid.models import TubeId


@pytest.fixture
def compressor(registry, locks):
    return PositionCompressor(registry, locks, gap_threshold=2)


@pytest.fixture
def sparse_user(make_user):
    return make_user("u1", {TubeId.TUBE1: {2: "A", 5: "B", 9: "C", 1000: "D"}})


def test_compressed_mapping_renumbers_in_order():
    assert compressed_mapping({3: "x", 1: "y", 40: "z"}) == {1: "y", 2: "x", 3: "z"}


def test_preserves_order_detects_reordering():
    assert preserves_order({1: "a", 5: "b"}, {1: "a", 2: "b"}) is True
    assert preserves_order({1: "a", 5: "b"}, {1: "b", 2: "a"}) is False


class TestCompressTube:
    def test_compresses_to_dense_range(self, compressor, sparse_user):
        result = compressor.compress_tube_positions("u1", TubeId.TUBE1)

        assert sparse_user.tube(TubeId.TUBE1).ordered() == [(1, "A"), (2, "B"), (3, "C"), (4, "D")]
        assert result.original_count == 1000
        assert result.compressed_count == 4
        assert result.gaps_removed == 996
        assert result.ratio == pytest.approx(0.004)
        assert result.dry_run is False

    def test_is_idempotent(self, compressor, sparse_user):
        compressor.compress_tube_positions("u1", TubeId.TUBE1)
        version = sparse_user.tube(TubeId.TUBE1).version

        second = compressor.compress_tube_positions("u1", TubeId.TUBE1)

        assert second.gaps_removed == 0
        assert second.ratio == 1.0
        assert sparse_user.tube(TubeId.TUBE1).version == version

    def test_dry_run_does_not_mutate(self, compressor, sparse_user):
        before = sparse_user.tube(TubeId.TUBE1).ordered()

        result = compressor.compress_tube_positions("u1", TubeId.TUBE1, dry_run=True)

        assert result.dry_run is True
        assert result.mapping == {1: "A", 2: "B", 3: "C", 4: "D"}
        assert sparse_user.tube(TubeId.TUBE1).ordered() == before

    def test_stale_version_rejected(self, compressor, sparse_user):
        stale = sparse_user.tube(TubeId.TUBE1).version
        sparse_user.tube(TubeId.TUBE1).place("E", 3)

        with pytest.raises(ContentionError) as exc_info:
            compressor.compress_tube_positions("u1", TubeId.TUBE1, expected_version=stale)

        assert exc_info.value.code == ErrorCode.COMPRESSION_WOULD_BREAK_ORDERING

    def test_progress_untouched(self, compressor, sparse_user):
        sparse_user.progress_for("B").skip_number = 30
        sparse_user.progress_for("B").boundary_level = 4

        compressor.compress_tube_positions("u1", TubeId.TUBE1)

        assert sparse_user.progress["B"].skip_number == 30
        assert sparse_user.progress["B"].boundary_level == 4

    def test_empty_tube(self, compressor, sparse_user):
        result = compressor.compress_tube_positions("u1", TubeId.TUBE3)

        assert result.compressed_count == 0
        assert result.gaps_removed == 0
        assert result.ratio == 1.0


class TestShouldCompress:
    def test_threshold(self, compressor, make_user):
        state = make_user("u2", {TubeId.TUBE1: {1: "A", 3: "B"}, TubeId.TUBE2: {1: "X", 6: "Y"}})

        assert compressor.should_compress(state.tube(TubeId.TUBE1)) is False
        assert compressor.should_compress(state.tube(TubeId.TUBE2)) is True
