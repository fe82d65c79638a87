"""Unit tests for the sparse per-tube position map."""

import pytest

from src.liveaid.errors import ContentionError, ErrorCode, InvalidInputError, NotFoundError
from src.liveaid.models import TubeId
from src.liveaid.position_store import PositionStore


@pytest.fixture
def store():
    return PositionStore(TubeId.TUBE1, {1: "A", 2: "B", 5: "C"})


class TestReads:
    def test_position_lookup(self, store):
        assert store.position_of("C") == 5
        assert store.stitch_at(2) == "B"

    def test_active_stitch_is_lowest_position(self):
        store = PositionStore(TubeId.TUBE2, {7: "X", 3: "Y", 12: "Z"})
        assert store.active_stitch() == "Y"

    def test_empty_tube_has_no_active_stitch(self):
        assert PositionStore(TubeId.TUBE3).active_stitch() is None

    def test_ordered_and_gaps(self, store):
        assert store.ordered() == [(1, "A"), (2, "B"), (5, "C")]
        assert store.gaps() == [3, 4]
        assert store.next_available_position() == 3

    def test_next_available_without_gaps(self):
        store = PositionStore(TubeId.TUBE1, {1: "A", 2: "B"})
        assert store.next_available_position() == 3

    def test_missing_stitch(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.position_of("nope")
        assert exc_info.value.code == ErrorCode.STITCH_NOT_FOUND

    def test_missing_position(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.stitch_at(3)
        assert exc_info.value.code == ErrorCode.POSITION_NOT_FOUND

    def test_snapshot_is_read_only_and_detached(self, store):
        snap = store.snapshot()
        with pytest.raises(TypeError):
            snap[9] = "D"  # type: ignore[index]
        store.place("D", 9)
        assert 9 not in snap


class TestWrites:
    def test_place_bumps_version(self, store):
        before = store.version
        store.place("D", 3)
        assert store.stitch_at(3) == "D"
        assert store.version == before + 1

    def test_place_occupied_position(self, store):
        with pytest.raises(ContentionError) as exc_info:
            store.place("D", 2)
        assert exc_info.value.code == ErrorCode.POSITION_OCCUPIED

    def test_place_duplicate_stitch(self, store):
        with pytest.raises(ContentionError) as exc_info:
            store.place("A", 10)
        assert exc_info.value.code == ErrorCode.POSITION_OCCUPIED

    @pytest.mark.parametrize("position", [0, -4])
    def test_place_out_of_range(self, store, position):
        with pytest.raises(InvalidInputError) as exc_info:
            store.place("D", position)
        assert exc_info.value.code == ErrorCode.INVALID_POSITION_RANGE

    def test_append_fills_first_gap(self, store):
        assert store.append("D") == 3

    def test_remove_returns_vacated_position(self, store):
        assert store.remove("B") == 2
        assert "B" not in store
        assert len(store) == 2

    def test_replace_with_stale_version(self, store):
        stale = store.version
        store.place("D", 3)
        with pytest.raises(ContentionError) as exc_info:
            store.replace({1: "A"}, expected_version=stale)
        assert exc_info.value.code == ErrorCode.VERSION_CONFLICT
        assert store.stitch_at(3) == "D"

    def test_replace_rejects_duplicate_stitch(self, store):
        before = store.ordered()
        with pytest.raises(ContentionError):
            store.replace({1: "A", 2: "A"})
        assert store.ordered() == before

    def test_constructor_validates_mapping(self):
        with pytest.raises(InvalidInputError):
            PositionStore(TubeId.TUBE1, {0: "A"})
