"""
Default curriculum seed.

New users start with the same three tubes: doubling in tube1, multiplication
in tube2 (which also carries doubling concept 0001, since a concept may live
in more than one tube) and division in tube3.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import NamedTuple

from .content import Fact, facts_from_mapping
from .models import Stitch, TubeId


class SeedEntry(NamedTuple):
    tube_id: TubeId
    position: int
    stitch_id: str
    concept_code: str
    concept_name: str


def _doubling_name(n: int) -> str:
    if n <= 7:
        band = "0_5"
    elif n <= 14:
        band = "1_4"
    else:
        band = "6_9"
    return f"doubling_{band}_endings_{n}"


def _default_entries() -> list[SeedEntry]:
    entries = [
        SeedEntry(TubeId.TUBE1, n, f"stitch_t1_p{n}", f"{n:04d}", _doubling_name(n))
        for n in range(1, 21)
    ]
    entries += [
        SeedEntry(TubeId.TUBE2, position, f"stitch_t2_p{position}", f"{table:04d}", f"multiplication_{table}x")
        for position, table in enumerate(range(19, 2, -1), start=1)
    ]
    entries.append(SeedEntry(TubeId.TUBE2, 18, "stitch_t2_p18", "0001", _doubling_name(1)))
    entries += [
        SeedEntry(TubeId.TUBE3, n, f"stitch_t3_p{n}", f"{1000 + n}", f"division_algebra_{n}")
        for n in range(1, 11)
    ]
    return entries


DEFAULT_TUBE_SEED: tuple[SeedEntry, ...] = tuple(_default_entries())


def build_seed(entries: Iterable[SeedEntry] = DEFAULT_TUBE_SEED) -> dict[TubeId, list[tuple[int, Stitch]]]:
    """Group seed entries into ``{tube: [(position, stitch), ...]}`` ordered by position."""
    seed: dict[TubeId, list[tuple[int, Stitch]]] = {tube: [] for tube in TubeId}
    for entry in entries:
        stitch = Stitch(
            id=entry.stitch_id,
            tube_id=entry.tube_id,
            concept_code=entry.concept_code,
            creation_order=entry.position,
            concept_name=entry.concept_name,
        )
        seed[entry.tube_id].append((entry.position, stitch))
    for placements in seed.values():
        placements.sort(key=lambda pair: pair[0])
    return seed


def default_fact_pool(facts_per_concept: int = 20) -> list[Fact]:
    """Arithmetic facts for every concept in the default seed."""
    rows: dict[str, list[tuple[str, int]]] = {}
    for n in range(1, 21):
        rows[f"{n:04d}"] = [(f"Double {n + 20 * i}", 2 * (n + 20 * i)) for i in range(facts_per_concept)]
    for n in range(1, 11):
        divisor = n + 1
        rows[f"{1000 + n}"] = [
            (f"{divisor * q} ÷ {divisor}", q) for q in range(1, facts_per_concept + 1)
        ]
    return facts_from_mapping(rows)
