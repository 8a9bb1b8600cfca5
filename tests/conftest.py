"""
Shared pytest fixtures.

Factories build dealt matches; `rig` then overwrites hands, board and boneyard
so a test can stage an exact position. Rigged states are test-owned, so
mutating them directly is fine.
"""

from pathlib import Path
import sys
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

# Make the flat top-level modules importable when pytest runs from anywhere.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engine import MAIN, MatchConfig, MatchState, new_match, parse_tile, sort_tiles  # noqa: E402
from rules import get_rules  # noqa: E402
from service import MatchEngine, MatchStore  # noqa: E402
import storage  # noqa: E402


# =============================================================================
# FACTORY FIXTURES
# =============================================================================


def seat_kinds(variant: str, cycle: Sequence[str] = ("human",)) -> Tuple[str, ...]:
    """Fewest seats the variant allows (at least two), kinds cycled over them."""
    n = max(2, get_rules(variant).min_players)
    return tuple(cycle[i % len(cycle)] for i in range(n))


@pytest.fixture
def seats() -> Callable[..., Tuple[str, ...]]:
    return seat_kinds


@pytest.fixture
def config_factory() -> Callable[..., MatchConfig]:
    """Factory for MatchConfig with numbered players p1..pN."""

    def _create(
        variant: str = "block",
        kinds: Optional[Sequence[str]] = None,
        seed: int = 7,
        **extra,
    ) -> MatchConfig:
        kinds = kinds or seat_kinds(variant)
        return MatchConfig.from_dict(
            {
                "variant": variant,
                "players": [{"player_id": f"p{i + 1}", "kind": k} for i, k in enumerate(kinds)],
                "rng_seed": seed,
                **extra,
            }
        )

    return _create


@pytest.fixture
def match_factory(config_factory) -> Callable[..., MatchState]:
    """Factory for freshly dealt matches."""

    def _create(
        variant: str = "block",
        kinds: Optional[Sequence[str]] = None,
        seed: int = 7,
        **extra,
    ) -> MatchState:
        cfg = config_factory(variant, kinds, seed, **extra)
        return new_match(cfg, get_rules(variant), match_id=f"m-{variant}-{seed}")

    return _create


@pytest.fixture
def rig() -> Callable[..., MatchState]:
    """
    Stage a position on a dealt state.

    `plays` is a list of (tile, branch, end) placed in order on a fresh board;
    a 2-tuple (tile, end) means branch `main`.
    """

    def _rig(
        state: MatchState,
        hands: Dict[str, List[str]],
        plays: Iterable[Tuple[str, ...]] = (),
        boneyard: Iterable[str] = (),
        turn: str = "p1",
        opening_free: bool = True,
        keep_hub: bool = True,
    ) -> MatchState:
        rules = get_rules(state.variant)
        board = rules.new_board(state)
        hub = rules.hub_double(state)
        if hub is not None and keep_hub:
            board.place_hub(hub, rules.hub_branches(state))
        for item in plays:
            if len(item) == 2:
                tile, end = item
                branch = MAIN
            else:
                tile, branch, end = item
            board.play(parse_tile(tile), branch, end)
        state.board = board
        for p in state.players:
            p.hand = sort_tiles(parse_tile(s) for s in hands.get(p.player_id, []))
        state.boneyard = [parse_tile(s) for s in boneyard]
        state.turn_index = state.player_index(turn)
        state.consecutive_passes = 0
        state.open_trains = set()
        state.opening_free = opening_free
        state.round_start_ply = len(state.history)
        return state

    return _rig


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def match_engine(clock) -> MatchEngine:
    return MatchEngine(store=MatchStore(max_size=50, ttl_seconds=3600), turn_timeout_ms=5000, clock=clock)


@pytest.fixture
def save_dir(tmp_path, monkeypatch) -> Path:
    d = tmp_path / "saves"
    monkeypatch.setattr(storage, "SAVE_DIR", d)
    return d


class FixedRng:
    """Stands in for random.Random where a test needs a chosen random() value."""

    def __init__(self, value: float):
        self.value = float(value)

    def random(self) -> float:
        return self.value


@pytest.fixture
def fixed_rng() -> Callable[[float], FixedRng]:
    return FixedRng


def find(moves, tile: str, end: Optional[str] = None, branch: Optional[str] = None):
    t = parse_tile(tile)
    for m in moves:
        if m.tile == t and (end is None or m.end == end) and (branch is None or m.branch == branch):
            return m
    raise AssertionError(f"no move {tile} {branch}/{end} in {[m.to_dict() for m in moves]}")


@pytest.fixture
def find_move() -> Callable:
    return find
