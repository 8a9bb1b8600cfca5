# FILE: engine.py | version: 2026-10-18.v1
# (multi-variant: line + tree boards; immutable apply_move transition; seeded dealing;
#  tile conservation over the configured set; double-counted ends for fives scoring)

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple, Literal, Any, Iterable, NamedTuple
from datetime import datetime
import hashlib
import json
import random
import uuid

EndName = Literal["left", "right", "tail", "any"]
MoveKind = Literal["place", "draw", "pass"]
PlayerKind = Literal["human", "ai_easy", "ai_medium", "ai_hard"]
Phase = Literal["turn", "match_end"]
Layout = Literal["line", "tree"]
Orientation = Literal["inline", "perpendicular"]
Tile = Tuple[int, int]

# =============================================================================
# Ruleset identity (bump when semantics change; replays pin it)
# =============================================================================
RULESET_ID = "dominoes_core_v1"

MAX_PIPS_LIMIT = 12
MAIN = "main"
HUB = "hub"
ANY_END = "any"
TAIL = "tail"
PLAYER_KINDS: Tuple[str, ...] = ("human", "ai_easy", "ai_medium", "ai_hard")
MOVE_KINDS: Tuple[str, ...] = ("place", "draw", "pass")


# =============================================================================
# Errors
# =============================================================================

class EngineError(ValueError):
    """Base for every rejection the engine reports. `kind` is the stable wire name."""

    kind = "engine_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class InvalidMove(EngineError):
    kind = "invalid_move"


class InvalidConnection(InvalidMove):
    """Tile does not carry the value of the end it was played on."""


class NotPlayersTurn(EngineError):
    kind = "not_players_turn"


class NoLegalMove(EngineError):
    kind = "no_legal_move"


class BoneyardEmptyOnForcedDraw(EngineError):
    kind = "boneyard_empty_on_forced_draw"


class CorruptReplay(EngineError):
    kind = "corrupt_replay"


class UnknownMatch(EngineError):
    kind = "unknown_match"


class InvalidConfig(EngineError):
    kind = "invalid_config"


class MatchOver(EngineError):
    kind = "match_over"


# =============================================================================
# Tiles
# =============================================================================

def now_ts() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def round_to_nearest_5(x: int) -> int:
    # Nearest-5: round(x/5)*5
    return int(round(float(int(x)) / 5.0) * 5)


def norm_tile(a: int, b: int, max_pips: int = MAX_PIPS_LIMIT) -> Tile:
    if a < b:
        a, b = b, a
    if not (0 <= b <= a <= int(max_pips)):
        raise ValueError(f"Tile out of range: {a}-{b}")
    return (int(a), int(b))


def parse_tile(s: Any) -> Tile:
    if isinstance(s, (list, tuple)) and len(s) == 2:
        return norm_tile(int(s[0]), int(s[1]))
    s = str(s or "").strip().replace("[", "").replace("]", "").replace(" ", "")
    s = s.replace("|", "-").replace(",", "-")
    if "-" in s:
        a, b = s.split("-", 1)
        return norm_tile(int(a), int(b))
    if len(s) == 2 and s.isdigit():
        return norm_tile(int(s[0]), int(s[1]))
    raise ValueError(f"Cannot parse tile: {s}")


def tile_str(t: Tile) -> str:
    return f"{t[0]}-{t[1]}"


def tile_id(t: Tile) -> int:
    """Stable id: start of the `hi` row plus `lo` (0-0 -> 0, 1-0 -> 1, 1-1 -> 2, ...)."""
    hi, lo = int(t[0]), int(t[1])
    return int((hi * (hi + 1)) // 2 + lo)


def tile_is_double(t: Tile) -> bool:
    return t[0] == t[1]


def tile_has(t: Tile, v: int) -> bool:
    return t[0] == v or t[1] == v


def tile_pip_count(t: Tile) -> int:
    return t[0] + t[1]


def other_value(t: Tile, v: int) -> int:
    if t[0] == v:
        return t[1]
    if t[1] == v:
        return t[0]
    raise ValueError(f"{tile_str(t)} does not contain {v}")


def full_set(max_pips: int) -> List[Tile]:
    """Every tile of a double-`max_pips` set, in ascending tile id order."""
    out: List[Tile] = []
    for hi in range(int(max_pips) + 1):
        for lo in range(hi + 1):
            out.append((hi, lo))
    return out


def set_size(max_pips: int) -> int:
    n = int(max_pips) + 1
    return n * (n + 1) // 2


def sort_tiles(tiles: Iterable[Tile]) -> List[Tile]:
    return sorted(tiles, key=tile_id)


def best_opening_tile(hand: Iterable[Tile]) -> Optional[Tile]:
    """
    Opening rule:
      - If you have doubles: must open with the highest double.
      - Else: must open with the highest tile by (pip_sum, hi, lo).
    """
    hand = list(hand)
    if not hand:
        return None
    doubles = [t for t in hand if tile_is_double(t)]
    if doubles:
        return max(doubles, key=lambda t: t[0])
    return max(hand, key=lambda t: (t[0] + t[1], t[0], t[1]))


def highest_double(hand: Iterable[Tile]) -> Optional[Tile]:
    doubles = [t for t in hand if tile_is_double(t)]
    return max(doubles, key=lambda t: t[0]) if doubles else None


def round_seed(seed: int, round_index: int, salt: int = 0) -> int:
    x = (int(seed) ^ (int(round_index) * 2654435761) ^ (int(salt) * 97531)) & 0xFFFFFFFF
    return int(x if x != 0 else 1)


# =============================================================================
# Board
# =============================================================================

@dataclass(frozen=True)
class PlacedTile:
    tile: Tile
    player_id: Optional[str]
    exposed: int
    branch: str
    end: str
    orientation: Orientation = "inline"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tile": tile_str(self.tile),
            "player_id": self.player_id,
            "exposed": int(self.exposed),
            "branch": self.branch,
            "end": self.end,
            "orientation": self.orientation,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PlacedTile":
        return cls(
            tile=parse_tile(d["tile"]),
            player_id=d.get("player_id"),
            exposed=int(d["exposed"]),
            branch=str(d["branch"]),
            end=str(d["end"]),
            orientation=d.get("orientation", "inline"),
        )


@dataclass
class DoubleNode:
    """A double on a tree board that still demands `remaining_feet` placements on `open_feet`."""

    node_id: str
    pip: int
    remaining_feet: int
    open_feet: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "pip": int(self.pip),
            "remaining_feet": int(self.remaining_feet),
            "open_feet": list(self.open_feet),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DoubleNode":
        return cls(
            node_id=str(d["node_id"]),
            pip=int(d["pip"]),
            remaining_feet=int(d["remaining_feet"]),
            open_feet=[str(x) for x in (d.get("open_feet") or [])],
        )


@dataclass
class Board:
    """
    Placed tiles and their open ends.

    line layout (Block / All Fives / Cuban):
      - one branch `main`, ends `left` and `right`
      - the first tile opens both halves (left = hi, right = lo)
    tree layout (Chicken Foot / Mexican Train):
      - branches keyed by id, each with a single `tail` end
      - a double opens a node that demands `double_feet` placements before play
        may continue anywhere else:
          sprout_feet=True  -> the double's branch closes and `double_feet` new
                               branches sprout from it (chicken foot)
          sprout_feet=False -> the double must be covered on its own branch (train)
      - an opening double (empty board) sprouts `root_feet` branches
    """

    layout: Layout = "line"
    double_feet: int = 0
    sprout_feet: bool = False
    root_feet: int = 0

    hub: Optional[Tile] = None

    # ends: branch -> end_name -> (open_value, is_double_open_end)
    ends: Dict[str, Dict[str, Tuple[int, bool]]] = field(default_factory=dict)
    branches: Dict[str, List[PlacedTile]] = field(default_factory=dict)
    nodes: List[DoubleNode] = field(default_factory=list)

    placed: List[PlacedTile] = field(default_factory=list)
    played_set: Set[Tile] = field(default_factory=set)

    def is_empty(self) -> bool:
        return not self.placed

    def pending_node(self) -> Optional[DoubleNode]:
        for n in self.nodes:
            if n.remaining_feet > 0:
                return n
        return None

    def open_ends(self) -> List[Tuple[str, str, int, bool]]:
        """(branch, end, value, is_double) for every open end, in (branch, end) order."""
        out: List[Tuple[str, str, int, bool]] = []
        for b in sorted(self.ends.keys()):
            for e in sorted(self.ends[b].keys()):
                v, d = self.ends[b][e]
                out.append((b, e, int(v), bool(d)))
        return out

    def open_end_values(self) -> List[int]:
        return [v for (_b, _e, v, _d) in self.open_ends()]

    def end_value(self, branch: str, end: str) -> Optional[int]:
        e = self.ends.get(branch, {}).get(end)
        return None if e is None else int(e[0])

    def legal_ends_for_tile(self, t: Tile) -> List[Tuple[str, str]]:
        if self.is_empty():
            return [(MAIN, ANY_END)]
        pending = self.pending_node()
        out: List[Tuple[str, str]] = []
        for b, e, v, _d in self.open_ends():
            if pending is not None and b not in pending.open_feet:
                continue
            if tile_has(t, v):
                out.append((b, e))
        return out

    # -------------------------
    # Scoring / ends sum
    # -------------------------
    def ends_sum(self) -> int:
        # A double sitting on an end counts both of its halves.
        total = 0
        for _b, _e, value, is_dbl in self.open_ends():
            total += (int(value) * 2) if is_dbl else int(value)
        return int(total)

    # -------------------------
    # Core play
    # -------------------------
    def play(self, t: Tile, branch: str, end: str, player_id: Optional[str] = None) -> int:
        """Place `t` and return the new open value at the end it was played on."""
        if t in self.played_set:
            raise InvalidMove(f"Tile already played: {tile_str(t)}")

        if self.is_empty():
            return self._play_first(t, player_id)

        if end not in self.ends.get(branch, {}):
            raise InvalidMove(f"End not open: {branch}/{end}")

        pending = self.pending_node()
        if pending is not None and branch not in pending.open_feet:
            raise InvalidMove(
                f"Double {pending.pip}-{pending.pip} still needs {pending.remaining_feet} tile(s) on its feet"
            )

        end_val, _ = self.ends[branch][end]
        if not tile_has(t, end_val):
            raise InvalidConnection(f"Illegal: {tile_str(t)} cannot go on {branch}/{end}({end_val})")

        new_val = other_value(t, end_val)
        dbl = tile_is_double(t)
        pt = PlacedTile(
            tile=t,
            player_id=player_id,
            exposed=int(new_val),
            branch=branch,
            end=end,
            orientation="perpendicular" if dbl else "inline",
        )
        self._add_played(pt)

        if self.layout == "line":
            if end == "left":
                self.branches[branch].insert(0, pt)
            else:
                self.branches[branch].append(pt)
            self.ends[branch][end] = (int(new_val), dbl)
            return int(new_val)

        self.branches[branch].append(pt)
        if pending is not None:
            pending.open_feet.remove(branch)
            pending.remaining_feet -= 1

        if dbl and self.double_feet > 0:
            self._open_node(t, branch, self.double_feet, self.double_feet)
        else:
            self.ends[branch][end] = (int(new_val), False)
        return int(new_val)

    def _play_first(self, t: Tile, player_id: Optional[str]) -> int:
        dbl = tile_is_double(t)
        if self.layout == "line":
            pt = PlacedTile(t, player_id, int(t[0]), MAIN, ANY_END, "perpendicular" if dbl else "inline")
            self._add_played(pt)
            self.branches = {MAIN: [pt]}
            self.ends = {MAIN: {"left": (int(t[0]), dbl), "right": (int(t[1]), dbl)}}
            return int(t[0])

        if not dbl:
            raise InvalidMove(f"A {self.layout} board must open with a double, got {tile_str(t)}")
        self.place_hub(t, [], player_id=player_id)
        if self.sprout_feet:
            self._open_node(t, HUB, self.root_feet or self.double_feet, self.double_feet)
        return int(t[0])

    def place_hub(self, t: Tile, branch_ids: List[str], player_id: Optional[str] = None) -> None:
        """Seat the root double of a tree board and start an empty branch per id."""
        if not self.is_empty():
            raise InvalidMove("Hub can only be placed on an empty board")
        pt = PlacedTile(t, player_id, int(t[0]), HUB, ANY_END, "perpendicular")
        self._add_played(pt)
        self.hub = t
        self.branches = {HUB: [pt]}
        self.ends = {}
        for b in branch_ids:
            self.branches[b] = []
            self.ends[b] = {TAIL: (int(t[0]), False)}

    def _open_node(self, t: Tile, branch: str, slots: int, required: int) -> None:
        node_id = f"d{len(self.nodes)}"
        pip = int(t[0])
        if self.sprout_feet:
            # the double caps its branch; play continues on its feet
            self.ends.pop(branch, None)
            feet = [f"{node_id}.{k}" for k in range(int(slots))]
            for f in feet:
                self.branches[f] = []
                self.ends[f] = {TAIL: (pip, True)}
        else:
            self.ends[branch][TAIL] = (pip, True)
            feet = [branch]
        self.nodes.append(DoubleNode(node_id=node_id, pip=pip, remaining_feet=int(required), open_feet=feet))

    def _add_played(self, pt: PlacedTile) -> None:
        self.played_set.add(pt.tile)
        self.placed.append(pt)

    # -------------------------
    # Snapshot / clone
    # -------------------------
    def snapshot(self) -> Dict[str, Any]:
        pending = self.pending_node()
        return {
            "layout": self.layout,
            "double_feet": int(self.double_feet),
            "sprout_feet": bool(self.sprout_feet),
            "root_feet": int(self.root_feet),
            "hub": tile_str(self.hub) if self.hub else None,
            "ends": {b: {e: [int(v), bool(d)] for e, (v, d) in sorted(es.items())} for b, es in sorted(self.ends.items())},
            "branches": {b: [tile_str(pt.tile) for pt in pts] for b, pts in sorted(self.branches.items())},
            "nodes": [n.to_dict() for n in self.nodes],
            "placed": [pt.to_dict() for pt in self.placed],
            "pending_node": pending.node_id if pending else None,
            "ends_sum": self.ends_sum(),
            "is_empty": self.is_empty(),
        }

    @classmethod
    def from_snapshot(cls, d: Dict[str, Any]) -> "Board":
        b = cls(
            layout=d.get("layout", "line"),
            double_feet=int(d.get("double_feet", 0)),
            sprout_feet=bool(d.get("sprout_feet", False)),
            root_feet=int(d.get("root_feet", 0)),
        )
        hub = d.get("hub")
        b.hub = parse_tile(hub) if hub else None

        b.placed = [PlacedTile.from_dict(x) for x in (d.get("placed") or [])]
        b.played_set = {pt.tile for pt in b.placed}
        by_tile = {pt.tile: pt for pt in b.placed}

        b.branches = {}
        for name, tiles in (d.get("branches") or {}).items():
            b.branches[str(name)] = [by_tile[parse_tile(s)] for s in (tiles or [])]

        b.ends = {}
        for name, es in (d.get("ends") or {}).items():
            b.ends[str(name)] = {str(e): (int(v[0]), bool(v[1]) if len(v) > 1 else False) for e, v in es.items()}

        b.nodes = [DoubleNode.from_dict(x) for x in (d.get("nodes") or [])]
        return b

    def clone(self) -> "Board":
        b = Board(
            layout=self.layout,
            double_feet=self.double_feet,
            sprout_feet=self.sprout_feet,
            root_feet=self.root_feet,
        )
        b.hub = self.hub
        b.ends = {k: dict(v) for k, v in self.ends.items()}
        b.branches = {k: list(v) for k, v in self.branches.items()}
        b.nodes = [replace(n, open_feet=list(n.open_feet)) for n in self.nodes]
        b.placed = list(self.placed)
        b.played_set = set(self.played_set)
        return b


# =============================================================================
# Players / moves / config
# =============================================================================

@dataclass
class Player:
    player_id: str
    name: str = ""
    kind: PlayerKind = "human"
    hand: List[Tile] = field(default_factory=list)
    score: int = 0
    active: bool = True
    team: int = 0

    @property
    def is_ai(self) -> bool:
        return self.kind != "human"

    def pips(self) -> int:
        return int(sum(tile_pip_count(t) for t in self.hand))

    def clone(self) -> "Player":
        return replace(self, hand=list(self.hand))

    def to_dict(self, reveal_hand: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "player_id": self.player_id,
            "name": self.name,
            "kind": self.kind,
            "score": int(self.score),
            "active": bool(self.active),
            "team": int(self.team),
            "hand_count": len(self.hand),
        }
        if reveal_hand:
            d["hand"] = [tile_str(t) for t in self.hand]
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Player":
        return cls(
            player_id=str(d["player_id"]),
            name=str(d.get("name", "")),
            kind=d.get("kind", "human"),
            hand=sort_tiles(parse_tile(s) for s in (d.get("hand") or [])),
            score=int(d.get("score", 0)),
            active=bool(d.get("active", True)),
            team=int(d.get("team", 0)),
        )


@dataclass(frozen=True)
class Move:
    kind: MoveKind
    player_id: str
    tile: Optional[Tile] = None
    branch: Optional[str] = None
    end: Optional[str] = None
    ts: str = field(default_factory=now_ts)
    score_delta: int = 0
    forced: bool = False

    def sort_key(self) -> Tuple[int, str, str]:
        return (tile_id(self.tile) if self.tile else -1, self.branch or "", self.end or "")

    def same_action(self, other: "Move") -> bool:
        return (
            self.kind == other.kind
            and self.player_id == other.player_id
            and self.tile == other.tile
            and (self.branch or MAIN) == (other.branch or MAIN)
            and (self.end or "") == (other.end or "")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "player_id": self.player_id,
            "tile": tile_str(self.tile) if self.tile else None,
            "branch": self.branch,
            "end": self.end,
            "ts": self.ts,
            "score_delta": int(self.score_delta),
            "forced": bool(self.forced),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Move":
        kind = d.get("kind")
        if kind not in MOVE_KINDS:
            raise InvalidMove(f"Unknown move kind: {kind}")
        if not d.get("player_id"):
            raise InvalidMove("player_id required")
        t = d.get("tile")
        try:
            tile = parse_tile(t) if t else None
        except ValueError as e:
            raise InvalidMove(str(e))
        return cls(
            kind=kind,
            player_id=str(d["player_id"]),
            tile=tile,
            branch=d.get("branch"),
            end=d.get("end"),
            ts=str(d["ts"]) if d.get("ts") is not None else now_ts(),
            score_delta=int(d.get("score_delta", 0)),
            forced=bool(d.get("forced", False)),
        )


@dataclass(frozen=True)
class PlayerSpec:
    player_id: str
    name: str = ""
    kind: PlayerKind = "human"

    def to_dict(self) -> Dict[str, Any]:
        return {"player_id": self.player_id, "name": self.name, "kind": self.kind}


@dataclass(frozen=True)
class MatchConfig:
    variant: str
    players: Tuple[PlayerSpec, ...]
    target_score: Optional[int] = None
    tiles_per_player: Optional[int] = None
    max_pips: Optional[int] = None
    rng_seed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "players": [p.to_dict() for p in self.players],
            "target_score": self.target_score,
            "tiles_per_player": self.tiles_per_player,
            "max_pips": self.max_pips,
            "rng_seed": int(self.rng_seed),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MatchConfig":
        if not isinstance(d, dict):
            raise InvalidConfig("config must be an object")
        variant = str(d.get("variant") or "").strip().lower()
        if not variant:
            raise InvalidConfig("variant required")

        raw_players = d.get("players")
        if not isinstance(raw_players, list) or len(raw_players) < 2:
            raise InvalidConfig("players must be a list of at least 2 entries")
        specs: List[PlayerSpec] = []
        for i, p in enumerate(raw_players):
            if isinstance(p, str):
                p = {"player_id": p}
            if not isinstance(p, dict):
                raise InvalidConfig(f"players[{i}] must be an object")
            pid = str(p.get("player_id") or p.get("id") or f"p{i + 1}")
            kind = str(p.get("kind") or p.get("type") or "human")
            if kind not in PLAYER_KINDS:
                raise InvalidConfig(f"players[{i}].kind must be one of {list(PLAYER_KINDS)}")
            specs.append(PlayerSpec(player_id=pid, name=str(p.get("name") or pid), kind=kind))  # type: ignore[arg-type]
        if len({s.player_id for s in specs}) != len(specs):
            raise InvalidConfig("player ids must be unique")

        def _opt_int(key: str) -> Optional[int]:
            v = d.get(key)
            if v is None:
                return None
            try:
                return int(v)
            except (TypeError, ValueError):
                raise InvalidConfig(f"{key} must be an integer")

        seed = _opt_int("rng_seed")
        return cls(
            variant=variant,
            players=tuple(specs),
            target_score=_opt_int("target_score"),
            tiles_per_player=_opt_int("tiles_per_player"),
            max_pips=_opt_int("max_pips"),
            rng_seed=int(seed) if seed is not None else 0,
        )


# =============================================================================
# Round bookkeeping
# =============================================================================

@dataclass(frozen=True)
class RoundOutcome:
    status: Literal["ongoing", "won", "blocked"]
    winner_id: Optional[str] = None

    @property
    def ongoing(self) -> bool:
        return self.status == "ongoing"


ONGOING = RoundOutcome("ongoing")


@dataclass(frozen=True)
class RoundResult:
    round_index: int
    reason: str
    winner_id: Optional[str]
    awards: Dict[str, int]
    pips: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_index": int(self.round_index),
            "reason": self.reason,
            "winner_id": self.winner_id,
            "awards": {k: int(v) for k, v in sorted(self.awards.items())},
            "pips": {k: int(v) for k, v in sorted(self.pips.items())},
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RoundResult":
        return cls(
            round_index=int(d["round_index"]),
            reason=str(d["reason"]),
            winner_id=d.get("winner_id"),
            awards={str(k): int(v) for k, v in (d.get("awards") or {}).items()},
            pips={str(k): int(v) for k, v in (d.get("pips") or {}).items()},
        )


# =============================================================================
# Match state
# =============================================================================

@dataclass
class MatchState:
    match_id: str
    variant: str
    config: MatchConfig
    players: List[Player] = field(default_factory=list)
    board: Board = field(default_factory=Board)
    boneyard: List[Tile] = field(default_factory=list)

    round_index: int = 1
    turn_index: int = 0
    phase: Phase = "turn"
    winner_id: Optional[str] = None

    history: List[Move] = field(default_factory=list)
    rounds: List[RoundResult] = field(default_factory=list)
    round_start_ply: int = 0

    consecutive_passes: int = 0
    open_trains: Set[str] = field(default_factory=set)
    opening_free: bool = False

    revision: int = 0
    created_at: str = field(default_factory=now_ts)

    # ---- lookups ----

    def ply(self) -> int:
        return len(self.history)

    def player(self, player_id: str) -> Player:
        for p in self.players:
            if p.player_id == player_id:
                return p
        raise InvalidMove(f"Unknown player: {player_id}")

    def player_index(self, player_id: str) -> int:
        for i, p in enumerate(self.players):
            if p.player_id == player_id:
                return i
        raise InvalidMove(f"Unknown player: {player_id}")

    def current_player(self) -> Player:
        return self.players[self.turn_index]

    def active_players(self) -> List[Player]:
        return [p for p in self.players if p.active]

    def round_moves(self) -> List[Move]:
        return self.history[self.round_start_ply:]

    def is_over(self) -> bool:
        return self.phase == "match_end"

    # ---- invariants ----

    def full_set_size(self) -> int:
        return set_size(int(self.config.max_pips or 6))

    def all_tiles_in_play(self) -> List[Tile]:
        out: List[Tile] = []
        for p in self.players:
            out.extend(p.hand)
        out.extend(pt.tile for pt in self.board.placed)
        out.extend(self.boneyard)
        return out

    def tile_conservation_total(self) -> int:
        return len(set(self.all_tiles_in_play()))

    def conservation_ok(self) -> bool:
        tiles = self.all_tiles_in_play()
        return len(tiles) == len(set(tiles)) == self.full_set_size()

    def team_scores(self) -> Dict[int, int]:
        out: Dict[int, int] = {}
        for p in self.players:
            # team members share one pooled score
            out[p.team] = max(out.get(p.team, 0), int(p.score))
        return out

    # ---- copies ----

    def clone(self) -> "MatchState":
        return replace(
            self,
            players=[p.clone() for p in self.players],
            board=self.board.clone(),
            boneyard=list(self.boneyard),
            history=list(self.history),
            rounds=list(self.rounds),
            open_trains=set(self.open_trains),
        )

    # ---- serialization ----

    def to_dict(self, viewer_id: Optional[str] = None) -> Dict[str, Any]:
        """Full state; with `viewer_id` other players' hands and the boneyard are hidden."""
        hidden = viewer_id is not None
        d: Dict[str, Any] = {
            "ruleset": RULESET_ID,
            "match_id": self.match_id,
            "variant": self.variant,
            "config": self.config.to_dict(),
            "players": [p.to_dict(reveal_hand=(not hidden or p.player_id == viewer_id)) for p in self.players],
            "board": self.board.snapshot(),
            "boneyard_count": len(self.boneyard),
            "round_index": int(self.round_index),
            "turn_index": int(self.turn_index),
            "current_player": self.current_player().player_id,
            "phase": self.phase,
            "winner_id": self.winner_id,
            "history": [m.to_dict() for m in self.history],
            "rounds": [r.to_dict() for r in self.rounds],
            "round_start_ply": int(self.round_start_ply),
            "consecutive_passes": int(self.consecutive_passes),
            "open_trains": sorted(self.open_trains),
            "opening_free": bool(self.opening_free),
            "revision": int(self.revision),
            "created_at": self.created_at,
            "tile_total": int(self.tile_conservation_total()),
        }
        if not hidden:
            d["boneyard"] = [tile_str(t) for t in self.boneyard]
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MatchState":
        if "boneyard" not in d:
            raise InvalidConfig("state snapshot has no boneyard (viewer snapshots cannot be restored)")
        st = cls(
            match_id=str(d["match_id"]),
            variant=str(d["variant"]),
            config=MatchConfig.from_dict(d.get("config") or {}),
        )
        st.players = [Player.from_dict(x) for x in (d.get("players") or [])]
        st.board = Board.from_snapshot(d.get("board") or {})
        st.boneyard = [parse_tile(s) for s in (d.get("boneyard") or [])]
        st.round_index = int(d.get("round_index", 1))
        st.turn_index = int(d.get("turn_index", 0))
        st.phase = d.get("phase", "turn")
        st.winner_id = d.get("winner_id")
        st.history = [Move.from_dict(x) for x in (d.get("history") or d.get("move_history") or [])]
        st.rounds = [RoundResult.from_dict(x) for x in (d.get("rounds") or [])]
        st.round_start_ply = int(d.get("round_start_ply", 0))
        st.consecutive_passes = int(d.get("consecutive_passes", 0))
        st.open_trains = {str(x) for x in (d.get("open_trains") or [])}
        st.opening_free = bool(d.get("opening_free", False))
        st.revision = int(d.get("revision", 0))
        st.created_at = d.get("created_at") or now_ts()
        return st

    def to_record(self, updated_at: Optional[str] = None) -> Dict[str, Any]:
        """Plain persisted record handed to storage: no object references, JSON only."""
        d = self.to_dict()
        d["move_history"] = d.pop("history")
        d["updated_at"] = updated_at or now_ts()
        return d

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "MatchState":
        return cls.from_dict(rec)

    def fingerprint(self) -> str:
        raw = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# =============================================================================
# Lifecycle: dealing, turn rotation, applying moves
# =============================================================================

class Transition(NamedTuple):
    state: MatchState
    move: Move
    notices: List[str]
    round_result: Optional[RoundResult]


def next_active_index(st: MatchState, from_index: int) -> int:
    n = len(st.players)
    for step in range(1, n + 1):
        i = (int(from_index) + step) % n
        if st.players[i].active:
            return i
    return int(from_index)


def resolve_config(config: MatchConfig, rules: Any) -> MatchConfig:
    """Fill unset config values from the variant defaults and validate the result."""
    max_pips = int(config.max_pips if config.max_pips is not None else rules.max_pips)
    tiles = int(config.tiles_per_player if config.tiles_per_player is not None else rules.default_tiles(len(config.players)))
    target = int(config.target_score if config.target_score is not None else rules.target_score)

    if not (1 <= max_pips <= MAX_PIPS_LIMIT):
        raise InvalidConfig(f"max_pips must be in [1..{MAX_PIPS_LIMIT}]")
    if tiles < 1:
        raise InvalidConfig("tiles_per_player must be >= 1")
    if target < 1:
        raise InvalidConfig("target_score must be >= 1")
    n = len(config.players)
    if not (rules.min_players <= n <= rules.max_players):
        raise InvalidConfig(f"{rules.name} needs {rules.min_players}..{rules.max_players} players, got {n}")
    reserved = 1 if rules.deals_hub else 0
    if n * tiles + reserved > set_size(max_pips):
        raise InvalidConfig(
            f"Cannot deal {tiles} tiles to {n} players from a double-{max_pips} set ({set_size(max_pips)} tiles)"
        )
    specs = tuple(replace(s, name=s.name or s.player_id) for s in config.players)
    return replace(config, variant=rules.name, players=specs, max_pips=max_pips, tiles_per_player=tiles, target_score=target)


def new_match(config: MatchConfig, rules: Any, match_id: Optional[str] = None) -> MatchState:
    cfg = resolve_config(config, rules)
    st = MatchState(match_id=match_id or uuid.uuid4().hex[:12], variant=rules.name, config=cfg)
    st.players = [
        Player(player_id=s.player_id, name=s.name or s.player_id, kind=s.kind, team=rules.team_for_seat(i))
        for i, s in enumerate(cfg.players)
    ]
    deal_round(st, rules, leader_id=None)
    return st


def deal_round(st: MatchState, rules: Any, leader_id: Optional[str]) -> None:
    """Shuffle a fresh set (seeded by match seed + round) and deal it. Mutates `st`."""
    cfg = st.config
    tiles = full_set(int(cfg.max_pips or 6))
    rng = random.Random(round_seed(cfg.rng_seed, st.round_index))
    rng.shuffle(tiles)

    st.board = rules.new_board(st)
    hub = rules.hub_double(st)
    if hub is not None:
        tiles.remove(hub)
        st.board.place_hub(hub, rules.hub_branches(st))

    for p in st.players:
        p.hand = []
    for _ in range(int(cfg.tiles_per_player or 7)):
        for p in st.players:
            p.hand.append(tiles.pop())
    for p in st.players:
        p.hand = sort_tiles(p.hand)

    st.boneyard = tiles
    st.consecutive_passes = 0
    st.open_trains = set()
    st.round_start_ply = len(st.history)
    st.turn_index = rules.first_player(st, leader_id)


def _finish_round(st: MatchState, rules: Any, outcome: RoundOutcome) -> RoundResult:
    result = rules.score_round(st, outcome)
    for pid, pts in result.awards.items():
        st.player(pid).score += int(pts)
    st.rounds.append(result)

    target = int(st.config.target_score or 0)
    leaders = [p for p in st.players if p.score >= target]
    if leaders:
        best = max(p.score for p in leaders)
        top = [p.player_id for p in leaders if p.score == best]
        st.phase = "match_end"
        st.winner_id = result.winner_id if result.winner_id in top else top[0]
        return result

    st.round_index += 1
    st.opening_free = result.reason == "domino"
    deal_round(st, rules, leader_id=result.winner_id)
    return result


def apply_move(state: MatchState, move: Move, rules: Any) -> Transition:
    """
    Validate `move` against `state` and return the resulting state.
    `state` is never mutated; a rejected move raises an EngineError.
    """
    if state.is_over():
        raise MatchOver("Match is over")
    if move.kind not in MOVE_KINDS:
        raise InvalidMove(f"Unknown move kind: {move.kind}")

    state.player(move.player_id)  # unknown player -> InvalidMove
    cur = state.current_player()
    if cur.player_id != move.player_id:
        raise NotPlayersTurn(f"Not {move.player_id}'s turn (current={cur.player_id})")

    st = state.clone()
    p = st.player(move.player_id)
    notices: List[str] = []
    applied = move

    if move.kind == "place":
        t = move.tile
        if t is None:
            raise InvalidMove("place requires a tile")
        if t not in p.hand:
            raise InvalidMove(f"{p.player_id} does not hold {tile_str(t)}")
        branch = move.branch or MAIN
        end = move.end or (ANY_END if st.board.is_empty() else "")
        if not rules.is_legal_move(st, p, t, branch, end):
            if not rules.legal_moves(st, p.player_id):
                raise NoLegalMove(f"{p.player_id} has no legal placement; draw or pass")
            raise InvalidMove(f"Illegal placement: {tile_str(t)} on {branch}/{end}")

        st.board.play(t, branch, end, player_id=p.player_id)
        p.hand.remove(t)
        applied = replace(move, branch=branch, end=end, score_delta=0)
        delta = int(rules.score_for_move(st.board, applied))
        applied = replace(applied, score_delta=delta)
        p.score += delta
        st.consecutive_passes = 0
        rules.after_place(st, p, applied)

    elif move.kind == "draw":
        if not rules.can_draw:
            raise InvalidMove(f"{rules.name} does not allow drawing")
        if rules.legal_moves(st, p.player_id):
            raise InvalidMove("Draw not allowed: a legal move exists")
        if not st.boneyard:
            notices.append(BoneyardEmptyOnForcedDraw.kind)
            applied = Move(kind="pass", player_id=p.player_id, ts=move.ts, forced=move.forced)
        else:
            t = st.boneyard.pop()
            if move.tile is not None and move.tile != t:
                raise InvalidMove(f"Drawn tile mismatch: expected {tile_str(move.tile)}, boneyard gave {tile_str(t)}")
            p.hand = sort_tiles(p.hand + [t])
            applied = replace(move, tile=t, branch=None, end=None, score_delta=0)

    if applied.kind == "pass":
        if move.kind == "pass" and not move.forced:
            if rules.legal_moves(st, p.player_id):
                raise InvalidMove("Pass not allowed: a legal move exists")
            if rules.can_draw and st.boneyard:
                raise InvalidMove("Pass not allowed: must draw from the boneyard first")
        applied = replace(applied, tile=None, branch=None, end=None, score_delta=0)
        st.consecutive_passes += 1
        rules.after_pass(st, p)

    st.history.append(applied)
    st.revision += 1

    round_result: Optional[RoundResult] = None
    if applied.kind != "draw":
        outcome = rules.check_round_end(st)
        if outcome.ongoing:
            st.turn_index = next_active_index(st, st.turn_index)
        else:
            round_result = _finish_round(st, rules, outcome)

    return Transition(state=st, move=applied, notices=notices, round_result=round_result)


def set_active(state: MatchState, player_id: str, active: bool) -> MatchState:
    """Connect/disconnect a player. Inactive players are skipped but keep their hand."""
    if state.is_over():
        raise MatchOver("Match is over")
    st = state.clone()
    p = st.player(player_id)
    p.active = bool(active)
    if not st.active_players():
        raise InvalidMove("At least one player must stay active")
    if not st.current_player().active:
        st.turn_index = next_active_index(st, st.turn_index)
    st.revision += 1
    return st


def forfeit(state: MatchState, player_id: str) -> MatchState:
    """End the match at a turn boundary; the best-placed other side wins."""
    if state.is_over():
        raise MatchOver("Match is over")
    st = state.clone()
    quitter = st.player(player_id)
    others = [p for p in st.players if p.team != quitter.team] or [p for p in st.players if p.player_id != player_id]
    winner = max(others, key=lambda p: (p.score, -st.player_index(p.player_id)))
    st.phase = "match_end"
    st.winner_id = winner.player_id
    st.revision += 1
    return st
