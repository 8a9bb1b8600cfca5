# FILE: replay.py | version: 2026-10-18.v1
# Recorder/player for deterministic match replays: initial snapshot + ordered log + state checkpoints.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from engine import (
    RULESET_ID,
    CorruptReplay,
    EngineError,
    MatchState,
    Move,
    apply_move,
    forfeit,
    now_ts,
    set_active,
)
from rules import RuleSet, get_rules

log = logging.getLogger(__name__)

REPLAY_VERSION = 1
CONTROL_OPS = ("set_active", "forfeit")
HIGHLIGHT_KINDS = ("perfect_score", "domino", "comeback")
PERFECT_SCORE = 30  # single placement worth at least this much
COMEBACK_GAP = 50  # deficit overturned by one move


@dataclass
class ReplayEntry:
    """One log line: a move, or a control change (activity / forfeit) that also moved the revision."""

    move: Optional[Move] = None
    control: Optional[Dict[str, Any]] = None
    thinking_ms: int = 0
    checkpoint: Optional[str] = None
    scores: Optional[Dict[str, int]] = None  # every player's score after the entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "move": self.move.to_dict() if self.move else None,
            "control": dict(self.control) if self.control else None,
            "thinking_ms": int(self.thinking_ms),
            "checkpoint": self.checkpoint,
            "scores": dict(self.scores) if self.scores is not None else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReplayEntry":
        mv = d.get("move")
        return cls(
            move=Move.from_dict(mv) if mv else None,
            control=dict(d["control"]) if d.get("control") else None,
            thinking_ms=int(d.get("thinking_ms", 0)),
            checkpoint=d.get("checkpoint"),
            scores={str(k): int(v) for k, v in d["scores"].items()} if d.get("scores") is not None else None,
        )


@dataclass
class ReplayStats:
    move_count: int = 0
    average_thinking_ms: float = 0.0
    longest_turn_ms: int = 0
    perfect_scores: int = 0
    pass_count: int = 0
    draw_count: int = 0
    score_swings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "move_count": int(self.move_count),
            "average_thinking_ms": float(self.average_thinking_ms),
            "longest_turn_ms": int(self.longest_turn_ms),
            "perfect_scores": int(self.perfect_scores),
            "pass_count": int(self.pass_count),
            "draw_count": int(self.draw_count),
            "score_swings": int(self.score_swings),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReplayStats":
        return cls(
            move_count=int(d.get("move_count", 0)),
            average_thinking_ms=float(d.get("average_thinking_ms", 0.0)),
            longest_turn_ms=int(d.get("longest_turn_ms", 0)),
            perfect_scores=int(d.get("perfect_scores", 0)),
            pass_count=int(d.get("pass_count", 0)),
            draw_count=int(d.get("draw_count", 0)),
            score_swings=int(d.get("score_swings", 0)),
        )


@dataclass
class Highlight:
    entry_index: int
    kind: str
    player_id: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {"entry_index": int(self.entry_index), "kind": self.kind,
                "player_id": self.player_id, "description": self.description}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Highlight":
        kind = str(d["kind"])
        if kind not in HIGHLIGHT_KINDS:
            raise ValueError(f"unknown highlight kind {kind!r}")
        return cls(entry_index=int(d["entry_index"]), kind=kind,
                   player_id=str(d["player_id"]), description=str(d.get("description", "")))


@dataclass
class SeatSummary:
    """Who sat where, what they were dealt first and how they finished."""

    player_id: str
    name: str
    kind: str
    initial_hand: List[str] = field(default_factory=list)
    final_score: int = 0
    is_winner: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "player_id": self.player_id,
            "name": self.name,
            "kind": self.kind,
            "initial_hand": list(self.initial_hand),
            "final_score": int(self.final_score),
            "is_winner": bool(self.is_winner),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SeatSummary":
        return cls(
            player_id=str(d["player_id"]),
            name=str(d.get("name", "")),
            kind=str(d.get("kind", "human")),
            initial_hand=[str(t) for t in (d.get("initial_hand") or [])],
            final_score=int(d.get("final_score", 0)),
            is_winner=bool(d.get("is_winner", False)),
        )


@dataclass
class ReplayData:
    replay_id: str
    match_id: str
    variant: str
    ruleset: str
    initial: Dict[str, Any]
    entries: List[ReplayEntry] = field(default_factory=list)
    final: Optional[Dict[str, Any]] = None
    stats: ReplayStats = field(default_factory=ReplayStats)
    players: List[SeatSummary] = field(default_factory=list)
    highlights: List[Highlight] = field(default_factory=list)
    recorded_at: str = field(default_factory=now_ts)
    finished_at: Optional[str] = None
    duration_ms: int = 0
    version: int = REPLAY_VERSION

    def moves(self) -> List[Move]:
        return [e.move for e in self.entries if e.move is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": int(self.version),
            "replay_id": self.replay_id,
            "match_id": self.match_id,
            "variant": self.variant,
            "ruleset": self.ruleset,
            "initial": self.initial,
            "entries": [e.to_dict() for e in self.entries],
            "final": self.final,
            "stats": self.stats.to_dict(),
            "players": [s.to_dict() for s in self.players],
            "highlights": [h.to_dict() for h in self.highlights],
            "recorded_at": self.recorded_at,
            "finished_at": self.finished_at,
            "duration_ms": int(self.duration_ms),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReplayData":
        try:
            return cls(
                replay_id=str(d["replay_id"]),
                match_id=str(d["match_id"]),
                variant=str(d["variant"]),
                ruleset=str(d["ruleset"]),
                initial=dict(d["initial"]),
                entries=[ReplayEntry.from_dict(x) for x in (d.get("entries") or [])],
                final=d.get("final"),
                stats=ReplayStats.from_dict(d.get("stats") or {}),
                players=[SeatSummary.from_dict(x) for x in (d.get("players") or [])],
                highlights=[Highlight.from_dict(x) for x in (d.get("highlights") or [])],
                recorded_at=d.get("recorded_at") or now_ts(),
                finished_at=d.get("finished_at"),
                duration_ms=int(d.get("duration_ms", 0)),
                version=int(d.get("version", REPLAY_VERSION)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CorruptReplay(f"Malformed replay: {e}")


def _leaders(scores: Dict[str, int]) -> Tuple[str, ...]:
    """Players sharing the top score; empty while everyone is level."""
    if len(set(scores.values())) < 2:
        return ()
    top = max(scores.values())
    return tuple(sorted(pid for pid, s in scores.items() if s == top))


def count_score_swings(initial_scores: Dict[str, int], entries: List[ReplayEntry]) -> int:
    """How often the lead passed to a different player (or team)."""
    swings = 0
    last = _leaders(initial_scores)
    for e in entries:
        if e.scores is None:
            continue
        cur = _leaders(e.scores)
        if not cur:
            continue
        if last and not set(cur) & set(last):
            swings += 1
        last = cur
    return swings


def _scores_of(snapshot: Dict[str, Any]) -> Dict[str, int]:
    return {str(p["player_id"]): int(p.get("score", 0)) for p in snapshot.get("players", [])}


def compute_stats(replay: ReplayData) -> ReplayStats:
    moves = [e for e in replay.entries if e.move is not None]
    times = [int(e.thinking_ms) for e in moves]
    perfect = 0
    if replay.variant == "all_fives":
        perfect = sum(1 for e in moves if e.move.kind == "place" and e.move.score_delta > 0 and e.move.score_delta % 5 == 0)
    return ReplayStats(
        move_count=len(moves),
        average_thinking_ms=(float(sum(times)) / len(times)) if times else 0.0,
        longest_turn_ms=max(times) if times else 0,
        perfect_scores=int(perfect),
        pass_count=sum(1 for e in moves if e.move.kind == "pass"),
        draw_count=sum(1 for e in moves if e.move.kind == "draw"),
        score_swings=count_score_swings(_scores_of(replay.initial), replay.entries),
    )


def _elapsed_ms(start: str, end: str) -> int:
    try:
        return max(0, int((datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds() * 1000))
    except (TypeError, ValueError):
        return 0


class ReplayRecorder:
    def __init__(self) -> None:
        self._data: Optional[ReplayData] = None
        self._scores: Dict[str, int] = {}
        self._rounds = 0

    @property
    def recording(self) -> bool:
        return self._data is not None and self._data.finished_at is None

    @property
    def data(self) -> Optional[ReplayData]:
        return self._data

    def start_recording(self, initial_snapshot: Dict[str, Any]) -> None:
        if "boneyard" not in initial_snapshot:
            raise ValueError("Replay needs a full snapshot (with boneyard)")
        self._data = ReplayData(
            replay_id=uuid.uuid4().hex[:12],
            match_id=str(initial_snapshot.get("match_id", "")),
            variant=str(initial_snapshot.get("variant", "")),
            ruleset=str(initial_snapshot.get("ruleset", RULESET_ID)),
            initial=initial_snapshot,
            players=[
                SeatSummary(
                    player_id=str(p["player_id"]),
                    name=str(p.get("name") or p["player_id"]),
                    kind=str(p.get("kind", "human")),
                    initial_hand=list(p.get("hand") or []),
                    final_score=int(p.get("score", 0)),
                )
                for p in initial_snapshot.get("players", [])
            ],
        )
        self._scores = _scores_of(initial_snapshot)
        self._rounds = len(initial_snapshot.get("rounds") or [])

    def _require(self) -> ReplayData:
        if not self.recording:
            raise ValueError("Recorder is not recording")
        assert self._data is not None
        return self._data

    def _spot_highlights(self, index: int, move: Move, st: MatchState) -> List[Highlight]:
        found = []
        pid = move.player_id
        if move.kind == "place" and move.score_delta >= PERFECT_SCORE:
            found.append(Highlight(index, "perfect_score", pid, f"{pid} scored {move.score_delta} in one play"))
        if len(st.rounds) > self._rounds and st.rounds[-1].reason == "domino":
            found.append(Highlight(index, "domino", pid, f"{pid} went out"))
        mover = st.player(pid)
        rivals = [p.player_id for p in st.players if p.team != mover.team]
        if rivals and pid in self._scores:
            behind = max(self._scores.get(r, 0) for r in rivals) - self._scores[pid]
            ahead = mover.score > max(st.player(r).score for r in rivals)
            if behind >= COMEBACK_GAP and ahead:
                found.append(Highlight(index, "comeback", pid, f"{pid} overturned a {behind}-point deficit"))
        return found

    def _track(self, st: Optional[MatchState]) -> Optional[Dict[str, int]]:
        if st is None:
            return None
        self._scores = {p.player_id: int(p.score) for p in st.players}
        self._rounds = len(st.rounds)
        return dict(self._scores)

    def record_move(self, move: Move, thinking_time_ms: int, state_after: Optional[MatchState] = None) -> None:
        data = self._require()
        index = len(data.entries)
        if state_after is not None:
            data.highlights.extend(self._spot_highlights(index, move, state_after))
        data.entries.append(
            ReplayEntry(
                move=move,
                thinking_ms=max(0, int(thinking_time_ms)),
                checkpoint=state_after.fingerprint() if state_after is not None else None,
                scores=self._track(state_after),
            )
        )

    def record_control(self, op: str, player_id: str, active: Optional[bool] = None,
                       state_after: Optional[MatchState] = None) -> None:
        if op not in CONTROL_OPS:
            raise ValueError(f"Unknown control op: {op}")
        data = self._require()
        ctl: Dict[str, Any] = {"op": op, "player_id": player_id}
        if active is not None:
            ctl["active"] = bool(active)
        data.entries.append(
            ReplayEntry(
                control=ctl,
                checkpoint=state_after.fingerprint() if state_after is not None else None,
                scores=self._track(state_after),
            )
        )

    def snapshot(self) -> Optional[ReplayData]:
        """Copy of the replay so far (stats filled in) without stopping."""
        if self._data is None:
            return None
        cur = ReplayData.from_dict(self._data.to_dict())
        cur.stats = compute_stats(cur)
        return cur

    def stop_recording(self, final_snapshot: Optional[Dict[str, Any]] = None) -> ReplayData:
        data = self._require()
        data.final = final_snapshot
        data.finished_at = now_ts()
        data.duration_ms = _elapsed_ms(data.recorded_at, data.finished_at)
        data.stats = compute_stats(data)
        if final_snapshot is not None:
            final_scores = _scores_of(final_snapshot)
            teams = {str(p["player_id"]): p.get("team") for p in final_snapshot.get("players", [])}
            winner = final_snapshot.get("winner_id")
            for seat in data.players:
                seat.final_score = final_scores.get(seat.player_id, seat.final_score)
                seat.is_winner = winner is not None and (
                    seat.player_id == winner or teams.get(seat.player_id) == teams.get(str(winner))
                )
        return data


class ReplayPlayer:
    """Re-applies a replay log through `apply_move` with the same rule set used live."""

    def __init__(self, replay: ReplayData, rules: Optional[RuleSet] = None):
        if replay.ruleset != RULESET_ID:
            raise CorruptReplay(f"Replay ruleset {replay.ruleset!r} is not supported (engine is {RULESET_ID!r})")
        try:
            self.rules = rules or get_rules(replay.variant)
        except EngineError as e:
            raise CorruptReplay(str(e))
        self.replay = replay

    def initial_state(self) -> MatchState:
        try:
            return MatchState.from_dict(self.replay.initial)
        except (EngineError, KeyError, TypeError, ValueError) as e:
            raise CorruptReplay(f"Bad initial snapshot: {e}")

    def _step(self, st: MatchState, i: int, e: ReplayEntry) -> MatchState:
        try:
            if e.move is not None:
                tr = apply_move(st, e.move, self.rules)
                if not tr.move.same_action(e.move) or tr.move.score_delta != e.move.score_delta:
                    raise CorruptReplay(f"Entry {i}: engine applied {tr.move.to_dict()} for {e.move.to_dict()}")
                nxt = tr.state
            elif e.control is not None:
                op = e.control.get("op")
                pid = str(e.control.get("player_id"))
                if op == "set_active":
                    nxt = set_active(st, pid, bool(e.control.get("active")))
                elif op == "forfeit":
                    nxt = forfeit(st, pid)
                else:
                    raise CorruptReplay(f"Entry {i}: unknown control op {op!r}")
            else:
                raise CorruptReplay(f"Entry {i}: empty entry")
        except CorruptReplay:
            raise
        except EngineError as err:
            raise CorruptReplay(f"Entry {i} rejected by the engine: {err.kind}: {err}")

        if e.checkpoint is not None and nxt.fingerprint() != e.checkpoint:
            raise CorruptReplay(f"Entry {i}: state checkpoint mismatch")
        if e.scores is not None and e.scores != {p.player_id: int(p.score) for p in nxt.players}:
            raise CorruptReplay(f"Entry {i}: recorded scores do not match")
        return nxt

    def reconstruct_state_at_move(self, index: int) -> MatchState:
        """State after entries [0..index]; index -1 is the initial snapshot."""
        n = len(self.replay.entries)
        if not (-1 <= int(index) < n):
            raise IndexError(f"Replay index {index} out of range (0..{n - 1})")
        st = self.initial_state()
        for i in range(int(index) + 1):
            st = self._step(st, i, self.replay.entries[i])
        return st

    def final_state(self) -> MatchState:
        return self.reconstruct_state_at_move(len(self.replay.entries) - 1)

    def verify(self) -> MatchState:
        """Replay everything and check it lands on the recorded final snapshot."""
        st = self.final_state()
        fin = self.replay.final
        if fin is not None:
            try:
                expected = MatchState.from_dict(fin).fingerprint()
            except (EngineError, KeyError, TypeError, ValueError) as e:
                raise CorruptReplay(f"Bad final snapshot: {e}")
            if st.fingerprint() != expected:
                raise CorruptReplay("Replayed state differs from the recorded final state")
        log.debug("replay %s verified (%d entries)", self.replay.replay_id, len(self.replay.entries))
        return st
