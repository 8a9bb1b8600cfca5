# FILE: service.py | version: 2026-10-18.v1
# Match service: one authoritative MatchState per match, serialized writes, events,
# background AI with revision re-validation, soft turn timers, replay capture.

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import functools
import logging
import os
import threading
import time

from engine import (
    CorruptReplay,
    EngineError,
    InvalidConfig,
    InvalidMove,
    MatchConfig,
    MatchOver,
    MatchState,
    Move,
    NoLegalMove,
    NotPlayersTurn,
    Transition,
    UnknownMatch,
    apply_move,
    forfeit,
    new_match,
    now_ts,
    set_active,
)
from rules import fallback_move, get_rules
from ai import AI_THINK_MS, choose_move, hint_for
from replay import ReplayData, ReplayRecorder

log = logging.getLogger(__name__)

MATCH_TTL = int(os.environ.get("DOMINO_MATCH_TTL", str(6 * 3600)))
MAX_MATCHES = int(os.environ.get("DOMINO_MAX_MATCHES", "200"))
TURN_TIMEOUT_MS = int(os.environ.get("DOMINO_TURN_TIMEOUT_MS", "30000"))
AI_MAX_RETRIES = int(os.environ.get("DOMINO_AI_MAX_RETRIES", "3"))

EVENTS = ("match_started", "move_applied", "round_ended", "match_ended", "ai_thinking")

Listener = Callable[[Dict[str, Any]], None]
PendingEvents = List[Tuple[str, Dict[str, Any]]]


@dataclass
class EngineResult:
    ok: bool
    value: Any = None
    error: Optional[EngineError] = None
    notices: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any = None, notices: Optional[List[str]] = None) -> "EngineResult":
        return cls(ok=True, value=value, notices=list(notices or []))

    @classmethod
    def failure(cls, error: EngineError) -> "EngineResult":
        return cls(ok=False, error=error)

    def unwrap(self) -> Any:
        if not self.ok:
            assert self.error is not None
            raise self.error
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"ok": bool(self.ok), "notices": list(self.notices)}
        if self.ok:
            d["value"] = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        else:
            assert self.error is not None
            d["error"] = self.error.to_dict()
        return d


@dataclass
class MatchSlot:
    state: MatchState
    recorder: ReplayRecorder
    turn_started: float
    replay: Optional[ReplayData] = None


class MatchStore:
    """Thread-safe match store with TTL+LRU and per-match locks."""

    def __init__(self, max_size: int = MAX_MATCHES, ttl_seconds: int = MATCH_TTL,
                 clock: Callable[[], float] = time.time):
        self.max_size = int(max_size)
        self.ttl_seconds = int(ttl_seconds)
        self.clock = clock
        self._lock = threading.Lock()
        self._data: "OrderedDict[str, MatchSlot]" = OrderedDict()
        self._ts: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}

    def _drop(self, key: str) -> None:
        self._data.pop(key, None)
        self._ts.pop(key, None)
        self._locks.pop(key, None)

    def lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            lk = self._locks.get(key)
            if lk is None:
                lk = threading.Lock()
                self._locks[key] = lk
            return lk

    def get(self, key: str) -> Optional[MatchSlot]:
        now = self.clock()
        with self._lock:
            slot = self._data.get(key)
            if slot is None:
                return None
            if now - self._ts.get(key, 0.0) > self.ttl_seconds:
                self._drop(key)
                return None
            self._data.move_to_end(key)
            self._ts[key] = now
            return slot

    def peek(self, key: str) -> Optional[MatchSlot]:
        """Read without refreshing the idle timer or the LRU position."""
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, slot: MatchSlot) -> None:
        now = self.clock()
        with self._lock:
            if key not in self._data:
                while len(self._data) >= self.max_size:
                    oldest, _ = self._data.popitem(last=False)
                    log.info("evicting match %s (store full)", oldest)
                    self._ts.pop(oldest, None)
                    self._locks.pop(oldest, None)
            self._data[key] = slot
            self._data.move_to_end(key)
            self._ts[key] = now

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def cleanup(self) -> int:
        now = self.clock()
        removed = 0
        with self._lock:
            for k in list(self._data.keys()):
                if now - self._ts.get(k, 0.0) > self.ttl_seconds:
                    self._drop(k)
                    removed += 1
        if removed:
            log.info("expired %d idle match(es)", removed)
        return removed


def _as_result(fn: Callable[..., EngineResult]) -> Callable[..., EngineResult]:
    @functools.wraps(fn)
    def wrapper(self: "MatchEngine", *args: Any, **kwargs: Any) -> EngineResult:
        try:
            return fn(self, *args, **kwargs)
        except CorruptReplay:
            raise
        except EngineError as e:
            log.debug("%s rejected: %s: %s", fn.__name__, e.kind, e)
            return EngineResult.failure(e)
        except Exception as e:
            log.exception("%s failed", fn.__name__)
            return EngineResult.failure(EngineError(str(e) or e.__class__.__name__))

    return wrapper


def state_delta(before: MatchState, after: MatchState) -> Dict[str, Any]:
    before_scores = {p.player_id: p.score for p in before.players}
    return {
        "revision": int(after.revision),
        "round_index": int(after.round_index),
        "current_player": after.current_player().player_id,
        "phase": after.phase,
        "boneyard_count": len(after.boneyard),
        "scores": {p.player_id: int(p.score - before_scores.get(p.player_id, 0)) for p in after.players},
        "hand_counts": {p.player_id: len(p.hand) for p in after.players},
        "ends": after.board.snapshot()["ends"],
    }


class MatchEngine:
    """
    Service boundary for a session/UI layer. Every public method returns an
    EngineResult; states leave as dict snapshots, never as live objects.
    """

    def __init__(
        self,
        store: Optional[MatchStore] = None,
        turn_timeout_ms: int = TURN_TIMEOUT_MS,
        ai_max_retries: int = AI_MAX_RETRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store if store is not None else MatchStore()
        self.turn_timeout_ms = int(turn_timeout_ms)
        self.ai_max_retries = max(1, int(ai_max_retries))
        self.clock = clock
        self._listeners: Dict[str, List[Listener]] = {name: [] for name in EVENTS}
        self._ai_results: Dict[str, EngineResult] = {}

    # -------------------------
    # Events
    # -------------------------
    def on(self, event: str, fn: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event} (expected one of {list(EVENTS)})")
        self._listeners[event].append(fn)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for fn in list(self._listeners.get(event, [])):
            try:
                fn(payload)
            except Exception:
                log.exception("listener for %s failed", event)

    def _flush(self, events: PendingEvents) -> None:
        for name, payload in events:
            self._emit(name, payload)

    # -------------------------
    # Internals
    # -------------------------
    def _slot(self, match_id: str, touch: bool = True) -> MatchSlot:
        slot = self.store.get(str(match_id)) if touch else self.store.peek(str(match_id))
        if slot is None:
            raise UnknownMatch(f"Unknown match: {match_id}")
        return slot

    def _finish_if_over(self, slot: MatchSlot, events: PendingEvents) -> None:
        st = slot.state
        if not st.is_over():
            return
        if slot.recorder.recording:
            slot.replay = slot.recorder.stop_recording(st.to_dict())
        log.info("match %s ended: winner=%s", st.match_id, st.winner_id)
        events.append(("match_ended", {"match_id": st.match_id, "winner": st.winner_id,
                                       "scores": {p.player_id: p.score for p in st.players}}))

    def _commit(self, slot: MatchSlot, move: Move, thinking_ms: int) -> Tuple[Transition, PendingEvents]:
        """Apply under the caller-held match lock; events are returned for emission after release."""
        before = slot.state
        rules = get_rules(before.variant)
        if not move.ts:
            move = replace(move, ts=now_ts())
        tr = apply_move(before, move, rules)

        slot.state = tr.state
        slot.turn_started = self.clock()
        if slot.recorder.recording:
            slot.recorder.record_move(tr.move, thinking_ms, tr.state)

        events: PendingEvents = [
            ("move_applied", {"match_id": before.match_id, "move": tr.move.to_dict(),
                              "state_delta": state_delta(before, tr.state), "notices": list(tr.notices)}),
        ]
        if tr.round_result is not None:
            rr = tr.round_result
            log.info("match %s round %d ended (%s): winner=%s awards=%s",
                     before.match_id, rr.round_index, rr.reason, rr.winner_id, rr.awards)
            events.append(("round_ended", {"match_id": before.match_id, "winner": rr.winner_id,
                                           "scores": {p.player_id: p.score for p in tr.state.players},
                                           "round": rr.to_dict()}))
        self._finish_if_over(slot, events)
        return tr, events

    # -------------------------
    # Match lifecycle
    # -------------------------
    @_as_result
    def start_match(self, config: Union[MatchConfig, Dict[str, Any]]) -> EngineResult:
        cfg = config if isinstance(config, MatchConfig) else MatchConfig.from_dict(config)
        rules = get_rules(cfg.variant)
        st = new_match(cfg, rules)
        rec = ReplayRecorder()
        rec.start_recording(st.to_dict())
        self.store.set(st.match_id, MatchSlot(state=st, recorder=rec, turn_started=self.clock()))
        log.info("match %s started: variant=%s players=%d seed=%d",
                 st.match_id, st.variant, len(st.players), st.config.rng_seed)
        self._emit("match_started", {"match_id": st.match_id, "state": st.to_dict()})
        return EngineResult.success(st.to_dict())

    @_as_result
    def get_state(self, match_id: str, viewer_id: Optional[str] = None) -> EngineResult:
        return EngineResult.success(self._slot(match_id).state.to_dict(viewer_id=viewer_id))

    @_as_result
    def get_valid_moves(self, match_id: str, player_id: str) -> EngineResult:
        """Placements for `player_id`; the required draw/pass when there are none."""
        st = self._slot(match_id).state
        st.player(player_id)
        if st.is_over() or st.current_player().player_id != player_id:
            return EngineResult.success([])
        rules = get_rules(st.variant)
        moves = rules.legal_moves(st, player_id)
        if not moves:
            return EngineResult.success([fallback_move(st, player_id, rules).to_dict()], notices=[NoLegalMove.kind])
        return EngineResult.success([m.to_dict() for m in moves])

    @_as_result
    def get_hint(self, match_id: str, player_id: str) -> EngineResult:
        """Suggested move for the player on turn, with reasons and ranked alternatives."""
        st = self._slot(match_id).state
        st.player(player_id)
        if st.is_over():
            raise MatchOver("Match is over")
        if st.current_player().player_id != player_id:
            raise NotPlayersTurn(f"Not {player_id}'s turn (current={st.current_player().player_id})")
        return EngineResult.success(hint_for(st, get_rules(st.variant), player_id).to_dict())

    @_as_result
    def apply_move(self, match_id: str, move: Union[Move, Dict[str, Any]]) -> EngineResult:
        mv = move if isinstance(move, Move) else Move.from_dict(move)
        # only the timer issues forced moves
        mv = replace(mv, forced=False)
        with self.store.lock_for(match_id):
            slot = self._slot(match_id)
            thinking = int((self.clock() - slot.turn_started) * 1000)
            tr, events = self._commit(slot, mv, thinking)
        self._flush(events)
        return EngineResult.success(tr.state.to_dict(), notices=tr.notices)

    # -------------------------
    # AI
    # -------------------------
    def _decide(self, st: MatchState) -> Tuple[Move, int]:
        pid = st.current_player().player_id
        self._emit("ai_thinking", {"match_id": st.match_id, "player_id": pid, "thinking": True})
        t0 = self.clock()
        try:
            move = choose_move(st, get_rules(st.variant), pid)
        finally:
            self._emit("ai_thinking", {"match_id": st.match_id, "player_id": pid, "thinking": False})
        ms = int((self.clock() - t0) * 1000)
        if ms > AI_THINK_MS:
            log.warning("AI decision for %s took %d ms (budget %d ms)", pid, ms, AI_THINK_MS)
        return move, ms

    @_as_result
    def play_ai_turn(self, match_id: str) -> EngineResult:
        """Decide and commit the current AI player's move synchronously."""
        with self.store.lock_for(match_id):
            slot = self._slot(match_id)
            st = slot.state
            if st.is_over():
                raise InvalidMove("Match is over")
            if not st.current_player().is_ai:
                raise InvalidMove(f"{st.current_player().player_id} is not an AI player")
            move, ms = self._decide(st)
            tr, events = self._commit(slot, move, ms)
        self._flush(events)
        return EngineResult.success(tr.state.to_dict(), notices=tr.notices)

    def request_ai_move(self, match_id: str) -> threading.Thread:
        """
        Decide on a background thread against the current snapshot and commit only
        if the match has not moved on meanwhile (bounded retries). The outcome is
        available from `last_ai_result(match_id)` once the thread finishes.
        """
        th = threading.Thread(target=self._ai_job, args=(str(match_id),), daemon=True)
        th.start()
        return th

    def last_ai_result(self, match_id: str) -> Optional[EngineResult]:
        return self._ai_results.get(str(match_id))

    def _ai_job(self, match_id: str) -> None:
        try:
            self._ai_results[match_id] = self._ai_attempts(match_id)
        except EngineError as e:
            self._ai_results[match_id] = EngineResult.failure(e)
        except Exception as e:
            log.exception("background AI for match %s failed", match_id)
            self._ai_results[match_id] = EngineResult.failure(EngineError(str(e)))

    def _ai_attempts(self, match_id: str) -> EngineResult:
        for attempt in range(self.ai_max_retries):
            snap = self._slot(match_id).state
            if snap.is_over():
                raise InvalidMove("Match is over")
            if not snap.current_player().is_ai:
                raise InvalidMove(f"{snap.current_player().player_id} is not an AI player")

            move, ms = self._decide(snap)

            with self.store.lock_for(match_id):
                slot = self._slot(match_id)
                if slot.state.revision != snap.revision:
                    log.info("match %s: discarding AI move computed at revision %d (now %d), attempt %d",
                             match_id, snap.revision, slot.state.revision, attempt + 1)
                    continue
                tr, events = self._commit(slot, move, ms)
            self._flush(events)
            return EngineResult.success(tr.state.to_dict(), notices=tr.notices)

        log.warning("match %s: AI move abandoned after %d attempts", match_id, self.ai_max_retries)
        raise InvalidMove("State kept changing while the AI was thinking")

    # -------------------------
    # Timers / presence / forfeit
    # -------------------------
    @_as_result
    def timeout_turn(self, match_id: str, touch: bool = True) -> EngineResult:
        """Expire the current turn: automatic draw when stuck and drawing is allowed, else a forced pass."""
        with self.store.lock_for(match_id):
            slot = self._slot(match_id, touch=touch)
            st = slot.state
            if st.is_over():
                raise InvalidMove("Match is over")
            pid = st.current_player().player_id
            rules = get_rules(st.variant)
            if rules.legal_moves(st, pid):
                move = Move(kind="pass", player_id=pid, forced=True)
            else:
                move = fallback_move(st, pid, rules, forced=True)
            thinking = int((self.clock() - slot.turn_started) * 1000)
            log.info("match %s: turn of %s timed out after %d ms -> %s", match_id, pid, thinking, move.kind)
            tr, events = self._commit(slot, move, thinking)
        self._flush(events)
        return EngineResult.success(tr.state.to_dict(), notices=tr.notices)

    def enforce_turn_timeouts(self) -> int:
        """Expire every human turn older than the timeout. Returns how many were expired."""
        expired = 0
        now = self.clock()
        for mid in self.store.keys():
            slot = self.store.peek(mid)
            if slot is None or slot.state.is_over() or slot.state.current_player().is_ai:
                continue
            if (now - slot.turn_started) * 1000 < self.turn_timeout_ms:
                continue
            if self.timeout_turn(mid, touch=False).ok:
                expired += 1
        return expired

    @_as_result
    def set_player_active(self, match_id: str, player_id: str, active: bool) -> EngineResult:
        with self.store.lock_for(match_id):
            slot = self._slot(match_id)
            before = slot.state
            st = set_active(before, player_id, active)
            slot.state = st
            if st.turn_index != before.turn_index:
                slot.turn_started = self.clock()
            if slot.recorder.recording:
                slot.recorder.record_control("set_active", player_id, active=active, state_after=st)
        log.info("match %s: player %s %s", match_id, player_id, "connected" if active else "disconnected")
        return EngineResult.success(st.to_dict())

    @_as_result
    def forfeit(self, match_id: str, player_id: str) -> EngineResult:
        events: PendingEvents = []
        with self.store.lock_for(match_id):
            slot = self._slot(match_id)
            st = forfeit(slot.state, player_id)
            slot.state = st
            if slot.recorder.recording:
                slot.recorder.record_control("forfeit", player_id, state_after=st)
            log.info("match %s: %s forfeited", match_id, player_id)
            self._finish_if_over(slot, events)
        self._flush(events)
        return EngineResult.success(st.to_dict())

    # -------------------------
    # Records / replays
    # -------------------------
    @_as_result
    def export_record(self, match_id: str) -> EngineResult:
        return EngineResult.success(self._slot(match_id).state.to_record(updated_at=now_ts()))

    @_as_result
    def import_record(self, record: Dict[str, Any]) -> EngineResult:
        try:
            st = MatchState.from_record(record)
        except (KeyError, TypeError) as e:
            raise InvalidConfig(f"Malformed match record: {e}")
        get_rules(st.variant)
        if not st.conservation_ok():
            raise InvalidConfig("Match record fails tile conservation")
        rec = ReplayRecorder()
        rec.start_recording(st.to_dict())
        slot = MatchSlot(state=st, recorder=rec, turn_started=self.clock())
        with self.store.lock_for(st.match_id):
            self.store.set(st.match_id, slot)
        log.info("match %s restored (revision %d)", st.match_id, st.revision)
        return EngineResult.success(st.to_dict())

    @_as_result
    def get_replay(self, match_id: str) -> EngineResult:
        """ReplayData of the match: the finished recording, or the one in progress."""
        slot = self._slot(match_id)
        if slot.replay is not None:
            return EngineResult.success(ReplayData.from_dict(slot.replay.to_dict()))
        return EngineResult.success(slot.recorder.snapshot())

    def cleanup(self) -> int:
        removed = self.store.cleanup()
        live = set(self.store.keys())
        for mid in [k for k in self._ai_results if k not in live]:
            self._ai_results.pop(mid, None)
        return removed
