# FILE: ai.py | version: 2026-10-18.v1
# (per-variant heuristic selector: candidate features stacked in a numpy matrix and scored with
#  one dot product; difficulty noise from a single rng draw; deterministic tie-break)

from __future__ import annotations

from dataclasses import dataclass, astuple, field
from typing import Any, Dict, List, Optional, Sequence, Union
import os
import random
import numpy as np

from engine import (
    Board, EngineError, MatchState, Move, Tile,
    full_set, round_seed, tile_has, tile_id, tile_is_double, tile_pip_count,
)
from rules import RuleSet, fallback_move, get_rules, train_id

# soft per-decision budget; the service warns when a decision runs over it
AI_THINK_MS = int(os.environ.get("DOMINO_AI_THINK_MS", "250"))

# chance that a decision ignores the heuristic and picks uniformly
DIFFICULTY_NOISE: Dict[str, float] = {
    "human": 0.0,
    "ai_easy": 0.50,
    "ai_medium": 0.20,
    "ai_hard": 0.05,
}

FEATURES = ("immediate", "connections", "pips", "double", "blocking", "follow_up", "own_train")
BLOCKING_IDX = FEATURES.index("blocking")


@dataclass(frozen=True)
class HeuristicWeights:
    immediate: float = 1.0      # points scored by the placement itself
    connections: float = -1.0   # hand tiles sharing a pip with the played tile
    pips: float = 0.3           # pip weight unloaded
    double: float = 2.0         # sign is variant dependent
    blocking: float = -0.5      # unseen tiles able to answer the resulting ends
    follow_up: float = 1.0      # own tiles still playable on the resulting ends
    own_train: float = 0.0      # placement on the mover's own train

    def vector(self) -> np.ndarray:
        return np.array(astuple(self), dtype=np.float64)


VARIANT_WEIGHTS: Dict[str, HeuristicWeights] = {
    "block": HeuristicWeights(immediate=0.0, connections=-2.0, pips=0.5, double=8.0, blocking=-1.0, follow_up=1.5),
    "all_fives": HeuristicWeights(immediate=10.0, connections=-1.0, pips=0.2, double=5.0, blocking=-0.5, follow_up=1.0),
    "cuban": HeuristicWeights(immediate=0.0, connections=-2.0, pips=0.5, double=6.0, blocking=-1.0, follow_up=1.5),
    "chicken_foot": HeuristicWeights(immediate=0.0, connections=-1.0, pips=1.0, double=-10.0, blocking=-0.5, follow_up=1.0),
    "mexican_train": HeuristicWeights(
        immediate=0.0, connections=-1.0, pips=0.8, double=4.0, blocking=-0.3, follow_up=1.0, own_train=3.0
    ),
}


def normalize_difficulty(difficulty: str) -> str:
    d = str(difficulty or "").strip().lower()
    if d in DIFFICULTY_NOISE:
        return d
    if f"ai_{d}" in DIFFICULTY_NOISE:
        return f"ai_{d}"
    raise ValueError(f"Unknown difficulty: {difficulty}")


# =============================================================================
# Features
# =============================================================================

def board_after_move(board: Board, move: Move) -> Optional[Board]:
    b2 = board.clone()
    try:
        b2.play(move.tile, move.branch or "", move.end or "", player_id=move.player_id)
        return b2
    except EngineError:
        return None


def unseen_tiles(hand: Sequence[Tile], board: Board, max_pips: int) -> List[Tile]:
    """Tiles the mover cannot see: full set minus own hand minus the board."""
    mine = set(hand)
    return [t for t in full_set(max_pips) if t not in mine and t not in board.played_set]


def candidate_features(
    moves: Sequence[Move],
    hand: Sequence[Tile],
    board: Board,
    rules: RuleSet,
    unseen: Sequence[Tile],
) -> np.ndarray:
    F = np.zeros((len(moves), len(FEATURES)), dtype=np.float64)
    for i, m in enumerate(moves):
        t = m.tile
        after = board_after_move(board, m)
        rest = [x for x in hand if x != t]
        ends_after = set(after.open_end_values()) if after is not None else set()

        F[i, 0] = float(rules.score_for_move(after, m)) if after is not None else 0.0
        F[i, 1] = float(sum(1 for x in rest if tile_has(x, t[0]) or tile_has(x, t[1])))
        F[i, 2] = float(tile_pip_count(t))
        F[i, 3] = 1.0 if tile_is_double(t) else 0.0
        F[i, 4] = float(sum(1 for u in unseen if any(tile_has(u, v) for v in ends_after)))
        F[i, 5] = float(sum(1 for x in rest if any(tile_has(x, v) for v in ends_after)))
        F[i, 6] = 1.0 if (m.branch or "") == train_id(m.player_id) else 0.0
    return F


def score_moves(
    moves: Sequence[Move],
    hand: Sequence[Tile],
    board: Board,
    rules: RuleSet,
    unseen: Sequence[Tile],
    difficulty: str = "ai_hard",
) -> np.ndarray:
    w = VARIANT_WEIGHTS.get(rules.name, HeuristicWeights()).vector()
    if normalize_difficulty(difficulty) == "ai_easy":
        w[BLOCKING_IDX] = 0.0
    F = candidate_features(moves, hand, board, rules, unseen)
    return np.round(F @ w, 6)


def rank_moves(
    moves: Sequence[Move],
    hand: Sequence[Tile],
    board: Board,
    rules: RuleSet,
    unseen: Sequence[Tile],
    difficulty: str = "ai_hard",
) -> List[Move]:
    """Best first. Ties: lowest tile id, then lowest value of the end played on."""
    if not moves:
        return []
    scores = score_moves(moves, hand, board, rules, unseen, difficulty)
    return [moves[int(i)] for i in _ranking(moves, board, scores)]


def _ranking(moves: Sequence[Move], board: Board, scores: np.ndarray) -> np.ndarray:
    ids = np.array([tile_id(m.tile) for m in moves], dtype=np.int64)
    end_vals = np.array(
        [(-1 if board.end_value(m.branch or "", m.end or "") is None else board.end_value(m.branch or "", m.end or "")) for m in moves],
        dtype=np.int64,
    )
    return np.lexsort((end_vals, ids, -scores))


# =============================================================================
# Selection
# =============================================================================

def select_move(
    difficulty: str,
    hand: Sequence[Tile],
    board: Board,
    valid_moves: Sequence[Move],
    rng: random.Random,
    variant: Union[str, RuleSet],
    unseen: Optional[Sequence[Tile]] = None,
    max_pips: Optional[int] = None,
) -> Optional[Move]:
    """
    Pick one of `valid_moves`. Returns None when there is nothing to place;
    the caller then draws or passes.

    Without `unseen`, the unknown tiles are derived from a double-`max_pips`
    set; when that is not given either, the set is the variant default widened
    to the highest pip in sight.
    """
    if not valid_moves:
        return None
    rules = variant if isinstance(variant, RuleSet) else get_rules(variant)
    difficulty = normalize_difficulty(difficulty)
    moves = sorted(valid_moves, key=lambda m: m.sort_key())
    if unseen is None:
        if max_pips is None:
            in_sight = [t[0] for t in list(hand) + list(board.played_set)]
            max_pips = max([int(rules.max_pips)] + in_sight)
        unseen = unseen_tiles(hand, board, int(max_pips))

    p = DIFFICULTY_NOISE.get(difficulty, 0.0)
    r = rng.random()
    if r < p:
        idx = min(int(r / p * len(moves)), len(moves) - 1)
        return moves[idx]

    return rank_moves(moves, hand, board, rules, unseen, difficulty)[0]


def decision_rng(state: MatchState, player_id: str) -> random.Random:
    seat = state.player_index(player_id)
    return random.Random(round_seed(state.config.rng_seed, state.round_index, salt=state.ply() * 31 + seat + 1))


def choose_move(state: MatchState, rules: RuleSet, player_id: str, difficulty: Optional[str] = None) -> Move:
    """Full AI turn decision: a placement when one exists, otherwise the required draw or pass."""
    p = state.player(player_id)
    moves = rules.legal_moves(state, player_id)
    if not moves:
        return fallback_move(state, player_id, rules)
    diff = difficulty or (p.kind if p.is_ai else "ai_hard")
    unseen = unseen_tiles(p.hand, state.board, int(state.config.max_pips or rules.max_pips))
    picked = select_move(diff, p.hand, state.board, moves, decision_rng(state, player_id), rules, unseen=unseen)
    assert picked is not None
    return picked


# =============================================================================
# Hints
# =============================================================================

HINT_ALTERNATIVES = 3


@dataclass
class Hint:
    move: Move
    score: float
    reasons: List[str]
    category: str  # opening | endgame | scoring | blocking | setup | defensive
    confidence: int  # 0..100
    alternatives: List[Move] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "move": self.move.to_dict(),
            "score": float(self.score),
            "reasons": list(self.reasons),
            "category": self.category,
            "confidence": int(self.confidence),
            "alternatives": [m.to_dict() for m in self.alternatives],
        }


def _hint_reasons(f: np.ndarray, fewest_answers: bool) -> List[str]:
    reasons = []
    if f[0] > 0:
        reasons.append(f"Scores {int(f[0])} points now")
    if f[3] > 0:
        reasons.append("Gets a double out of your hand")
    if f[6] > 0:
        reasons.append("Extends your own train")
    if fewest_answers:
        reasons.append(f"Leaves opponents the fewest answers ({int(f[4])} unseen tiles fit)")
    if f[5] > 0:
        reasons.append(f"Keeps {int(f[5])} of your tiles playable next turn")
    reasons.append(f"Unloads {int(f[2])} pips")
    return reasons


def hint_for(state: MatchState, rules: RuleSet, player_id: str) -> Hint:
    """
    Best move for `player_id` with the reasons behind it, ranked with the hard
    weights and no noise. When nothing can be placed the hint is the required
    draw or pass.
    """
    p = state.player(player_id)
    moves = sorted(rules.legal_moves(state, player_id), key=lambda m: m.sort_key())
    if not moves:
        fb = fallback_move(state, player_id, rules)
        why = ("No playable tile. Draw from the boneyard." if fb.kind == "draw"
               else "No playable tile and nothing to draw. Pass.")
        return Hint(move=fb, score=0.0, reasons=[why], category="defensive", confidence=100)

    board = state.board
    unseen = unseen_tiles(p.hand, board, int(state.config.max_pips or rules.max_pips))
    F = candidate_features(moves, p.hand, board, rules, unseen)
    w = VARIANT_WEIGHTS.get(rules.name, HeuristicWeights()).vector()
    scores = np.round(F @ w, 6)
    order = _ranking(moves, board, scores)
    best = int(order[0])
    f = F[best]

    contested = len(moves) > 1 and F[:, 4].min() < F[:, 4].max()
    fewest = bool(contested and f[4] == F[:, 4].min())
    if board.is_empty():
        category = "opening"
    elif len(p.hand) <= 2:
        category = "endgame"
    elif f[0] > 0:
        category = "scoring"
    elif fewest:
        category = "blocking"
    elif f[5] > 0:
        category = "setup"
    else:
        category = "defensive"

    if len(moves) == 1:
        confidence = 100
    else:
        gap = float(scores[best] - scores[int(order[1])])
        confidence = int(min(100, round(50 + gap * 2)))

    return Hint(
        move=moves[best],
        score=float(scores[best]),
        reasons=_hint_reasons(f, fewest),
        category=category,
        confidence=confidence,
        alternatives=[moves[int(i)] for i in order[1:1 + HINT_ALTERNATIVES]],
    )
