# FILE: rules.py | version: 2026-10-18.v1
# Variant rule sets (Block / All Fives / Cuban / Chicken Foot / Mexican Train) and the move generator.
# Rule sets are stateless: every per-match fact lives on MatchState.

from __future__ import annotations

from typing import Dict, List, Optional, Set, Any

from engine import (
    ANY_END,
    MAIN,
    ONGOING,
    Board,
    InvalidConfig,
    MatchState,
    Move,
    Player,
    RoundOutcome,
    RoundResult,
    Tile,
    best_opening_tile,
    highest_double,
    round_to_nearest_5,
    tile_id,
    tile_pip_count,
)


class RuleSet:
    """Block rules; other variants override the hooks that differ."""

    name = "block"
    title = "Block"
    can_draw = False
    max_pips = 6
    tiles_per_player = 7
    target_score = 100
    min_players = 2
    max_players = 4
    deals_hub = False
    cap_awards = True

    # ---- setup ----

    def default_tiles(self, n_players: int) -> int:
        return int(self.tiles_per_player)

    def team_for_seat(self, seat: int) -> int:
        return int(seat)

    def new_board(self, state: MatchState) -> Board:
        return Board(layout="line")

    def hub_double(self, state: MatchState) -> Optional[Tile]:
        return None

    def hub_branches(self, state: MatchState) -> List[str]:
        return []

    def designated_double(self, state: MatchState) -> Tile:
        """Highest double in round 1, one lower each round after (wrapping)."""
        top = int(state.config.max_pips or self.max_pips)
        pip = (top - (int(state.round_index) - 1)) % (top + 1)
        return (pip, pip)

    def opening_requirement(self, state: MatchState, player: Player) -> Optional[Set[Tile]]:
        """Tiles allowed as the first placement of a round (None = any)."""
        return None

    def first_player(self, state: MatchState, leader_id: Optional[str] = None) -> int:
        if leader_id is not None:
            i = state.player_index(leader_id)
            if state.players[i].active:
                return i
        best: Optional[int] = None
        best_pip = -1
        for i, p in enumerate(state.players):
            if not p.active:
                continue
            d = highest_double(p.hand)
            if d is not None and d[0] > best_pip:
                best, best_pip = i, d[0]
        if best is not None:
            return best
        return self._rotation_seat(state)

    def _rotation_seat(self, state: MatchState) -> int:
        n = len(state.players)
        start = (int(state.round_index) - 1) % n
        for step in range(n):
            i = (start + step) % n
            if state.players[i].active:
                return i
        return start

    # ---- legality ----

    def is_legal_move(self, state: MatchState, player: Player, t: Tile, branch: str, end: str) -> bool:
        if t not in player.hand:
            return False
        board = state.board
        if board.is_empty():
            if end != ANY_END:
                return False
            req = self.opening_requirement(state, player)
            return req is None or t in req
        return (branch, end) in board.legal_ends_for_tile(t)

    def legal_moves(self, state: MatchState, player_id: str) -> List[Move]:
        p = state.player(player_id)
        out: List[Move] = []
        for t in sorted(set(p.hand), key=tile_id):
            for branch, end in state.board.legal_ends_for_tile(t):
                if self.is_legal_move(state, p, t, branch, end):
                    out.append(Move(kind="place", player_id=player_id, tile=t, branch=branch, end=end, ts=""))
        out.sort(key=lambda m: m.sort_key())
        return out

    # ---- scoring ----

    def score_for_move(self, board: Board, move: Move) -> int:
        """In-play score of `move`; `board` already holds the placed tile."""
        return 0

    def hand_value(self, hand: List[Tile]) -> int:
        return int(sum(tile_pip_count(t) for t in hand))

    def after_place(self, state: MatchState, player: Player, move: Move) -> None:
        return None

    def after_pass(self, state: MatchState, player: Player) -> None:
        return None

    def check_round_end(self, state: MatchState) -> RoundOutcome:
        for p in state.players:
            if not p.hand:
                return RoundOutcome("won", p.player_id)
        if state.consecutive_passes >= len(state.active_players()):
            return RoundOutcome("blocked")
        return ONGOING

    def side_of(self, state: MatchState, player_id: str) -> List[str]:
        return [player_id]

    def blocked_winner(self, state: MatchState, pips: Dict[str, int]) -> Optional[str]:
        """Lowest remaining pips among active players; an exact tie scores nobody."""
        active = [p.player_id for p in state.active_players()]
        if not active:
            return None
        low = min(pips[pid] for pid in active)
        lows = [pid for pid in active if pips[pid] == low]
        return lows[0] if len(lows) == 1 else None

    def round_award(self, state: MatchState, winner_id: str, pips: Dict[str, int], reason: str) -> int:
        side = set(self.side_of(state, winner_id))
        others = sum(v for pid, v in pips.items() if pid not in side)
        if self.cap_awards:
            return int(min(others, int(state.config.target_score or self.target_score)))
        return int(others)

    def score_round(self, state: MatchState, outcome: RoundOutcome) -> RoundResult:
        pips = {p.player_id: self.hand_value(p.hand) for p in state.players}
        if outcome.status == "won":
            winner, reason = outcome.winner_id, "domino"
        else:
            winner, reason = self.blocked_winner(state, pips), "blocked"

        awards: Dict[str, int] = {}
        if winner is not None:
            pts = self.round_award(state, winner, pips, reason)
            if pts > 0:
                for pid in self.side_of(state, winner):
                    awards[pid] = int(pts)
        return RoundResult(int(state.round_index), reason, winner, awards, pips)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "can_draw": bool(self.can_draw),
            "max_pips": int(self.max_pips),
            "tiles_per_player": int(self.tiles_per_player),
            "target_score": int(self.target_score),
            "players": [int(self.min_players), int(self.max_players)],
            "summary": (self.__doc__ or "").strip(),
        }


class BlockRules(RuleSet):
    """No drawing, no in-play scoring; the round winner scores the others' pips (capped at the target)."""


class AllFivesRules(RuleSet):
    """Score the open-end total whenever it is a positive multiple of 5; round pips are rounded to 5."""

    name = "all_fives"
    title = "All Fives"
    can_draw = True
    target_score = 150
    cap_awards = False

    def opening_requirement(self, state: MatchState, player: Player) -> Optional[Set[Tile]]:
        if state.opening_free:
            return None
        t = best_opening_tile(player.hand)
        return {t} if t is not None else None

    def score_for_move(self, board: Board, move: Move) -> int:
        if move.kind != "place":
            return 0
        s = board.ends_sum()
        return int(s) if (s > 0 and s % 5 == 0) else 0

    def round_award(self, state: MatchState, winner_id: str, pips: Dict[str, int], reason: str) -> int:
        others = sum(v for pid, v in pips.items() if pid != winner_id)
        if reason == "blocked":
            return int(round_to_nearest_5(max(0, others - pips[winner_id])))
        return int(round_to_nearest_5(others))


class CubanRules(RuleSet):
    """Block with a double-nine set, ten tiles each and partners in opposite seats."""

    name = "cuban"
    title = "Cuban"
    max_pips = 9
    tiles_per_player = 10
    min_players = 4
    max_players = 4

    def team_for_seat(self, seat: int) -> int:
        return int(seat) % 2

    def opening_requirement(self, state: MatchState, player: Player) -> Optional[Set[Tile]]:
        if state.opening_free:
            return None
        t = best_opening_tile(player.hand)
        return {t} if t is not None else None

    def side_of(self, state: MatchState, player_id: str) -> List[str]:
        team = state.player(player_id).team
        return [p.player_id for p in state.players if p.team == team]

    def blocked_winner(self, state: MatchState, pips: Dict[str, int]) -> Optional[str]:
        totals: Dict[int, int] = {}
        for p in state.players:
            totals[p.team] = totals.get(p.team, 0) + pips[p.player_id]
        low = min(totals.values())
        teams = [t for t, v in totals.items() if v == low]
        if len(teams) != 1:
            return None
        members = [p for p in state.active_players() if p.team == teams[0]]
        if not members:
            return None
        return min(members, key=lambda p: (pips[p.player_id], state.player_index(p.player_id))).player_id


class ChickenFootRules(RuleSet):
    """The round's double opens four feet; every double must grow its feet before play continues."""

    name = "chicken_foot"
    title = "Chicken Foot"
    can_draw = True
    max_pips = 9
    tiles_per_player = 7
    target_score = 200
    max_players = 6
    cap_awards = False

    FEET = 3
    OPENING_FEET = 4
    BLANK_DOUBLE_PENALTY = 50

    def new_board(self, state: MatchState) -> Board:
        return Board(layout="tree", double_feet=self.FEET, sprout_feet=True, root_feet=self.OPENING_FEET)

    def opening_requirement(self, state: MatchState, player: Player) -> Optional[Set[Tile]]:
        return {self.designated_double(state)}

    def first_player(self, state: MatchState, leader_id: Optional[str] = None) -> int:
        want = self.designated_double(state)
        for i, p in enumerate(state.players):
            if p.active and want in p.hand:
                return i
        return super().first_player(state, leader_id)

    def hand_value(self, hand: List[Tile]) -> int:
        return int(sum(self.BLANK_DOUBLE_PENALTY if t == (0, 0) else tile_pip_count(t) for t in hand))


class MexicanTrainRules(RuleSet):
    """Personal trains off a central engine double plus a public Mexican train."""

    name = "mexican_train"
    title = "Mexican Train"
    can_draw = True
    max_pips = 12
    tiles_per_player = 15
    target_score = 200
    max_players = 8

    MEXICAN = "mexican"

    def default_tiles(self, n_players: int) -> int:
        if n_players <= 4:
            return 15
        if n_players <= 6:
            return 12
        return 10

    def new_board(self, state: MatchState) -> Board:
        return Board(layout="tree", double_feet=1, sprout_feet=False)

    def hub_double(self, state: MatchState) -> Optional[Tile]:
        return self.designated_double(state)

    def hub_branches(self, state: MatchState) -> List[str]:
        return [self.MEXICAN] + [train_id(p.player_id) for p in state.players]

    def first_player(self, state: MatchState, leader_id: Optional[str] = None) -> int:
        if leader_id is not None:
            i = state.player_index(leader_id)
            if state.players[i].active:
                return i
        return self._rotation_seat(state)

    def is_legal_move(self, state: MatchState, player: Player, t: Tile, branch: str, end: str) -> bool:
        if not super().is_legal_move(state, player, t, branch, end):
            return False
        if branch == self.MEXICAN or branch == train_id(player.player_id):
            return True
        owner = branch[len("train:"):] if branch.startswith("train:") else None
        if owner is not None and owner in state.open_trains:
            return True
        # covering a double is allowed on any train
        pending = state.board.pending_node()
        return pending is not None and branch in pending.open_feet

    def after_place(self, state: MatchState, player: Player, move: Move) -> None:
        if move.branch == train_id(player.player_id):
            state.open_trains.discard(player.player_id)

    def after_pass(self, state: MatchState, player: Player) -> None:
        state.open_trains.add(player.player_id)


def train_id(player_id: str) -> str:
    return f"train:{player_id}"


# =============================================================================
# Registry
# =============================================================================

VARIANTS: Dict[str, RuleSet] = {
    r.name: r
    for r in (BlockRules(), AllFivesRules(), CubanRules(), ChickenFootRules(), MexicanTrainRules())
}


def get_rules(variant: str) -> RuleSet:
    key = str(variant or "").strip().lower().replace("-", "_").replace(" ", "_")
    rules = VARIANTS.get(key)
    if rules is None:
        raise InvalidConfig(f"Unknown variant: {variant} (expected one of {sorted(VARIANTS)})")
    return rules


def legal_moves(state: MatchState, player_id: str, rules: Optional[RuleSet] = None) -> List[Move]:
    """Every legal placement for `player_id`, ordered by tile id, branch, end."""
    return (rules or get_rules(state.variant)).legal_moves(state, player_id)


def can_play(state: MatchState, player_id: str, rules: Optional[RuleSet] = None) -> bool:
    return bool(legal_moves(state, player_id, rules))


def fallback_move(state: MatchState, player_id: str, rules: RuleSet, forced: bool = False) -> Move:
    """The draw or pass a player without a usable placement has to make."""
    if rules.can_draw and state.boneyard and not rules.legal_moves(state, player_id):
        return Move(kind="draw", player_id=player_id, forced=forced)
    return Move(kind="pass", player_id=player_id, forced=forced)
