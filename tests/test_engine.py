"""Dealing, turn flow and the apply_move state machine."""

import pytest

from engine import (
    ANY_END,
    BoneyardEmptyOnForcedDraw,
    InvalidConfig,
    InvalidMove,
    MatchConfig,
    MatchOver,
    MatchState,
    Move,
    NoLegalMove,
    NotPlayersTurn,
    apply_move,
    forfeit,
    highest_double,
    new_match,
    parse_tile,
    set_active,
)
from rules import VARIANTS, fallback_move, get_rules


def place(pid, tile, end, branch="main"):
    return Move(kind="place", player_id=pid, tile=parse_tile(tile), branch=branch, end=end)


class TestDealing:
    def test_same_seed_same_deal(self, match_factory):
        a = match_factory("all_fives", seed=42)
        b = match_factory("all_fives", seed=42)
        assert [p.hand for p in a.players] == [p.hand for p in b.players]
        assert a.boneyard == b.boneyard
        assert a.fingerprint() != ""

    def test_different_seed_different_deal(self, match_factory):
        a = match_factory("all_fives", seed=1)
        b = match_factory("all_fives", seed=2)
        assert [p.hand for p in a.players] != [p.hand for p in b.players]

    @pytest.mark.parametrize("variant", sorted(VARIANTS))
    def test_every_tile_accounted_for(self, match_factory, variant):
        st = match_factory(variant)
        rules = get_rules(variant)
        assert st.conservation_ok()
        assert st.tile_conservation_total() == st.full_set_size()
        assert all(len(p.hand) == rules.default_tiles(len(st.players)) for p in st.players)

    def test_block_leader_holds_the_highest_double(self, match_factory):
        st = match_factory("block", kinds=("human",) * 4, seed=11)
        doubles = [highest_double(p.hand) for p in st.players]
        best = max((d[0] for d in doubles if d is not None), default=None)
        if best is not None:
            assert highest_double(st.current_player().hand) == (best, best)

    def test_config_defaults_resolved(self, match_factory):
        st = match_factory("chicken_foot")
        assert st.config.max_pips == 9
        assert st.config.tiles_per_player == 7
        assert st.config.target_score == 200
        assert [s.name for s in st.config.players] == ["p1", "p2"]


class TestConfigValidation:
    def test_needs_two_players(self):
        with pytest.raises(InvalidConfig):
            MatchConfig.from_dict({"variant": "block", "players": [{"player_id": "solo"}]})

    def test_unknown_kind(self):
        with pytest.raises(InvalidConfig):
            MatchConfig.from_dict({"variant": "block", "players": [{"kind": "robot"}, {"kind": "human"}]})

    def test_duplicate_ids(self):
        with pytest.raises(InvalidConfig):
            MatchConfig.from_dict({"variant": "block", "players": ["a", "a"]})

    def test_too_many_players_for_variant(self, config_factory):
        cfg = config_factory("block", kinds=("human",) * 5)
        with pytest.raises(InvalidConfig):
            new_match(cfg, get_rules("block"))

    def test_not_enough_tiles(self, config_factory):
        cfg = config_factory("block", tiles_per_player=15)
        with pytest.raises(InvalidConfig):
            new_match(cfg, get_rules("block"))

    def test_pip_limit(self, config_factory):
        cfg = config_factory("block", max_pips=13)
        with pytest.raises(InvalidConfig):
            new_match(cfg, get_rules("block"))


class TestApplyMove:
    def test_wrong_player(self, match_factory, rig):
        st = rig(match_factory("block"), {"p1": ["6-1"], "p2": ["6-2"]}, plays=[("6-6", ANY_END)])
        with pytest.raises(NotPlayersTurn):
            apply_move(st, place("p2", "6-2", "left"), get_rules("block"))

    def test_tile_not_in_hand(self, match_factory, rig):
        st = rig(match_factory("block"), {"p1": ["6-1"], "p2": ["6-2"]}, plays=[("6-6", ANY_END)])
        with pytest.raises(InvalidMove):
            apply_move(st, place("p1", "6-2", "left"), get_rules("block"))

    def test_placement_without_any_legal_option(self, match_factory, rig):
        st = rig(match_factory("block"), {"p1": ["2-1"], "p2": ["6-2"]}, plays=[("6-6", ANY_END)])
        with pytest.raises(NoLegalMove):
            apply_move(st, place("p1", "2-1", "left"), get_rules("block"))

    def test_input_state_untouched(self, match_factory, rig):
        st = rig(match_factory("block"), {"p1": ["6-1", "3-3"], "p2": ["6-2"]}, plays=[("6-6", ANY_END)])
        before = st.fingerprint()
        tr = apply_move(st, place("p1", "6-1", "right"), get_rules("block"))
        assert st.fingerprint() == before
        assert tr.state.revision == st.revision + 1
        assert tr.state.history[-1].tile == (6, 1)
        assert tr.state.board.end_value("main", "right") == 1
        with pytest.raises(InvalidMove):
            apply_move(st, place("p1", "6-1", "right", branch="nowhere"), get_rules("block"))
        assert st.fingerprint() == before

    def test_draw_keeps_the_turn(self, match_factory, rig):
        rules = get_rules("all_fives")
        st = rig(match_factory("all_fives"), {"p1": ["2-1"], "p2": ["4-0"]}, plays=[("6-6", ANY_END)], boneyard=["5-5", "6-3"])
        tr = apply_move(st, Move(kind="draw", player_id="p1"), rules)
        assert tr.move.tile == (6, 3)
        assert tr.state.current_player().player_id == "p1"
        assert tr.state.player("p1").hand == [(2, 1), (6, 3)]
        assert tr.state.boneyard == [(5, 5)]

        with pytest.raises(InvalidMove):
            apply_move(tr.state, Move(kind="pass", player_id="p1"), rules)
        with pytest.raises(InvalidMove):
            apply_move(tr.state, Move(kind="draw", player_id="p1"), rules)

    def test_must_draw_before_passing(self, match_factory, rig):
        st = rig(match_factory("all_fives"), {"p1": ["2-1"], "p2": ["4-0"]}, plays=[("6-6", ANY_END)], boneyard=["5-5"])
        with pytest.raises(InvalidMove):
            apply_move(st, Move(kind="pass", player_id="p1"), get_rules("all_fives"))
        assert fallback_move(st, "p1", get_rules("all_fives")).kind == "draw"

    def test_draw_mismatch_rejected(self, match_factory, rig):
        st = rig(match_factory("all_fives"), {"p1": ["2-1"], "p2": ["4-0"]}, plays=[("6-6", ANY_END)], boneyard=["5-5"])
        with pytest.raises(InvalidMove):
            apply_move(st, Move(kind="draw", player_id="p1", tile=(4, 4)), get_rules("all_fives"))

    def test_draw_on_empty_boneyard_becomes_a_pass(self, match_factory, rig):
        st = rig(match_factory("all_fives"), {"p1": ["2-1"], "p2": ["4-0"]}, plays=[("6-6", ANY_END)])
        tr = apply_move(st, Move(kind="draw", player_id="p1"), get_rules("all_fives"))
        assert tr.move.kind == "pass"
        assert tr.notices == [BoneyardEmptyOnForcedDraw.kind]
        assert tr.state.consecutive_passes == 1
        assert tr.state.current_player().player_id == "p2"

    def test_forced_pass_allowed_with_legal_moves(self, match_factory, rig):
        st = rig(match_factory("block"), {"p1": ["6-1"], "p2": ["6-2"]}, plays=[("6-6", ANY_END)])
        tr = apply_move(st, Move(kind="pass", player_id="p1", forced=True), get_rules("block"))
        assert tr.move.forced is True
        assert tr.state.current_player().player_id == "p2"

    def test_history_ts_preserved(self, match_factory, rig):
        st = rig(match_factory("block"), {"p1": ["6-1", "3-3"], "p2": ["6-2"]}, plays=[("6-6", ANY_END)])
        mv = Move(kind="place", player_id="p1", tile=(6, 1), branch="main", end="left", ts="2026-01-01T00:00:00.000")
        tr = apply_move(st, mv, get_rules("block"))
        assert tr.state.history[-1].ts == "2026-01-01T00:00:00.000"


class TestActivity:
    def test_inactive_player_is_skipped(self, match_factory, rig):
        rules = get_rules("block")
        st = rig(
            match_factory("block", kinds=("human",) * 3),
            {"p1": ["6-1", "1-1"], "p2": ["6-2"], "p3": ["6-3", "0-0"]},
            plays=[("6-6", ANY_END)],
        )
        st = set_active(st, "p2", False)
        tr = apply_move(st, place("p1", "6-1", "left"), rules)
        assert tr.state.current_player().player_id == "p3"
        assert tr.state.player("p2").hand == [(6, 2)]

    def test_disconnecting_the_current_player_moves_the_turn(self, match_factory, rig):
        st = rig(match_factory("block", kinds=("human",) * 3), {"p1": ["6-1"], "p2": ["6-2"], "p3": ["6-3"]})
        st2 = set_active(st, "p1", False)
        assert st2.current_player().player_id == "p2"
        assert st.current_player().player_id == "p1"

    def test_someone_must_stay(self, match_factory):
        st = match_factory("block")
        st = set_active(st, "p1", False)
        with pytest.raises(InvalidMove):
            set_active(st, "p2", False)

    def test_block_only_counts_active_passes(self, match_factory, rig):
        rules = get_rules("block")
        st = rig(
            match_factory("block", kinds=("human",) * 3),
            {"p1": ["2-1"], "p2": ["6-2"], "p3": ["4-0"]},
            plays=[("6-6", ANY_END)],
        )
        st = set_active(st, "p2", False)
        st = apply_move(st, Move(kind="pass", player_id="p1"), rules).state
        tr = apply_move(st, Move(kind="pass", player_id="p3"), rules)
        assert tr.round_result is not None and tr.round_result.reason == "blocked"
        assert tr.round_result.winner_id == "p1"


class TestForfeit:
    def test_forfeit_ends_the_match(self, match_factory):
        st = match_factory("block")
        done = forfeit(st, "p1")
        assert done.is_over() and done.winner_id == "p2"
        assert not st.is_over()
        with pytest.raises(MatchOver):
            apply_move(done, Move(kind="pass", player_id=done.current_player().player_id), get_rules("block"))
        with pytest.raises(MatchOver):
            forfeit(done, "p2")

    def test_cuban_partner_does_not_inherit_the_win(self, match_factory):
        st = match_factory("cuban", kinds=("human",) * 4)
        st.player("p2").score = 30
        st.player("p3").score = 90
        done = forfeit(st, "p1")
        assert done.winner_id == "p2"


class TestSerialization:
    def test_viewer_sees_only_own_hand(self, match_factory):
        st = match_factory("all_fives")
        d = st.to_dict(viewer_id="p1")
        p1, p2 = d["players"]
        assert "hand" in p1 and "hand" not in p2
        assert p2["hand_count"] == len(st.player("p2").hand)
        assert "boneyard" not in d and d["boneyard_count"] == len(st.boneyard)
        with pytest.raises(InvalidConfig):
            MatchState.from_dict(d)

    def test_record_round_trip(self, match_factory):
        st = play_out(match_factory("mexican_train"), plies=25)
        rec = st.to_record()
        assert "move_history" in rec and "history" not in rec
        again = MatchState.from_record(rec)
        assert again.fingerprint() == st.fingerprint()


def play_out(st, plies=None):
    """Drive a match with the first legal move (or the required draw/pass)."""
    rules = get_rules(st.variant)
    n = 0
    while not st.is_over() and (plies is None or n < plies):
        pid = st.current_player().player_id
        moves = rules.legal_moves(st, pid)
        mv = moves[0] if moves else fallback_move(st, pid, rules)
        st = apply_move(st, mv, rules).state
        assert st.conservation_ok(), f"tile conservation broken after {mv.to_dict()}"
        n += 1
        assert n < 5000, "match did not terminate"
    return st


@pytest.mark.parametrize("variant", sorted(VARIANTS))
@pytest.mark.parametrize("seed", [3, 19])
def test_self_play_conserves_tiles_and_terminates(match_factory, variant, seed):
    st = play_out(match_factory(variant, seed=seed, target_score=30))
    assert st.is_over()
    assert st.winner_id in {p.player_id for p in st.players}
    assert st.player(st.winner_id).score >= 30
    assert st.rounds
