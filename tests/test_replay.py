"""Replay recording, reconstruction and tamper detection."""

from dataclasses import replace

import pytest

from ai import choose_move
from engine import ANY_END, CorruptReplay, Move, apply_move, forfeit, parse_tile, set_active
from replay import ReplayData, ReplayEntry, ReplayPlayer, ReplayRecorder, compute_stats, count_score_swings
from rules import VARIANTS, get_rules


def record_match(st, plies=60):
    """Drive `st` with the AI for up to `plies` moves, recording as the service does."""
    rules = get_rules(st.variant)
    rec = ReplayRecorder()
    rec.start_recording(st.to_dict())
    states = [st]
    for n in range(plies):
        if st.is_over():
            break
        pid = st.current_player().player_id
        tr = apply_move(st, choose_move(st, rules, pid), rules)
        st = tr.state
        rec.record_move(tr.move, thinking_time_ms=10 + n, state_after=st)
        states.append(st)
    return rec, states


class TestRecorder:
    def test_needs_a_full_snapshot(self, match_factory):
        st = match_factory("block")
        with pytest.raises(ValueError):
            ReplayRecorder().start_recording(st.to_dict(viewer_id="p1"))

    def test_cannot_record_when_stopped(self, match_factory):
        st = match_factory("block")
        rec = ReplayRecorder()
        with pytest.raises(ValueError):
            rec.record_control("forfeit", "p1")
        rec.start_recording(st.to_dict())
        rec.stop_recording(st.to_dict())
        assert not rec.recording
        with pytest.raises(ValueError):
            rec.record_control("forfeit", "p1")

    def test_stats(self, match_factory):
        rec, states = record_match(match_factory("all_fives", kinds=("ai_hard", "ai_hard")), plies=20)
        data = rec.stop_recording(states[-1].to_dict())
        moves = data.moves()
        assert data.stats.move_count == len(moves) == len(states) - 1
        assert data.stats.longest_turn_ms == 10 + len(moves) - 1
        assert data.stats.pass_count == sum(1 for m in moves if m.kind == "pass")
        assert data.stats.draw_count == sum(1 for m in moves if m.kind == "draw")
        assert data.stats.perfect_scores == sum(1 for m in moves if m.score_delta > 0)
        assert compute_stats(data) == data.stats

    def test_snapshot_does_not_stop(self, match_factory):
        rec, _ = record_match(match_factory("block"), plies=3)
        snap = rec.snapshot()
        assert rec.recording
        assert snap.stats.move_count == 3
        assert snap.finished_at is None

    def test_seat_summaries(self, match_factory):
        st = match_factory("block", kinds=("ai_hard", "human"))
        rec = ReplayRecorder()
        rec.start_recording(st.to_dict())
        dealt = {p.player_id: [f"{a}-{b}" for a, b in p.hand] for p in st.players}
        st = forfeit(st, "p2")
        rec.record_control("forfeit", "p2", state_after=st)
        data = rec.stop_recording(st.to_dict())
        assert [(s.player_id, s.kind) for s in data.players] == [("p1", "ai_hard"), ("p2", "human")]
        assert {s.player_id: s.initial_hand for s in data.players} == dealt
        assert [s.is_winner for s in data.players] == [True, False]
        assert [s.final_score for s in data.players] == [0, 0]

    def test_duration(self, match_factory):
        st = match_factory("block")
        rec = ReplayRecorder()
        rec.start_recording(st.to_dict())
        rec.data.recorded_at = "2026-01-01T00:00:00.000"
        data = rec.stop_recording(st.to_dict())
        assert data.duration_ms > 0
        assert ReplayData.from_dict(data.to_dict()).duration_ms == data.duration_ms

    def test_highlights(self, match_factory, rig):
        """Ends 16 + 14 = 30 in one play that also empties the hand and takes the lead from 50 behind."""
        st = rig(
            match_factory("all_fives", max_pips=9),
            {"p1": ["7-7"], "p2": ["6-6", "6-5", "5-5"]},
            plays=[("8-7", ANY_END), ("8-8", "left")],
        )
        st.player("p2").score = 50
        rec = ReplayRecorder()
        rec.start_recording(st.to_dict())
        tr = apply_move(st, Move(kind="place", player_id="p1", tile=parse_tile("7-7"), end="right"), get_rules("all_fives"))
        assert tr.move.score_delta == 30
        rec.record_move(tr.move, 5, state_after=tr.state)
        data = rec.stop_recording(tr.state.to_dict())
        assert [(h.entry_index, h.kind, h.player_id) for h in data.highlights] == [
            (0, "perfect_score", "p1"),
            (0, "domino", "p1"),
            (0, "comeback", "p1"),
        ]
        assert ReplayData.from_dict(data.to_dict()).highlights == data.highlights

    def test_quiet_moves_are_not_highlighted(self, match_factory):
        rec, states = record_match(match_factory("block", kinds=("ai_hard", "ai_hard")), plies=3)
        assert rec.data.highlights == []
        assert rec.data.entries[-1].scores == {p.player_id: p.score for p in states[-1].players}


class TestScoreSwings:
    def test_lead_changes_are_counted(self):
        entries = [ReplayEntry(scores=s) for s in (
            {"a": 10, "b": 0},
            {"a": 10, "b": 20},
            {"a": 10, "b": 20},
            {"a": 30, "b": 20},
            {"a": 30, "b": 30},
            {"a": 30, "b": 40},
        )]
        entries.insert(2, ReplayEntry())
        assert count_score_swings({"a": 0, "b": 0}, entries) == 3

    def test_partners_lead_together(self):
        entries = [ReplayEntry(scores=s) for s in (
            {"p1": 20, "p2": 0, "p3": 20, "p4": 0},
            {"p1": 20, "p2": 25, "p3": 20, "p4": 25},
        )]
        assert count_score_swings({"p1": 0, "p2": 0, "p3": 0, "p4": 0}, entries) == 1


class TestPlayer:
    @pytest.mark.parametrize("variant", sorted(VARIANTS))
    def test_replay_reaches_the_recorded_final_state(self, match_factory, seats, variant):
        rec, states = record_match(match_factory(variant, kinds=seats(variant, ("ai_easy", "ai_hard")), seed=23))
        data = rec.stop_recording(states[-1].to_dict())
        again = ReplayData.from_dict(data.to_dict())
        final = ReplayPlayer(again).verify()
        assert final.fingerprint() == states[-1].fingerprint()

    def test_reconstruct_at_any_index(self, match_factory):
        rec, states = record_match(match_factory("mexican_train"), plies=30)
        player = ReplayPlayer(rec.data)
        assert player.reconstruct_state_at_move(-1).fingerprint() == states[0].fingerprint()
        for k in (0, 7, 29):
            assert player.reconstruct_state_at_move(k).fingerprint() == states[k + 1].fingerprint()
        with pytest.raises(IndexError):
            player.reconstruct_state_at_move(30)

    def test_control_entries_replay(self, match_factory):
        rules = get_rules("block")
        st = match_factory("block", kinds=("ai_hard",) * 3)
        rec = ReplayRecorder()
        rec.start_recording(st.to_dict())
        st = set_active(st, "p3", False)
        rec.record_control("set_active", "p3", active=False, state_after=st)
        for _ in range(4):
            tr = apply_move(st, choose_move(st, rules, st.current_player().player_id), rules)
            st = tr.state
            rec.record_move(tr.move, 0, state_after=st)
        data = rec.stop_recording(st.to_dict())
        assert ReplayPlayer(data).verify().fingerprint() == st.fingerprint()
        assert data.entries[0].control == {"op": "set_active", "player_id": "p3", "active": False}


class TestTampering:
    def recorded(self, match_factory):
        rec, states = record_match(match_factory("all_fives", kinds=("ai_hard", "ai_hard"), seed=4), plies=12)
        return rec.stop_recording(states[-1].to_dict()), states

    def test_altered_move(self, match_factory):
        data, _ = self.recorded(match_factory)
        raw = data.to_dict()
        first = raw["entries"][0]["move"]
        # replace the opening with a tile the opener does not hold
        first["tile"] = "0-0" if first["tile"] != "0-0" else "1-0"
        with pytest.raises(CorruptReplay):
            ReplayPlayer(ReplayData.from_dict(raw)).verify()

    def test_altered_score(self, match_factory):
        data, _ = self.recorded(match_factory)
        e = data.entries[0]
        data.entries[0] = replace(e, move=replace(e.move, score_delta=e.move.score_delta + 5))
        with pytest.raises(CorruptReplay):
            ReplayPlayer(data).reconstruct_state_at_move(0)

    def test_altered_entry_scores(self, match_factory):
        data, _ = self.recorded(match_factory)
        data.entries[2].scores = {pid: s + 1 for pid, s in data.entries[2].scores.items()}
        player = ReplayPlayer(data)
        player.reconstruct_state_at_move(1)
        with pytest.raises(CorruptReplay):
            player.reconstruct_state_at_move(2)

    def test_altered_checkpoint(self, match_factory):
        data, _ = self.recorded(match_factory)
        data.entries[3].checkpoint = "0" * 64
        player = ReplayPlayer(data)
        player.reconstruct_state_at_move(2)
        with pytest.raises(CorruptReplay):
            player.reconstruct_state_at_move(3)

    def test_altered_final_snapshot(self, match_factory):
        data, _ = self.recorded(match_factory)
        data.final["players"][0]["score"] += 1
        with pytest.raises(CorruptReplay):
            ReplayPlayer(data).verify()

    def test_foreign_ruleset(self, match_factory):
        data, _ = self.recorded(match_factory)
        data.ruleset = "dominoes_core_v0"
        with pytest.raises(CorruptReplay):
            ReplayPlayer(data)

    def test_malformed_document(self):
        with pytest.raises(CorruptReplay):
            ReplayData.from_dict({"replay_id": "x"})
