"""Save files: JSON match records and zstd-compressed replays."""

import pytest

import storage
from engine import CorruptReplay
from replay import ReplayRecorder

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


@pytest.fixture
def record(match_factory):
    return match_factory("all_fives").to_record()


@pytest.fixture
def replay(match_factory):
    st = match_factory("block")
    rec = ReplayRecorder()
    rec.start_recording(st.to_dict())
    return rec.stop_recording(st.to_dict())


class TestRecords:
    def test_save_and_load(self, save_dir, record):
        fn = storage.save_match(record, name="friday night")
        assert fn.startswith("friday_night_") and fn.endswith(".json")
        assert (save_dir / fn).exists()
        assert storage.load_match(fn) == record
        assert storage.list_saves() == [fn]

    def test_default_name_is_the_match_id(self, save_dir, record):
        fn = storage.save_match(record)
        assert fn.startswith(record["match_id"])

    def test_save_as_refuses_to_clobber(self, save_dir, record):
        assert storage.save_match_as(record, "slot1") == "slot1.json"
        with pytest.raises(FileExistsError):
            storage.save_match_as(record, "slot1.json", overwrite=False)
        record["revision"] = 99
        storage.save_match_as(record, "slot1", overwrite=True)
        assert storage.load_match("slot1")["revision"] == 99

    def test_paths_stay_inside_the_save_dir(self, save_dir, record, tmp_path):
        fn = storage.save_match_as(record, "../../escape")
        assert fn == "escape.json"
        assert (save_dir / "escape.json").exists()
        assert not (tmp_path / "escape.json").exists()
        with pytest.raises(ValueError):
            storage.load_match("   ")

    def test_missing_file(self, save_dir):
        with pytest.raises(FileNotFoundError):
            storage.load_match("nothing_here")

    def test_delete(self, save_dir, record):
        a = storage.save_match_as(record, "a")
        storage.save_match_as(record, "b")
        assert storage.delete_save(a) == "a.json"
        rep = storage.delete_saves(["b", "ghost"])
        assert rep == {"deleted": ["b.json"], "missing": ["ghost"]}
        assert storage.list_saves() == []

    def test_safe_name(self):
        assert storage.safe_name(" my/../match! ") == "my..match"
        assert storage.safe_name("***") == "match"


class TestReplays:
    def test_written_compressed(self, save_dir, replay):
        fn = storage.save_replay(replay, name="demo")
        assert fn.endswith(".replay.json.zst")
        assert (save_dir / fn).read_bytes()[:4] == ZSTD_MAGIC
        assert storage.list_replays() == [fn]
        assert storage.list_saves() == []

    def test_round_trip(self, save_dir, replay):
        fn = storage.save_replay(replay)
        back = storage.load_replay(fn)
        assert back.to_dict() == replay.to_dict()

    def test_garbage_is_corrupt(self, save_dir):
        save_dir.mkdir(parents=True, exist_ok=True)
        (save_dir / "junk.replay.json.zst").write_bytes(b"definitely not zstd")
        with pytest.raises(CorruptReplay):
            storage.load_replay("junk")

    def test_compressed_non_json_is_corrupt(self, save_dir):
        import zstandard as zstd

        save_dir.mkdir(parents=True, exist_ok=True)
        (save_dir / "odd.replay.json.zst").write_bytes(zstd.ZstdCompressor().compress(b"{not json"))
        with pytest.raises(CorruptReplay):
            storage.load_replay("odd.replay.json.zst")

    def test_replay_files_can_be_deleted(self, save_dir, replay):
        fn = storage.save_replay(replay)
        assert storage.delete_save(fn) == fn
        assert storage.list_replays() == []


def test_text_log(match_factory, rig):
    from engine import Move, apply_move
    from rules import get_rules

    st = rig(match_factory("all_fives"), {"p1": ["5-5", "1-0"], "p2": ["2-0"]})
    st = apply_move(st, Move(kind="place", player_id="p1", tile=(5, 5), end="any"), get_rules("all_fives")).state
    txt = storage.export_log_text(st)
    assert txt.startswith("=== Domino Match Log ===")
    assert "001. p1 place 5-5 @main/any +20" in txt
    assert "scores: p1=20 p2=0" in txt
