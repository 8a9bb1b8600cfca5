from __future__ import annotations

from pathlib import Path
from typing import Optional, List, Dict, Any
import json
import os
import re
import random
from datetime import datetime

import zstandard as zstd

from engine import CorruptReplay, MatchState, tile_str
from replay import ReplayData

SAVE_DIR = Path(os.environ.get("DOMINO_SAVE_DIR", "saves"))
RECORD_SUFFIX = ".json"
REPLAY_SUFFIX = ".replay.json.zst"
ZSTD_LEVEL = 3


def _ensure_dir() -> None:
    SAVE_DIR.mkdir(parents=True, exist_ok=True)


def safe_name(name: str) -> str:
    """Base name without paths or unsafe characters (spaces become `_`)."""
    cleaned = re.sub(r"[^a-zA-Z0-9_\-\. ]+", "", (name or "").strip())
    return cleaned.replace(" ", "_").strip("._-") or "match"


def _normalize_save_filename(filename: str, suffix: str = RECORD_SUFFIX) -> str:
    base = Path((filename or "").strip()).name  # drops any directory part
    if not base:
        raise ValueError("Empty filename")
    return base if base.endswith(suffix) else base + suffix


def _resolve_save_path(filename: str, suffix: str = RECORD_SUFFIX) -> Path:
    """Map a save name to a path inside SAVE_DIR; anything escaping it is refused."""
    _ensure_dir()
    root = SAVE_DIR.resolve()
    target = (SAVE_DIR / _normalize_save_filename(filename, suffix)).resolve()
    if root != target.parent and root not in target.parents:
        raise ValueError("Unauthorized path access")
    return target


def _existing(filename: str, suffix: str, what: str = "Save") -> Path:
    target = _resolve_save_path(filename, suffix)
    if not target.is_file():
        raise FileNotFoundError(f"{what} not found: {target.name}")
    return target


def _fresh_filename(name: Optional[str], suffix: str) -> str:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    # small suffix so two saves in the same second do not collide
    return f"{safe_name(name or '')}_{stamp}_{random.randint(0, 9999):04d}{suffix}"


def _listing(suffix: str) -> List[str]:
    _ensure_dir()
    return sorted((p.name for p in SAVE_DIR.glob(f"*{suffix}")), reverse=True)


# =============================================================================
# Match records (plain JSON)
# =============================================================================

def _write_record(target: Path, record: Dict[str, Any]) -> str:
    target.write_text(json.dumps(record, ensure_ascii=False, indent=2), encoding="utf-8")
    return target.name


def save_match(record: Dict[str, Any], name: Optional[str] = None) -> str:
    _ensure_dir()
    return _write_record(SAVE_DIR / _fresh_filename(name or record.get("match_id"), RECORD_SUFFIX), record)


def save_match_as(record: Dict[str, Any], filename: str, overwrite: bool = True) -> str:
    target = _resolve_save_path(filename)
    if target.exists() and not overwrite:
        raise FileExistsError(f"Save already exists: {target.name}")
    return _write_record(target, record)


def load_match(filename: str) -> Dict[str, Any]:
    return json.loads(_existing(filename, RECORD_SUFFIX).read_text(encoding="utf-8"))


def list_saves() -> List[str]:
    return _listing(RECORD_SUFFIX)


def delete_save(filename: str) -> str:
    suffix = REPLAY_SUFFIX if str(filename).endswith(REPLAY_SUFFIX) else RECORD_SUFFIX
    target = _existing(filename, suffix)
    target.unlink()
    return target.name


def delete_saves(filenames: List[str]) -> Dict[str, Any]:
    report: Dict[str, List[str]] = {"deleted": [], "missing": []}
    for fn in filenames:
        try:
            report["deleted"].append(delete_save(str(fn)))
        except FileNotFoundError:
            report["missing"].append(Path(str(fn)).name)
    return report


# =============================================================================
# Replays (zstd-compressed JSON)
# =============================================================================

def save_replay(replay: ReplayData, name: Optional[str] = None) -> str:
    _ensure_dir()
    fn = _fresh_filename(name or f"{replay.variant}_{replay.match_id}", REPLAY_SUFFIX)
    raw = json.dumps(replay.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    (SAVE_DIR / fn).write_bytes(zstd.ZstdCompressor(level=ZSTD_LEVEL).compress(raw))
    return fn


def load_replay(filename: str) -> ReplayData:
    target = _existing(filename, REPLAY_SUFFIX, what="Replay")
    dctx = zstd.ZstdDecompressor()
    try:
        with open(target, "rb") as fh:
            with dctx.stream_reader(fh) as reader:
                raw = reader.read()
        data = json.loads(raw.decode("utf-8"))
    except (zstd.ZstdError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptReplay(f"Unreadable replay {target.name}: {e}")
    if not isinstance(data, dict):
        raise CorruptReplay(f"Unreadable replay {target.name}: not an object")
    return ReplayData.from_dict(data)


def list_replays() -> List[str]:
    return _listing(REPLAY_SUFFIX)


def export_log_text(state: MatchState) -> str:
    head = [
        "=== Domino Match Log ===",
        f"match: {state.match_id} | variant: {state.variant} | round: {state.round_index} | phase: {state.phase}",
        "scores: " + " ".join(f"{p.player_id}={p.score}" for p in state.players),
        f"boneyard={len(state.boneyard)} | current={state.current_player().player_id}",
        f"ends: {state.board.snapshot()['ends']}",
        "",
        "=== Moves ===",
    ]
    moves = []
    for i, m in enumerate(state.history, start=1):
        where = f" @{m.branch}/{m.end}" if m.kind == "place" else ""
        tile = f" {tile_str(m.tile)}" if m.tile else ""
        pts = f" +{m.score_delta}" if m.score_delta else ""
        moves.append(f"{i:03d}. {m.player_id} {m.kind}{tile}{where}{pts}")
    rounds = [json.dumps(r.to_dict(), ensure_ascii=False) for r in state.rounds]
    return "\n".join(head + moves + ["", "=== Rounds ==="] + rounds)
