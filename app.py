# FILE: app.py | version: 2026-10-18.v1
# (JSON API over MatchEngine: matches keyed by match_id; soft turn timers swept before each request)

from __future__ import annotations

from flask import Flask, request, jsonify, Response
from typing import Dict, Any, Optional
import os
import time

from engine import CorruptReplay, EngineError, MatchState
from rules import VARIANTS, get_rules
from replay import ReplayPlayer
from service import EngineResult, MatchEngine
import storage

app = Flask(__name__)

ENGINE = MatchEngine()

CLEANUP_INTERVAL = int(os.environ.get("DOMINO_CLEANUP_INTERVAL", "900"))
_LAST_CLEANUP = time.time()

ERROR_STATUS: Dict[str, int] = {
    "not_players_turn": 409,
    "match_over": 409,
    "unknown_match": 404,
    "corrupt_replay": 500,
}


# =============================================================================
# Helpers
# =============================================================================

def ok(payload: Dict[str, Any] | None = None):
    return jsonify({"ok": True, **(payload or {})})


def err(msg: str, code: int = 400, kind: Optional[str] = None):
    out: Dict[str, Any] = {"ok": False, "error": msg}
    if kind:
        out["kind"] = kind
    return jsonify(out), code


def fail(res: EngineResult):
    e = res.error or EngineError("unknown error")
    return err(str(e), ERROR_STATUS.get(e.kind, 400), e.kind)


def body() -> Dict[str, Any]:
    data = request.get_json(silent=True) if request.is_json else None
    return data if isinstance(data, dict) else {}


def mid() -> str:
    return str(body().get("match_id") or request.args.get("match_id") or "").strip()


def cleanup_and_sweep() -> None:
    global _LAST_CLEANUP
    ENGINE.enforce_turn_timeouts()
    now = time.time()
    if now - _LAST_CLEANUP < CLEANUP_INTERVAL:
        return
    ENGINE.cleanup()
    _LAST_CLEANUP = now


# =============================================================================
# Routes
# =============================================================================

@app.get("/api/rules")
def api_rules():
    name = (request.args.get("variant") or "").strip()
    try:
        if name:
            return ok({"rules": get_rules(name).describe()})
    except EngineError as e:
        return err(str(e), 400, e.kind)
    return ok({"variants": [r.describe() for r in VARIANTS.values()]})


@app.post("/api/new_match")
def api_new_match():
    """Start a match from {variant, players, target_score?, tiles_per_player?, max_pips?, rng_seed?}."""
    data = body()
    if "rng_seed" not in data:
        data["rng_seed"] = int.from_bytes(os.urandom(4), "big")
    res = ENGINE.start_match(data)
    if not res.ok:
        return fail(res)
    return ok({"match_id": res.value["match_id"], "state": res.value})


@app.get("/api/state")
def api_state():
    match_id = mid()
    if not match_id:
        return err("match_id required")
    res = ENGINE.get_state(match_id, viewer_id=request.args.get("viewer_id") or None)
    if not res.ok:
        return fail(res)
    return ok({"match_id": match_id, "state": res.value})


@app.get("/api/valid_moves")
def api_valid_moves():
    match_id = mid()
    player_id = (request.args.get("player_id") or "").strip()
    if not match_id or not player_id:
        return err("match_id and player_id required")
    res = ENGINE.get_valid_moves(match_id, player_id)
    if not res.ok:
        return fail(res)
    return ok({"moves": res.value, "notices": res.notices})


@app.get("/api/hint")
def api_hint():
    match_id = mid()
    player_id = (request.args.get("player_id") or "").strip()
    if not match_id or not player_id:
        return err("match_id and player_id required")
    res = ENGINE.get_hint(match_id, player_id)
    if not res.ok:
        return fail(res)
    return ok({"hint": res.value})


@app.post("/api/move")
def api_move():
    data = body()
    match_id = mid()
    if not match_id:
        return err("match_id required")
    move = data.get("move") if isinstance(data.get("move"), dict) else {
        k: data.get(k) for k in ("kind", "player_id", "tile", "branch", "end")
    }
    res = ENGINE.apply_move(match_id, move)
    if not res.ok:
        return fail(res)
    return ok({"state": res.value, "notices": res.notices})


@app.post("/api/ai_move")
def api_ai_move():
    data = body()
    match_id = mid()
    if not match_id:
        return err("match_id required")
    if bool(data.get("async", False)):
        ENGINE.request_ai_move(match_id)
        return ok({"queued": True, "match_id": match_id})
    res = ENGINE.play_ai_turn(match_id)
    if not res.ok:
        return fail(res)
    return ok({"state": res.value, "notices": res.notices})


@app.get("/api/ai_result")
def api_ai_result():
    match_id = mid()
    res = ENGINE.last_ai_result(match_id)
    if res is None:
        return ok({"pending": True})
    if not res.ok:
        return fail(res)
    return ok({"pending": False, "state": res.value, "notices": res.notices})


@app.post("/api/timeout")
def api_timeout():
    match_id = mid()
    if not match_id:
        return err("match_id required")
    res = ENGINE.timeout_turn(match_id)
    if not res.ok:
        return fail(res)
    return ok({"state": res.value, "notices": res.notices})


@app.post("/api/set_active")
def api_set_active():
    data = body()
    match_id = mid()
    player_id = str(data.get("player_id") or "").strip()
    if not match_id or not player_id:
        return err("match_id and player_id required")
    res = ENGINE.set_player_active(match_id, player_id, bool(data.get("active", True)))
    if not res.ok:
        return fail(res)
    return ok({"state": res.value})


@app.post("/api/forfeit")
def api_forfeit():
    data = body()
    match_id = mid()
    player_id = str(data.get("player_id") or "").strip()
    if not match_id or not player_id:
        return err("match_id and player_id required")
    res = ENGINE.forfeit(match_id, player_id)
    if not res.ok:
        return fail(res)
    return ok({"state": res.value})


@app.get("/api/replay")
def api_replay():
    """Replay of a live match (?match_id) or a stored one (?name); ?index=N reconstructs a state."""
    name = (request.args.get("name") or "").strip()
    try:
        if name:
            replay = storage.load_replay(name)
        else:
            res = ENGINE.get_replay(mid())
            if not res.ok:
                return fail(res)
            replay = res.value
        if replay is None:
            return err("no replay recorded", 404)

        payload: Dict[str, Any] = {"replay": replay.to_dict()}
        if request.args.get("index") is not None:
            st = ReplayPlayer(replay).reconstruct_state_at_move(int(request.args.get("index", "-1")))
            payload["state"] = st.to_dict()
        elif request.args.get("verify") in ("1", "true"):
            payload["verified"] = ReplayPlayer(replay).verify().fingerprint()
        return ok(payload)
    except CorruptReplay as e:
        app.logger.error("corrupt replay: %s", e)
        return err(str(e), 500, e.kind)
    except FileNotFoundError as e:
        return err(str(e), 404)
    except (IndexError, ValueError) as e:
        return err(str(e))


@app.post("/api/save")
def api_save():
    try:
        data = body()
        match_id = mid()
        res = ENGINE.export_record(match_id)
        if not res.ok:
            return fail(res)

        name = (data.get("name") or "").strip() or None
        overwrite = bool(data.get("overwrite", False))
        if overwrite:
            if not name:
                return err("name required for overwrite=true")
            fn = storage.save_match_as(res.value, filename=name, overwrite=True)
        else:
            fn = storage.save_match(res.value, name=name)

        out: Dict[str, Any] = {"saved_as": fn, "saves": storage.list_saves()}
        if bool(data.get("with_replay", False)):
            rep = ENGINE.get_replay(match_id)
            if rep.ok and rep.value is not None:
                out["replay_saved_as"] = storage.save_replay(rep.value, name=name)
        return ok(out)

    except FileExistsError as e:
        return err(str(e), 409)
    except (OSError, ValueError) as e:
        app.logger.exception("save failed")
        return err(str(e))


@app.post("/api/load")
def api_load():
    try:
        name = (body().get("name") or "").strip()
        if not name:
            return err("name required")
        record = storage.load_match(name)
        res = ENGINE.import_record(record)
        if not res.ok:
            return fail(res)
        return ok({"match_id": res.value["match_id"], "state": res.value, "saves": storage.list_saves()})
    except FileNotFoundError as e:
        return err(str(e), 404)
    except ValueError as e:
        return err(str(e))


@app.get("/api/list_saves")
def api_list_saves():
    return ok({"saves": storage.list_saves(), "replays": storage.list_replays()})


@app.post("/api/delete_save")
def api_delete_save():
    try:
        name = (body().get("name") or "").strip()
        if not name:
            return err("name required")
        deleted = storage.delete_save(name)
        return ok({"deleted": deleted, "saves": storage.list_saves()})
    except FileNotFoundError as e:
        return err(str(e), 404)
    except ValueError as e:
        return err(str(e))


@app.post("/api/delete_saves")
def api_delete_saves():
    names = body().get("names")
    if not isinstance(names, list) or not names:
        return err("names must be a non-empty list")
    try:
        rep = storage.delete_saves([str(x) for x in names])
    except ValueError as e:
        return err(str(e))
    return ok({"report": rep, "saves": storage.list_saves()})


@app.get("/api/export_log")
def api_export_log():
    match_id = mid()
    res = ENGINE.export_record(match_id)
    if not res.ok:
        return fail(res)
    txt = storage.export_log_text(MatchState.from_record(res.value))
    return Response(txt, mimetype="text/plain; charset=utf-8")


@app.before_request
def before_request():
    cleanup_and_sweep()


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=5000, debug=True)
