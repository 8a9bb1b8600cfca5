# FILE: evaluate.py | version: 2026-10-18.v1
# Headless evaluator: AI-vs-AI matches to target for one variant.
#
# - Every match is dealt from its own seed (base_seed + i*10007) and recorded.
# - With asserts on, tile conservation is checked during play and every recording
#   is replayed through ReplayPlayer.verify() after the match.
# - Output is JSON (one line, then pretty) for scripts and humans alike.

from __future__ import annotations

import argparse
import json
import time
import multiprocessing as mp
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List

import numpy as np

from engine import CorruptReplay, MatchConfig, apply_move, new_match
from rules import VARIANTS, get_rules
from ai import choose_move, normalize_difficulty
from replay import ReplayPlayer, ReplayRecorder


def jprint(obj: Dict[str, Any]) -> None:
    print(json.dumps(obj, ensure_ascii=False), flush=True)


@dataclass
class EvalConfig:
    variant: str = "all_fives"
    matches: int = 50
    base_seed: int = 12345
    players: int = 0  # 0 = fewest seats the variant allows
    difficulties: List[str] = field(default_factory=lambda: ["ai_hard", "ai_easy"])
    target: int = 0  # 0 = variant default

    max_plies_per_match: int = 20000
    strict_asserts: bool = True
    assert_every: int = 10


def seat_count(cfg: EvalConfig) -> int:
    return int(cfg.players) if cfg.players > 0 else max(2, get_rules(cfg.variant).min_players)


def seat_difficulty(cfg: EvalConfig, seat: int) -> str:
    return cfg.difficulties[seat % len(cfg.difficulties)]


def play_match(cfg: EvalConfig, seed: int) -> Dict[str, Any]:
    rules = get_rules(cfg.variant)
    raw: Dict[str, Any] = {
        "variant": rules.name,
        "players": [
            {"player_id": f"p{i + 1}", "kind": seat_difficulty(cfg, i)} for i in range(seat_count(cfg))
        ],
        "rng_seed": int(seed),
    }
    if cfg.target > 0:
        raw["target_score"] = int(cfg.target)
    st = new_match(MatchConfig.from_dict(raw), rules, match_id=f"eval{seed}")

    rec = ReplayRecorder()
    rec.start_recording(st.to_dict())

    plies = 0
    while not st.is_over():
        if plies >= cfg.max_plies_per_match:
            raise RuntimeError(f"match seed={seed} exceeded {cfg.max_plies_per_match} plies")
        pid = st.current_player().player_id
        t0 = time.perf_counter()
        mv = choose_move(st, rules, pid)
        ms = int((time.perf_counter() - t0) * 1000)
        tr = apply_move(st, mv, rules)
        st = tr.state
        plies += 1

        check = cfg.strict_asserts and cfg.assert_every > 0 and plies % cfg.assert_every == 0
        if check and not st.conservation_ok():
            raise AssertionError(f"tile conservation broken (seed={seed}, ply={plies})")
        rec.record_move(tr.move, ms, st if check else None)

    replay = rec.stop_recording(st.to_dict())
    verified = False
    if cfg.strict_asserts:
        ReplayPlayer(replay, rules).verify()
        verified = True

    winner_seat = st.player_index(st.winner_id) if st.winner_id else -1
    return {
        "seed": int(seed),
        "winner_seat": int(winner_seat),
        "rounds": len(st.rounds),
        "plies": int(plies),
        "scores": [int(p.score) for p in st.players],
        "stats": replay.stats.to_dict(),
        "replay_verified": verified,
    }


def run_eval(cfg: EvalConfig) -> Dict[str, Any]:
    t0 = time.perf_counter()
    wins_by_seat = [0] * seat_count(cfg)
    rounds: List[int] = []
    plies: List[int] = []
    think: List[float] = []
    passes = draws = perfect = 0
    verified = 0
    failures: List[Dict[str, Any]] = []

    for i in range(int(cfg.matches)):
        seed = int(cfg.base_seed) + i * 10007
        try:
            m = play_match(cfg, seed)
        except (AssertionError, CorruptReplay, RuntimeError) as e:
            failures.append({"seed": seed, "error": f"{e.__class__.__name__}: {e}"})
            continue
        if m["winner_seat"] >= 0:
            wins_by_seat[m["winner_seat"]] += 1
        rounds.append(m["rounds"])
        plies.append(m["plies"])
        think.append(float(m["stats"]["average_thinking_ms"]))
        passes += int(m["stats"]["pass_count"])
        draws += int(m["stats"]["draw_count"])
        perfect += int(m["stats"]["perfect_scores"])
        verified += 1 if m["replay_verified"] else 0

    return {
        "ok": not failures,
        "config": asdict(cfg),
        "results": {
            "matches_played": len(rounds),
            "wins_by_seat": wins_by_seat,
            "rounds": rounds,
            "plies_sum": int(sum(plies)),
            "think_ms_sum": float(sum(think)),
            "passes": passes,
            "draws": draws,
            "perfect_scores": perfect,
            "replays_verified": verified,
            "failures": failures,
            "elapsed_sec": round(float(time.perf_counter() - t0), 3),
        },
    }


def _merge_reports(cfg: EvalConfig, reps: List[Dict[str, Any]]) -> Dict[str, Any]:
    wins = np.zeros((seat_count(cfg),), dtype=np.int64)
    rounds: List[int] = []
    plies_sum = 0
    think_sum = 0.0
    passes = draws = perfect = verified = 0
    failures: List[Dict[str, Any]] = []

    for rep in reps:
        r = rep["results"]
        wins += np.asarray(r["wins_by_seat"], dtype=np.int64)
        rounds.extend(r["rounds"])
        plies_sum += int(r["plies_sum"])
        think_sum += float(r["think_ms_sum"])
        passes += int(r["passes"])
        draws += int(r["draws"])
        perfect += int(r["perfect_scores"])
        verified += int(r["replays_verified"])
        failures.extend(r["failures"])

    played = len(rounds)
    rr = np.asarray(rounds, dtype=np.float64) if rounds else np.zeros((1,), dtype=np.float64)
    by_diff: Dict[str, int] = {}
    for seat, n in enumerate(wins.tolist()):
        d = seat_difficulty(cfg, seat)
        by_diff[d] = by_diff.get(d, 0) + int(n)

    return {
        "ok": not failures,
        "config": asdict(cfg),
        "results": {
            "matches_played": played,
            "wins_by_seat": [int(x) for x in wins.tolist()],
            "win_rate_by_seat": [round(float(x) / max(1, played), 4) for x in wins.tolist()],
            "wins_by_difficulty": by_diff,
            "avg_rounds": round(float(rr.mean()), 3),
            "p90_rounds": round(float(np.percentile(rr, 90)), 3),
            "avg_plies": round(float(plies_sum) / max(1, played), 2),
            "avg_thinking_ms": round(think_sum / max(1, played), 3),
            "passes": passes,
            "draws": draws,
            "perfect_scores": perfect,
            "replays_verified": verified,
            "all_replays_round_trip": bool(played > 0 and verified == played) if cfg.strict_asserts else None,
            "failures": failures,
        },
    }


def run_eval_parallel(cfg: EvalConfig, jobs: int, progress_every: int) -> Dict[str, Any]:
    jobs = max(1, int(jobs))
    matches = int(cfg.matches)
    t0 = time.perf_counter()

    if jobs == 1 or matches < 20:
        merged = _merge_reports(cfg, [run_eval(cfg)])
        merged["results"]["elapsed_sec"] = round(float(time.perf_counter() - t0), 3)
        return merged

    jobs = min(jobs, matches)
    per, rem = divmod(matches, jobs)
    chunks: List[EvalConfig] = []
    start = 0
    for j in range(jobs):
        n = per + (1 if j < rem else 0)
        c = EvalConfig(**{**cfg.__dict__})
        c.matches = n
        c.base_seed = int(cfg.base_seed) + start * 10007
        chunks.append(c)
        start += n

    reps: List[Dict[str, Any]] = []
    with mp.get_context("spawn").Pool(processes=jobs) as pool:
        done = 0
        for rep in pool.imap_unordered(run_eval, chunks, chunksize=1):
            reps.append(rep)
            done += int(rep["config"]["matches"])
            if progress_every > 0:
                dt = time.perf_counter() - t0
                jprint({"op": "progress", "matches_done": done, "matches": matches, "mps": round(done / max(1e-9, dt), 2)})

    merged = _merge_reports(cfg, reps)
    merged["results"]["elapsed_sec"] = round(float(time.perf_counter() - t0), 3)
    return merged


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="AI-vs-AI evaluator for the domino engine")
    ap.add_argument("--variant", choices=sorted(VARIANTS), default="all_fives")
    ap.add_argument("--matches", type=int, default=50)
    ap.add_argument("--seed", type=int, default=12345)
    ap.add_argument("--players", type=int, default=0, help="seats (0 = variant minimum)")
    ap.add_argument("--difficulty", type=str, default="hard,easy",
                    help="comma list of seat difficulties, cycled over seats (easy/medium/hard)")
    ap.add_argument("--target", type=int, default=0, help="match target (0 = variant default)")
    ap.add_argument("--no_asserts", action="store_true")
    ap.add_argument("--assert_every", type=int, default=10)
    ap.add_argument("--jobs", type=int, default=1, help="parallel workers (spawn).")
    ap.add_argument("--progress_every", type=int, default=1, help="print progress per finished chunk (0=off).")
    return ap


def main() -> None:
    args = build_arg_parser().parse_args()
    cfg = EvalConfig(
        variant=str(args.variant),
        matches=int(args.matches),
        base_seed=int(args.seed),
        players=int(args.players),
        difficulties=[normalize_difficulty(x) for x in str(args.difficulty).split(",") if x.strip()],
        target=int(args.target),
        strict_asserts=(not bool(args.no_asserts)),
        assert_every=int(args.assert_every),
    )
    rep = run_eval_parallel(cfg, jobs=int(args.jobs), progress_every=int(args.progress_every))
    jprint(rep)
    print(json.dumps(rep, ensure_ascii=False, indent=2), flush=True)


if __name__ == "__main__":
    main()
