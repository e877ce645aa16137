#!/usr/bin/env python3
"""
irscope - Cab IR analysis, blending and taste learning

Analyzes guitar-cab impulse responses, ranks foundation IRs and blend
partners against tonal profiles, and learns a player's blend preferences
through A/B taste checks.
"""

import argparse
import cProfile
import json
import random
import sys
from pathlib import Path

from config import Config
from config_persistence import (
    get_learner_file,
    get_profiles_file,
    get_report_dir,
    get_taste_store_file,
    load_config,
)
from ir_analysis import analyze_file
from ir_audio import audition, blend_ir_samples, load_ir, save_ir
from ir_mixer import AnalyzedIR, analyzed_ir_from_metrics, build_blend_results, parse_ratio_label
from learner_scoring import load_learner, metrics_from_features, save_learner
from logging_utils import log_event, set_log_level
from musical_roles import classify_irs, pick_foundation_candidates
from preference_profiles import find_foundation_ir, rank_blend_partners
from profile_presets import load_profiles
from taste_check import TasteCheckSession, TonalTarget, run_taste_check
from taste_session_reporter import TasteSessionReporter
from taste_store import TASTE_INTENTS, TASTE_MODES, TasteContext, TasteStore, infer_speaker_prefix
from tonal_engine import DEFAULT_BLEND_RATIOS, SIX_BAND_KEYS, ScoreWeights

BAND_HEADERS = ("Sub", "Bass", "LoMid", "Mid", "HiMid", "Pres")


def _format_bands(bands) -> str:
    return "  ".join(f"{h}={bands.get(k, 0.0):5.1f}" for h, k in zip(BAND_HEADERS, SIX_BAND_KEYS))


def analyze_paths(paths, config: Config) -> list[AnalyzedIR]:
    analyzed = []
    for p in paths:
        metrics = analyze_file(p, config.analysis)
        analyzed.append(analyzed_ir_from_metrics(Path(p).name, metrics.as_metrics()))
    return analyzed


def _score_weights(config: Config) -> ScoreWeights:
    s = config.scoring
    return ScoreWeights(
        shape_weight=s.shape_weight,
        tilt_weight=s.tilt_weight,
        smooth_penalty_weight=s.smooth_penalty_weight,
        notch_penalty_weight=s.notch_penalty_weight,
        rolloff_penalty_weight=s.rolloff_penalty_weight,
    )


def _context_from_args(args, fallback_name: str = "") -> TasteContext:
    speaker = args.speaker or infer_speaker_prefix(fallback_name)
    return TasteContext(speaker_prefix=speaker.upper(), mode=args.mode, intent=args.intent)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
def cmd_analyze(args, config: Config) -> int:
    if args.json:
        out = [dict(filename=Path(p).name, **analyze_file(p, config.analysis).as_metrics()) for p in args.files]
        print(json.dumps(out, indent=2))
        return 0

    for ir in analyze_paths(args.files, config):
        m = ir.metrics
        flags = []
        if m["has_clipping"]:
            flags.append("CLIPPING")
        if m["is_truncated_ir"]:
            flags.append("truncated")
        print(f"{ir.filename}")
        print(f"  centroid={m['spectral_centroid']:.0f} Hz  peak={m['peak_freq_hz']:.0f} Hz  "
              f"smooth={m['frequency_smoothness']:.1f}  noise={m['noise_floor_db']:.1f} dB  "
              f"crest={m['crest_factor_db']:.1f} dB  {' '.join(flags)}")
        print(f"  {_format_bands(ir.bands)}")
        print(f"  tilt={ir.features.tilt_db_per_oct:+.1f} dB  smooth_score={ir.features.smooth_score:.0f}")
    return 0


def cmd_mix(args, config: Config) -> int:
    profiles = load_profiles(get_profiles_file(config))
    base, *features = analyze_paths([args.base] + args.features, config)
    ratio = parse_ratio_label(args.ratio)

    results = build_blend_results(
        base,
        features,
        current_ratio=ratio,
        ratios=DEFAULT_BLEND_RATIOS,
        profiles=profiles,
        redundancy_threshold=config.scoring.redundancy_threshold,
    )
    print(f"Base: {base.filename}   ratio {ratio.label}")
    for r in results:
        note = "  (redundant pair)" if r.redundant else ""
        print(f"\n{r.feature.filename}{note}")
        print(f"  {_format_bands(r.current_blend)}")
        print(f"  HiMid/Mid={r.hi_mid_mid_ratio:.2f} ({r.brightness})  similarity={r.similarity:.2f}")
        print(f"  {r.best_match.summary} [{r.best_match.score}]")
        for label, match in r.ratio_matches.items():
            print(f"    {label:>6}  {match.profile:<10} {match.score:3d}  {match.label}")
    return 0


def cmd_foundation(args, config: Config) -> int:
    profiles = load_profiles(get_profiles_file(config))
    irs = analyze_paths(args.files, config)
    rows = [(ir.filename, ir.features) for ir in irs]
    roles = dict(zip([ir.filename for ir in irs], classify_irs(rows)))
    learner = load_learner(get_learner_file(config))
    learned = {ir.filename: learner.score_ir(metrics_from_features(ir.features)) for ir in irs}

    for s in find_foundation_ir([ir.as_ir_bands() for ir in irs], profiles):
        print(f"{s.rank:2d}. {s.filename:<40} body={s.body_score:3d} featured={s.featured_score:3d} "
              f"ratio={s.ratio:.2f} role={roles[s.filename]:<14} learned={learned[s.filename]:+.3f}  "
              f"{', '.join(s.reasons)}")

    print("\nFoundation per speaker:")
    for speaker, filename in sorted(pick_foundation_candidates(rows, roles).items()):
        print(f"  {speaker}: {filename}")
    return 0


def cmd_partners(args, config: Config) -> int:
    profiles = load_profiles(get_profiles_file(config))
    base, *features = analyze_paths([args.base] + args.features, config)
    ranked = rank_blend_partners(
        base.raw_energy,
        [f.as_ir_bands() for f in features],
        DEFAULT_BLEND_RATIOS,
        profiles,
    )
    print(f"Partners for {base.filename}")
    for s in ranked:
        print(f"{s.rank:2d}. {s.filename:<40} {s.best_ratio.label:>6}  "
              f"{s.best_blend_profile:<10} {s.best_blend_score:3d}  {s.best_blend_label}")
    return 0


def _prompt_choice(matchup, play=None, input_fn=input) -> str:
    print(f"\n[{matchup.phase} {matchup.index}]  A: {matchup.a.label}    B: {matchup.b.label}")
    if play:
        play(matchup)
    while True:
        answer = input_fn("Prefer A, B or tie? [a/b/t, r=replay] ").strip().lower()
        if answer in ("a", "b"):
            return answer
        if answer in ("t", "tie"):
            return "tie"
        if answer == "r" and play:
            play(matchup)
            continue
        print("Please answer a, b or t")


def _make_player(base_path, feature_paths):
    """Audition callback playing option A then option B as real waveform blends."""
    base_samples, base_sr = load_ir(base_path)
    waves = {Path(p).name: load_ir(p) for p in feature_paths}

    def play(matchup):
        for option in (matchup.a, matchup.b):
            samples, sr = waves[option.name]
            mixed, _ = blend_ir_samples(base_samples, samples, option.base_ratio, base_sr, sr)
            audition(mixed, base_sr)

    return play


def cmd_taste_check(args, config: Config) -> int:
    profiles = load_profiles(get_profiles_file(config))
    base, *features = analyze_paths([args.base] + args.features, config)
    by_name = {}
    for f in features:
        if f.filename in by_name:
            raise ValueError(f"feature IR listed twice: {f.filename}")
        by_name[f.filename] = f.features

    target = None
    if args.target:
        target = TonalTarget.from_features(analyze_paths([args.target], config)[0].features)

    tc_config = config.taste_check
    if args.max_rounds is not None:
        tc_config.max_rounds = max(1, args.max_rounds)
    seed = args.seed if args.seed is not None else tc_config.seed

    ctx = _context_from_args(args, base.filename)
    store = TasteStore(get_taste_store_file(config), config.taste)
    learner_file = get_learner_file(config)
    session = TasteCheckSession(
        base=base.features,
        features=by_name,
        ctx=ctx,
        store=store,
        config=tc_config,
        taste_config=config.taste,
        profiles=profiles,
        target=target,
        score_weights=_score_weights(config),
        learner=load_learner(learner_file),
        rng=random.Random(seed),
        base_name=base.filename,
    )

    play = _make_player(args.base, args.features) if args.audition else None
    try:
        result = run_taste_check(session, lambda m: _prompt_choice(m, play))
    except (EOFError, KeyboardInterrupt):
        log_event("WARNING", "TasteCheck", "Session aborted", rounds=session.rounds, votes=session.votes)
        result = session.result()

    print(f"\nContext: {ctx.key}")
    for i, r in enumerate(result.ranking, start=1):
        print(f"{i:2d}. {r.name:<40} score={r.score:6.1f}  W/L/T={r.wins}/{r.losses}/{r.ties}  {r.role}")
    base_pct = round(result.base_ratio * 100)
    print(f"\nPick: {result.winner} at {base_pct}/{100 - base_pct} (base/feature)")
    if session.votes and save_learner(learner_file, session.learner):
        log_event("DEBUG", "TasteCheck", "Learner weights saved", path=learner_file, **session.learner.as_dict())

    if config.report_generation_enabled:
        try:
            TasteSessionReporter(get_report_dir()).save_session(session.summary())
        except OSError as e:
            log_event("ERROR", "Report", "Failed to write session report", error=e)
    return 0 if result.done else 1


def cmd_taste_status(args, config: Config) -> int:
    store = TasteStore(get_taste_store_file(config), config.taste)
    if args.speaker:
        ctx = _context_from_args(args)
        status = store.status(ctx)
        print(f"{ctx.key}: {status.n_votes} votes, confidence {status.confidence:.0%}")
        return 0

    keys = store.contexts()
    if not keys:
        print("No taste models yet")
    for key in keys:
        speaker, mode, intent = key.rsplit("__", 2)
        status = store.status(TasteContext(speaker, mode, intent))
        print(f"{key}: {status.n_votes} votes, confidence {status.confidence:.0%}")
    return 0


def cmd_taste_reset(args, config: Config) -> int:
    store = TasteStore(get_taste_store_file(config), config.taste)
    if args.all:
        store.reset()
        return 0
    if not args.speaker:
        raise ValueError("taste-reset needs --speaker or --all")
    store.reset(_context_from_args(args))
    return 0


def cmd_render_blend(args, config: Config) -> int:
    ratio = parse_ratio_label(args.ratio)
    base, base_sr = load_ir(args.base)
    feature, feature_sr = load_ir(args.feature)
    mixed, sr = blend_ir_samples(base, feature, ratio.base, base_sr, feature_sr)
    save_ir(args.output, mixed, sr)
    print(f"Wrote {args.output} ({ratio.label}, {len(mixed)} samples @ {sr} Hz)")
    if args.audition:
        audition(mixed, sr)
    return 0


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------
def _add_context_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--speaker", help="Speaker prefix for the taste context (default: from base filename)")
    parser.add_argument("--mode", choices=TASTE_MODES, default="blend")
    parser.add_argument("--intent", choices=TASTE_INTENTS, default="rhythm")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="irscope", description="Analyze, blend and taste-test cab IRs")
    parser.add_argument("--log-level", help="Override config log level (DEBUG/INFO/WARNING/ERROR)")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("analyze", help="Print metrics for IR files")
    p.add_argument("files", nargs="+")
    p.add_argument("--json", action="store_true", help="Emit raw metrics as JSON")
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("mix", help="Blend a base IR with feature IRs across ratios")
    p.add_argument("base")
    p.add_argument("features", nargs="+")
    p.add_argument("--ratio", default="50/50", help="Selected base/feature ratio (default 50/50)")
    p.set_defaults(func=cmd_mix)

    p = sub.add_parser("foundation", help="Rank IRs as blend foundations")
    p.add_argument("files", nargs="+")
    p.set_defaults(func=cmd_foundation)

    p = sub.add_parser("partners", help="Rank blend partners for a base IR")
    p.add_argument("base")
    p.add_argument("features", nargs="+")
    p.set_defaults(func=cmd_partners)

    p = sub.add_parser("taste-check", help="Interactive A/B blend taste check")
    p.add_argument("base")
    p.add_argument("features", nargs="+")
    _add_context_args(p)
    p.add_argument("--target", help="Reference IR whose tonal shape replaces profile matching")
    p.add_argument("--audition", action="store_true", help="Play each option through the default output")
    p.add_argument("--seed", type=int, help="Seed for A/B side shuffling")
    p.add_argument("--max-rounds", type=int, help="Override ranking rounds")
    p.set_defaults(func=cmd_taste_check)

    p = sub.add_parser("taste-status", help="Show learned taste contexts")
    _add_context_args(p)
    p.set_defaults(func=cmd_taste_status)

    p = sub.add_parser("taste-reset", help="Forget a taste context (or all)")
    _add_context_args(p)
    p.add_argument("--all", action="store_true")
    p.set_defaults(func=cmd_taste_reset)

    p = sub.add_parser("render-blend", help="Write a blended IR WAV")
    p.add_argument("base")
    p.add_argument("feature")
    p.add_argument("output")
    p.add_argument("--ratio", default="50/50")
    p.add_argument("--audition", action="store_true")
    p.set_defaults(func=cmd_render_blend)

    return parser


def run_cli(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    set_log_level(args.log_level or config.log_level)

    try:
        return args.func(args, config)
    except (ValueError, OSError) as e:
        log_event("ERROR", "CLI", f"{args.command} failed", error=e)
        return 1


def main(argv=None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    args, _ = build_parser().parse_known_args(argv)

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run_cli(argv)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run_cli(argv)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
