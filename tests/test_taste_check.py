import random
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import numpy as np

from config import TasteCheckConfig
from learner_scoring import LearnerScorer
from musical_roles import ALL_ROLES, CUT_LAYER, DARK_SPECIALTY, FOUNDATION, score_role_pair_for_intent
from taste_check import (
    PHASE_BISECTION,
    PHASE_RANKING,
    TasteCheckSession,
    TonalTarget,
    run_taste_check,
)
from taste_store import TILT_INDEX, TasteContext, TasteStatus, TasteStore
from tonal_engine import compute_tonal_features


def _features(**overrides):
    metrics = {
        "sub_bass_energy": 0.01,
        "bass_energy": 0.03,
        "low_mid_energy": 0.05,
        "mid_energy_6": 0.34,
        "high_mid_energy": 0.38,
        "presence_energy": 0.13,
        "ultra_high_energy": 0.06,
        "frequency_smoothness": 80.0,
    }
    metrics.update(overrides)
    return compute_tonal_features(metrics)


BASE = _features()
BRIGHT = _features(mid_energy_6=0.18, presence_energy=0.32, ultra_high_energy=0.12)
DARK = _features(bass_energy=0.12, low_mid_energy=0.15, presence_energy=0.04, ultra_high_energy=0.01)
MID = _features(mid_energy_6=0.42, high_mid_energy=0.33)


def _favour(name):
    """Chooser that always picks `name` in ranking and the lower ratio in bisection."""
    def choose(m):
        if m.phase == PHASE_RANKING:
            if m.a.name == name:
                return "a"
            if m.b.name == name:
                return "b"
            return "a"
        return "a" if m.a.base_ratio < m.b.base_ratio else "b"
    return choose


class TasteCheckTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = TasteStore(Path(self._tmp.name) / "taste.json")
        self.ctx = TasteContext("V30")

    def tearDown(self):
        self._tmp.cleanup()

    def make_session(self, features=None, **config_overrides):
        cfg = TasteCheckConfig(seed=1, **config_overrides)
        return TasteCheckSession(
            base=BASE,
            features=features if features is not None else {"bright.wav": BRIGHT, "dark.wav": DARK, "mid.wav": MID},
            ctx=self.ctx,
            store=self.store,
            config=cfg,
            rng=random.Random(1),
            base_name="v30_base.wav",
        )


class TestSessionSetup(TasteCheckTestCase):
    def test_requires_features(self):
        with self.assertRaises(ValueError):
            self.make_session(features={})

    def test_candidates_start_at_a_grid_ratio(self):
        session = self.make_session(ratio_grid=[0.6, 0.4])
        for c in session.candidates:
            self.assertIn(c.option.base_ratio, (0.6, 0.4))
            self.assertGreaterEqual(c.prior, 0)
            self.assertLessEqual(c.prior, 100)

    def test_single_candidate_skips_ranking(self):
        session = self.make_session(features={"bright.wav": BRIGHT})
        self.assertEqual(session.phase, PHASE_BISECTION)
        m = session.next_matchup()
        self.assertEqual(m.phase, PHASE_BISECTION)
        self.assertEqual({m.a.name, m.b.name}, {"bright.wav"})
        low, high = sorted([m.a.base_ratio, m.b.base_ratio])
        self.assertAlmostEqual(low, 0.4)
        self.assertAlmostEqual(high, 0.6)

    def test_target_prior_prefers_matching_blend(self):
        session = self.make_session(features={"base_copy.wav": BASE, "dark.wav": DARK})
        session.target = TonalTarget.from_features(BASE)
        copy_option = session.make_option("base_copy.wav", BASE, 0.5)
        dark_option = session.make_option("dark.wav", DARK, 0.5)
        self.assertEqual(session.prior_score(copy_option), 100)
        self.assertLess(session.prior_score(dark_option), 100)


class TestSessionFlow(TasteCheckTestCase):
    def test_next_matchup_is_stable_until_answered(self):
        session = self.make_session()
        first = session.next_matchup()
        self.assertIs(session.next_matchup(), first)
        session.submit("a")
        self.assertIsNot(session.next_matchup(), first)

    def test_first_rounds_visit_unplayed_challengers(self):
        session = self.make_session()
        seen = set()
        for _ in range(2):
            m = session.next_matchup()
            seen.update({m.a.name, m.b.name})
            session.submit("tie")
        self.assertEqual(seen, {"bright.wav", "dark.wav", "mid.wav"})

    def test_bad_choice_and_missing_matchup(self):
        session = self.make_session()
        with self.assertRaises(RuntimeError):
            session.submit("a")
        session.next_matchup()
        with self.assertRaises(ValueError):
            session.submit("left")

    def test_favourite_wins_and_votes_are_stored(self):
        session = self.make_session(win_rate_weight=1000.0)
        result = run_taste_check(session, _favour("dark.wav"))

        self.assertTrue(result.done)
        self.assertEqual(result.winner, "dark.wav")
        self.assertEqual(result.ranking[0].name, "dark.wav")
        self.assertEqual(result.bisection_steps, 3)
        self.assertGreaterEqual(result.base_ratio, 0.3)
        self.assertLessEqual(result.base_ratio, 0.35)
        self.assertAlmostEqual(result.feature_ratio, 1 - result.base_ratio)
        self.assertEqual(self.store.status(self.ctx).n_votes, result.votes)
        self.assertEqual(result.votes, result.rounds + result.bisection_steps)

    def test_preferring_higher_ratio_moves_up(self):
        session = self.make_session(win_rate_weight=1000.0)

        def choose(m):
            if m.phase == PHASE_RANKING:
                return "a"
            return "a" if m.a.base_ratio > m.b.base_ratio else "b"

        result = run_taste_check(session, choose)
        self.assertGreaterEqual(result.base_ratio, 0.65)
        self.assertLessEqual(result.base_ratio, 0.7)

    def test_all_ties_hit_max_rounds_and_centre_ratio(self):
        session = self.make_session(max_rounds=4)
        result = run_taste_check(session, lambda m: "tie")

        self.assertEqual(result.rounds, 4)
        self.assertEqual(result.votes, 0)
        self.assertEqual(result.ties, 4 + result.bisection_steps)
        self.assertAlmostEqual(result.base_ratio, 0.5)
        self.assertEqual(self.store.status(self.ctx).n_votes, 0)

    def test_leader_streak_settles_on_the_streak_holder(self):
        session = self.make_session(win_rate_weight=1000.0, settle_streak=3, max_rounds=12)
        leader = session.ranking()[0].name

        def choose(m):
            return "a" if m.a.name == session.ranking()[0].name else "b"

        while session.phase == PHASE_RANKING:
            session.submit(choose(session.next_matchup()))

        self.assertEqual(session.rounds, 3)
        self.assertEqual(session.phase, PHASE_BISECTION)
        self.assertEqual(session.result().winner, leader)

    def test_new_leader_restarts_the_streak(self):
        session = self.make_session(settle_streak=3, max_rounds=12)
        cands = {c.name: c for c in session.candidates}

        def order(*names):
            return [(cands[n], 0.0) for n in names]

        def pick(name):
            m = session.next_matchup()
            session.submit("a" if m.a.name == name else "b")

        with mock.patch.object(session, "_ranked", return_value=order("bright.wav", "dark.wav", "mid.wav")) as ranked:
            pick("bright.wav")
            ranked.return_value = order("mid.wav", "bright.wav", "dark.wav")
            pick("mid.wav")
            pick("mid.wav")
            self.assertEqual(session.rounds, 3)
            self.assertEqual(session.phase, PHASE_RANKING)

            session.next_matchup()
            ranked.return_value = order("bright.wav", "mid.wav", "dark.wav")
            m = session.next_matchup()
            session.submit("a" if m.a.name == "mid.wav" else "b")

        self.assertEqual(session.rounds, 4)
        self.assertEqual(session.phase, PHASE_BISECTION)
        self.assertEqual(session.result().winner, "mid.wav")

    def test_tie_breaks_the_streak(self):
        session = self.make_session(settle_streak=2, max_rounds=12)
        cands = {c.name: c for c in session.candidates}
        order = [(cands[n], 0.0) for n in ("dark.wav", "bright.wav", "mid.wav")]

        with mock.patch.object(session, "_ranked", return_value=order):
            for choice in ("leader", "tie", "leader"):
                m = session.next_matchup()
                if choice == "tie":
                    session.submit("tie")
                else:
                    session.submit("a" if m.a.name == "dark.wav" else "b")
            self.assertEqual(session.phase, PHASE_RANKING)

            m = session.next_matchup()
            session.submit("a" if m.a.name == "dark.wav" else "b")

        self.assertEqual(session.rounds, 4)
        self.assertEqual(session.result().winner, "dark.wav")

    def test_max_bisection_steps_zero_keeps_prior_ratio(self):
        session = self.make_session(features={"bright.wav": BRIGHT}, max_bisection_steps=0)
        self.assertTrue(session.done)
        self.assertIsNone(session.next_matchup())
        self.assertEqual(session.result().base_ratio, session.candidates[0].option.base_ratio)

    def test_learner_receives_votes(self):
        learner = LearnerScorer(learning_rate=0.1)
        session = self.make_session()
        session.learner = learner
        session.next_matchup()
        session.submit("a")
        self.assertTrue(any(v != 0.0 for v in learner.as_dict().values()))

    def test_summary_fields(self):
        session = self.make_session(win_rate_weight=1000.0)
        run_taste_check(session, _favour("mid.wav"))
        summary = session.summary()
        self.assertEqual(summary["context"], "V30__blend__rhythm")
        self.assertEqual(summary["base"], "v30_base.wav")
        self.assertEqual(summary["winner"], "mid.wav")
        self.assertIn(summary["winner_role"], ALL_ROLES)
        self.assertTrue(summary["completed"])
        self.assertEqual(summary["candidates"], 3)
        self.assertGreater(summary["context_votes"], 0)


class TestLearnedTaste(TasteCheckTestCase):
    def _ranking_with_tilt_weight(self, sign):
        session = self.make_session(
            features={"bright.wav": BRIGHT, "dark.wav": DARK},
            taste_weight=1e9,
            bias_scale=1e6,
        )
        w = np.zeros(9)
        w[TILT_INDEX] = sign
        with mock.patch.object(self.store, "weights", return_value=w), \
                mock.patch.object(self.store, "status", return_value=TasteStatus(30, 1.0)):
            return [r.name for r in session.ranking()]

    def test_taste_bias_reorders_candidates(self):
        self.assertEqual(self._ranking_with_tilt_weight(+1.0)[0], "bright.wav")
        self.assertEqual(self._ranking_with_tilt_weight(-1.0)[0], "dark.wav")

    def test_no_taste_means_prior_order(self):
        session = self.make_session()
        ranked = session.ranking()
        priors = [r.prior for r in ranked]
        self.assertEqual(priors, sorted(priors, reverse=True))


class TestRoles(TasteCheckTestCase):
    def test_candidates_carry_roles(self):
        session = self.make_session()
        self.assertIn(session.base_role, ALL_ROLES)
        for c in session.candidates:
            self.assertIn(c.role, ALL_ROLES)
        self.assertEqual({r.role for r in session.ranking()} - set(ALL_ROLES), set())

    def test_role_pairing_shifts_prior(self):
        plain = {c.name: c for c in self.make_session(role_pair_weight=0.0).candidates}
        session = self.make_session(role_pair_weight=5.0)
        for c in session.candidates:
            pairing = score_role_pair_for_intent(session.base_role, c.role, "rhythm")
            expected = min(100.0, max(0.0, plain[c.name].prior + 5.0 * pairing))
            self.assertAlmostEqual(c.prior, expected)

    def test_winning_candidates_are_promoted(self):
        self.ctx = TasteContext("V30", intent="lead")
        session = self.make_session()
        steady, clear, other = session.candidates
        for c in session.candidates:
            c.role = DARK_SPECIALTY
        steady.wins = 2
        clear.wins = 4

        roles = session.roles()
        self.assertEqual(roles[steady.name], CUT_LAYER)
        self.assertEqual(roles[clear.name], FOUNDATION)
        self.assertEqual(roles[other.name], DARK_SPECIALTY)
        ranked = {r.name: r.role for r in session.ranking()}
        self.assertEqual(ranked, roles)
        self.assertEqual(steady.role, DARK_SPECIALTY)


if __name__ == "__main__":
    unittest.main()
