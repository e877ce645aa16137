import json
import tempfile
import unittest
from pathlib import Path

import numpy as np

from config import TasteConfig
from taste_store import (
    FEATURE_NAMES,
    STORE_VERSION,
    TILT_INDEX,
    TasteContext,
    TasteStore,
    featurize,
    featurize_blend,
    infer_speaker_prefix,
    make_taste_key,
)
from tonal_engine import compute_tonal_features


def _features(**overrides):
    metrics = {
        "sub_bass_energy": 0.01,
        "bass_energy": 0.03,
        "low_mid_energy": 0.06,
        "mid_energy_6": 0.32,
        "high_mid_energy": 0.38,
        "presence_energy": 0.14,
        "ultra_high_energy": 0.06,
        "frequency_smoothness": 75.0,
    }
    metrics.update(overrides)
    return compute_tonal_features(metrics)


class TestTasteContext(unittest.TestCase):
    def test_key_format(self):
        ctx = TasteContext("V30", "blend", "lead")
        self.assertEqual(ctx.key, "V30__blend__lead")
        self.assertEqual(make_taste_key(ctx), ctx.key)

    def test_invalid_mode_or_intent(self):
        with self.assertRaises(ValueError):
            TasteContext("V30", mode="stereo")
        with self.assertRaises(ValueError):
            TasteContext("V30", intent="ambient")

    def test_infer_speaker_prefix(self):
        self.assertEqual(infer_speaker_prefix("v30_sm57_cap.wav"), "V30")
        self.assertEqual(infer_speaker_prefix("/irs/g12m_r121.wav"), "G12M")
        self.assertEqual(infer_speaker_prefix(""), "UNKNOWN")


class TestFeaturize(unittest.TestCase):
    def test_vector_layout(self):
        f = _features()
        vec = featurize(f)
        self.assertEqual(vec.shape, (len(FEATURE_NAMES),))
        self.assertAlmostEqual(vec[TILT_INDEX], f.tilt_db_per_oct)
        self.assertAlmostEqual(vec[-1], 75.0)

    def test_blend_ratio_is_clamped(self):
        a = _features()
        b = _features(presence_energy=0.3, mid_energy_6=0.2)
        np.testing.assert_allclose(featurize_blend(a, b, 0.95), featurize_blend(a, b, 0.7))
        np.testing.assert_allclose(featurize_blend(a, b, 0.05), featurize_blend(a, b, 0.3))
        self.assertFalse(np.allclose(featurize_blend(a, b, 0.4), featurize_blend(a, b, 0.6)))


class TestTasteStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "taste.json"
        self.store = TasteStore(self.path)
        self.ctx = TasteContext("V30")

    def tearDown(self):
        self._tmp.cleanup()

    def test_unknown_context_has_no_bias(self):
        self.assertEqual(self.store.get_taste_bias(self.ctx, [1.0, 2.0]), (0.0, 0.0))
        self.assertIsNone(self.store.weights(self.ctx))
        status = self.store.status(self.ctx)
        self.assertEqual(status.n_votes, 0)
        self.assertEqual(status.confidence, 0.0)

    def test_record_preference_updates_and_persists(self):
        self.store.record_preference(self.ctx, [1.0, 0.0, 2.0], [0.0, 1.0, 2.0])

        np.testing.assert_allclose(self.store.weights(self.ctx), [0.15, -0.15, 0.0])
        with open(self.path, "r", encoding="utf-8") as f:
            saved = json.load(f)
        self.assertEqual(saved["version"], STORE_VERSION)
        self.assertEqual(saved["models"]["V30__blend__rhythm"]["n_votes"], 1)

        bias, confidence = self.store.get_taste_bias(self.ctx, [1.0, 0.0, 0.0])
        self.assertAlmostEqual(bias, 0.15)
        self.assertAlmostEqual(confidence, 1 / 30)

    def test_custom_learning_rate(self):
        self.store.record_preference(self.ctx, [1.0], [0.0], lr=0.5)
        np.testing.assert_allclose(self.store.weights(self.ctx), [0.5])

    def test_tie_records_nothing(self):
        self.store.record_preference(self.ctx, [1.0], [0.0], tie=True)
        self.assertFalse(self.path.exists())
        self.assertEqual(self.store.status(self.ctx).n_votes, 0)

    def test_dimension_change_recreates_model(self):
        self.store.record_preference(self.ctx, [1.0, 1.0], [0.0, 0.0])
        self.store.record_preference(self.ctx, [1.0, 1.0, 1.0], [0.0, 0.0, 0.0])
        np.testing.assert_allclose(self.store.weights(self.ctx), [0.15, 0.15, 0.15])
        self.assertEqual(self.store.status(self.ctx).n_votes, 1)

    def test_confidence_saturates(self):
        store = TasteStore(self.path, TasteConfig(confidence_votes=2))
        for _ in range(3):
            store.record_preference(self.ctx, [1.0], [0.0])
        self.assertEqual(store.status(self.ctx).confidence, 1.0)

    def test_contexts_are_independent(self):
        lead = TasteContext("V30", intent="lead")
        self.store.record_preference(self.ctx, [1.0], [0.0])
        self.store.record_preference(lead, [0.0], [1.0])
        self.assertEqual(self.store.contexts(), ["V30__blend__lead", "V30__blend__rhythm"])
        self.assertGreater(self.store.weights(self.ctx)[0], 0)
        self.assertLess(self.store.weights(lead)[0], 0)

    def test_reset_one_and_all(self):
        other = TasteContext("G12M")
        self.store.record_preference(self.ctx, [1.0], [0.0])
        self.store.record_preference(other, [1.0], [0.0])

        self.store.reset(self.ctx)
        self.assertEqual(self.store.contexts(), ["G12M__blend__rhythm"])

        self.store.reset()
        self.assertEqual(self.store.contexts(), [])

    def test_corrupt_file_starts_fresh(self):
        self.path.write_text("{not json", encoding="utf-8")
        self.assertEqual(self.store.contexts(), [])
        self.store.record_preference(self.ctx, [1.0], [0.0])
        self.assertEqual(self.store.status(self.ctx).n_votes, 1)

    def test_unsupported_version_starts_fresh(self):
        self.path.write_text(json.dumps({"version": 99, "models": {"x": {"w": [1], "n_votes": 3}}}), encoding="utf-8")
        self.assertEqual(self.store.contexts(), [])

    def test_simulate_votes_prefers_brightest(self):
        dark = featurize(_features(presence_energy=0.05, ultra_high_energy=0.01, bass_energy=0.1))
        bright = featurize(_features(presence_energy=0.3, ultra_high_energy=0.15))
        self.assertGreater(bright[TILT_INDEX], dark[TILT_INDEX])

        self.store.simulate_votes(self.ctx, [dark, bright], count=4)

        self.assertEqual(self.store.status(self.ctx).n_votes, 4)
        w = self.store.weights(self.ctx)
        self.assertAlmostEqual(w[TILT_INDEX], 4 * 0.12 * (bright[TILT_INDEX] - dark[TILT_INDEX]))
        bias_bright, _ = self.store.get_taste_bias(self.ctx, bright)
        bias_dark, _ = self.store.get_taste_bias(self.ctx, dark)
        self.assertGreater(bias_bright, bias_dark)

    def test_simulate_votes_empty_is_noop(self):
        self.store.simulate_votes(self.ctx, [])
        self.assertFalse(self.path.exists())

    def test_simulate_votes_accepts_ndarray(self):
        self.store.simulate_votes(self.ctx, np.zeros((0, 9)))
        self.assertFalse(self.path.exists())

        dark = featurize(_features(presence_energy=0.05, ultra_high_energy=0.01, bass_energy=0.1))
        bright = featurize(_features(presence_energy=0.3, ultra_high_energy=0.15))
        self.store.simulate_votes(self.ctx, np.array([dark, bright]), count=3)
        self.assertEqual(self.store.status(self.ctx).n_votes, 3)
        self.assertGreater(self.store.weights(self.ctx)[TILT_INDEX], 0.0)

    def test_malformed_model_entries_are_ignored(self):
        key = make_taste_key(self.ctx)
        payload = {"version": STORE_VERSION, "models": {key: [1, 2], "G12M__blend__rhythm": {"w": 3, "n_votes": 2}}}
        self.path.write_text(json.dumps(payload), encoding="utf-8")

        self.assertIsNone(self.store.weights(self.ctx))
        self.assertEqual(self.store.status(self.ctx).n_votes, 0)
        self.assertEqual(self.store.get_taste_bias(self.ctx, [1.0, 2.0]), (0.0, 0.0))
        other = TasteContext("G12M")
        self.assertIsNone(self.store.weights(other))
        self.assertEqual(self.store.status(other).n_votes, 0)

        self.store.record_preference(self.ctx, [1.0], [0.0])
        self.assertEqual(self.store.status(self.ctx).n_votes, 1)


if __name__ == "__main__":
    unittest.main()
