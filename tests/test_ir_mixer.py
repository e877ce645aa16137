import unittest

from ir_mixer import (
    analyzed_ir_from_metrics,
    brightness_label,
    build_blend_results,
    extract_raw_energy,
    hi_mid_mid_ratio,
    parse_ratio_label,
)
from tonal_engine import DEFAULT_BLEND_RATIOS, SIX_BAND_KEYS


def _metrics(**overrides):
    metrics = {
        "sub_bass_energy": 0.01,
        "bass_energy": 0.02,
        "low_mid_energy": 0.05,
        "mid_energy_6": 0.34,
        "high_mid_energy": 0.40,
        "presence_energy": 0.12,
        "ultra_high_energy": 0.06,
        "frequency_smoothness": 80.0,
    }
    metrics.update(overrides)
    return metrics


BRIGHT = _metrics(mid_energy_6=0.15, high_mid_energy=0.40, presence_energy=0.35, low_mid_energy=0.02)


class TestMixerHelpers(unittest.TestCase):
    def test_extract_raw_energy_snake_and_camel(self):
        raw = extract_raw_energy({"sub_bass_energy": 0.1, "midEnergy6": 0.4, "presenceEnergy": 0.2})
        self.assertEqual(raw["sub_bass"], 0.1)
        self.assertEqual(raw["mid"], 0.4)
        self.assertEqual(raw["presence"], 0.2)
        self.assertEqual(raw["bass"], 0.0)
        self.assertEqual(set(raw), set(SIX_BAND_KEYS))

    def test_analyzed_ir_bands_are_six_band_percent(self):
        ir = analyzed_ir_from_metrics("a.wav", _metrics())
        self.assertEqual(set(ir.bands), set(SIX_BAND_KEYS))
        self.assertAlmostEqual(sum(ir.bands.values()), 100.0, delta=0.3)
        self.assertEqual(ir.features.smooth_score, 80.0)
        self.assertEqual(ir.as_ir_bands().filename, "a.wav")

    def test_hi_mid_mid_ratio(self):
        self.assertEqual(hi_mid_mid_ratio({"mid": 20.0, "high_mid": 30.0}), 1.5)
        self.assertEqual(hi_mid_mid_ratio({"mid": 0.0, "high_mid": 30.0}), 0.0)

    def test_brightness_label(self):
        self.assertEqual(brightness_label(0.9), "dark")
        self.assertEqual(brightness_label(1.0), "balanced")
        self.assertEqual(brightness_label(2.0), "balanced")
        self.assertEqual(brightness_label(2.1), "bright")

    def test_parse_ratio_label(self):
        r = parse_ratio_label(" 60/40 ")
        self.assertEqual(r.label, "60/40")
        self.assertAlmostEqual(r.base, 0.6)
        self.assertAlmostEqual(r.feature, 0.4)

    def test_parse_ratio_label_rejects_bad_input(self):
        for bad in ("60-40", "60/30", "a/b", "", "120/-20"):
            with self.assertRaises(ValueError):
                parse_ratio_label(bad)


class TestBuildBlendResults(unittest.TestCase):
    def setUp(self):
        self.base = analyzed_ir_from_metrics("v30_base.wav", _metrics())
        self.twin = analyzed_ir_from_metrics("v30_twin.wav", _metrics())
        self.bright = analyzed_ir_from_metrics("v30_bright.wav", BRIGHT)

    def test_one_result_per_feature_in_order(self):
        results = build_blend_results(self.base, [self.bright, self.twin])
        self.assertEqual([r.feature.filename for r in results], ["v30_bright.wav", "v30_twin.wav"])
        for r in results:
            self.assertEqual(len(r.all_ratio_blends), len(DEFAULT_BLEND_RATIOS))
            self.assertEqual(list(r.ratio_matches), [ratio.label for ratio in DEFAULT_BLEND_RATIOS])

    def test_identical_feature_is_redundant(self):
        twin_result = build_blend_results(self.base, [self.twin])[0]
        self.assertAlmostEqual(twin_result.similarity, 1.0)
        self.assertTrue(twin_result.redundant)
        self.assertEqual(twin_result.current_blend, self.base.bands)

    def test_redundancy_threshold_is_configurable(self):
        result = build_blend_results(self.base, [self.twin], redundancy_threshold=1.01)[0]
        self.assertFalse(result.redundant)

    def test_current_ratio_drives_best_match(self):
        ratio = parse_ratio_label("30/70")
        result = build_blend_results(self.base, [self.bright], current_ratio=ratio)[0]
        self.assertEqual(result.best_match.score, result.ratio_matches["30/70"].score)
        self.assertGreater(result.hi_mid_mid_ratio, 1.0)


if __name__ == "__main__":
    unittest.main()
