import json
import os
import tempfile
import unittest
from dataclasses import asdict
from pathlib import Path
from unittest import mock

from config import Config
import config_persistence


class TestConfigPersistence(unittest.TestCase):
    def test_save_and_load_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            cfg = Config()
            cfg.taste.learning_rate = 0.42
            cfg.taste_check.ratio_grid = [0.65, 0.35]

            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                self.assertTrue(config_persistence.save_config(cfg))
                loaded = config_persistence.load_config()

            self.assertAlmostEqual(loaded.taste.learning_rate, 0.42, places=6)
            self.assertEqual(loaded.taste_check.ratio_grid, [0.65, 0.35])

    def test_load_default_when_missing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                loaded = config_persistence.load_config()
            self.assertIsInstance(loaded, Config)
            self.assertFalse(cfg_file.exists())

    def test_load_migrates_and_autosaves(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            legacy = Config()
            legacy.version = 0
            legacy_data = asdict(legacy)
            legacy_data["taste"]["confidence_votes"] = None
            with open(cfg_file, "w", encoding="utf-8") as f:
                json.dump(legacy_data, f)

            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                loaded = config_persistence.load_config()

            self.assertEqual(loaded.version, 1)
            self.assertEqual(loaded.taste.confidence_votes, 30)
            with open(cfg_file, "r", encoding="utf-8") as f:
                self.assertEqual(json.load(f)["version"], 1)

    def test_load_invalid_json_returns_default(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            with open(cfg_file, "w", encoding="utf-8") as f:
                f.write("{invalid json")

            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                loaded = config_persistence.load_config()

            self.assertIsInstance(loaded, Config)

    def test_save_failure_returns_false(self):
        cfg = Config()

        with mock.patch.object(config_persistence, "get_config_file", side_effect=OSError("boom")):
            self.assertFalse(config_persistence.save_config(cfg))

    def test_config_dir_honours_env_override(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            home = Path(tmpdir) / "irscope-home"
            with mock.patch.dict(os.environ, {"IRSCOPE_HOME": str(home)}):
                self.assertEqual(config_persistence.get_config_dir(), home)
                self.assertTrue(home.is_dir())
                self.assertEqual(config_persistence.get_config_file(), home / "config.json")

                cfg = Config()
                self.assertEqual(config_persistence.get_taste_store_file(cfg), home / "taste.json")
                self.assertEqual(config_persistence.get_learner_file(cfg), home / "learner.json")
                cfg.profiles_file = str(Path(tmpdir) / "elsewhere.json")
                self.assertEqual(config_persistence.get_profiles_file(cfg), Path(tmpdir) / "elsewhere.json")


if __name__ == "__main__":
    unittest.main()
