import tempfile
import unittest
from pathlib import Path

import toml

from sabi.config import Config, ConfigManager
from sabi.exceptions import ConfigurationInvalid


def valid_config(**overrides) -> Config:
    values = {"api_key": "k", "model": "m", "base_url": "https://api.example.com/v1"}
    values.update(overrides)
    return Config(**values)


class ConfigValidateTests(unittest.TestCase):
    def test_valid_config_passes(self):
        valid_config().validate()

    def test_missing_required_values(self):
        for key in ("api_key", "model", "base_url"):
            with self.subTest(key=key):
                with self.assertRaises(ConfigurationInvalid) as ctx:
                    valid_config(**{key: ""}).validate()
                self.assertIn(key, str(ctx.exception))

    def test_limits_must_be_positive_integers(self):
        for value in (0, -1, "10", True):
            with self.subTest(value=value):
                with self.assertRaises(ConfigurationInvalid):
                    valid_config(max_output_bytes=value).validate()

    def test_invalid_dangerous_pattern(self):
        with self.assertRaises(ConfigurationInvalid):
            valid_config(dangerous_patterns=["[unclosed"]).validate()

    def test_interactive_programs_must_be_names(self):
        with self.assertRaises(ConfigurationInvalid):
            valid_config(interactive_programs=["vim", ""]).validate()


class ConfigEnvTests(unittest.TestCase):
    def test_env_overrides_apply(self):
        config = Config()
        config.apply_env_overrides(
            {
                "SABI_API_KEY": "env-key",
                "SABI_MODEL": "env-model",
                "SABI_BASE_URL": "https://env.example.com",
                "SABI_MAX_HISTORY": "7",
                "SABI_MAX_OUTPUT_BYTES": "2048",
                "SABI_MAX_OUTPUT_LINES": "40",
            }
        )

        self.assertEqual(config.api_key, "env-key")
        self.assertEqual(config.model, "env-model")
        self.assertEqual(config.base_url, "https://env.example.com")
        self.assertEqual(config.max_history_messages, 7)
        self.assertEqual(config.max_output_bytes, 2048)
        self.assertEqual(config.max_output_lines, 40)

    def test_bad_integer_is_ignored(self):
        config = Config()
        config.apply_env_overrides({"SABI_MAX_HISTORY": "many"})
        self.assertEqual(config.max_history_messages, 20)


class ConfigManagerTests(unittest.TestCase):
    def test_save_then_load(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            manager = ConfigManager(Path(tmp_dir) / "config.toml")

            manager.save_config(model="saved-model", max_output_lines=99)
            loaded = manager._load_file()
            mode = (Path(tmp_dir) / "config.toml").stat().st_mode & 0o777

        self.assertEqual(loaded.model, "saved-model")
        self.assertEqual(loaded.max_output_lines, 99)
        self.assertEqual(loaded.temperature, Config().temperature)
        self.assertEqual(mode, 0o600)

    def test_missing_file_gives_defaults(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            manager = ConfigManager(Path(tmp_dir) / "absent.toml")
            self.assertEqual(manager._load_file(), Config())

    def test_unknown_keys_are_ignored(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "config.toml"
            path.write_text(toml.dumps({"model": "x", "legacy_option": 1}), encoding="utf-8")
            loaded = ConfigManager(path)._load_file()

        self.assertEqual(loaded.model, "x")

    def test_corrupt_file_raises(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "config.toml"
            path.write_text("model = [unterminated", encoding="utf-8")
            with self.assertRaises(ConfigurationInvalid):
                ConfigManager(path)._load_file()


if __name__ == "__main__":
    unittest.main()
