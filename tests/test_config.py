"""
Dialectic Core — Configuration Loader Tests

Layering: built-in defaults → base YAML → per-environment overlay →
DIALECTIC_* environment variables.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest import mock

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dialectic import config as config_mod
from dialectic.config import (
    DEFAULTS,
    _load_env_overrides,
    _load_overlay_file,
    _set_nested,
    deep_merge,
    get_config_value,
    load_config,
)


def _clean_env(**extra):
    """os.environ without DIALECTIC_* variables, plus `extra`."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("DIALECTIC_")}
    env.update(extra)
    return mock.patch.dict(os.environ, env, clear=True)


class TestDeepMerge(unittest.TestCase):

    def test_flat_merge(self):
        self.assertEqual(deep_merge({"a": 1, "b": 2}, {"b": 99, "c": 3}),
                         {"a": 1, "b": 99, "c": 3})

    def test_nested_merge(self):
        result = deep_merge({"outer": {"a": 1, "inner": {"x": 10}}},
                            {"outer": {"inner": {"y": 20}}})
        self.assertEqual(result, {"outer": {"a": 1, "inner": {"x": 10, "y": 20}}})

    def test_lists_replaced(self):
        self.assertEqual(deep_merge({"ids": [1, 2]}, {"ids": [3]}), {"ids": [3]})

    def test_scalar_replaces_dict(self):
        self.assertEqual(deep_merge({"db": {"path": "x"}}, {"db": None}), {"db": None})

    def test_inputs_not_mutated(self):
        base, overlay = {"a": {"b": 1}}, {"a": {"c": 2}}
        deep_merge(base, overlay)
        self.assertEqual(base, {"a": {"b": 1}})
        self.assertEqual(overlay, {"a": {"c": 2}})

    def test_set_nested(self):
        d = {}
        _set_nested(d, ["executor", "model_timeout_seconds"], 30)
        self.assertEqual(d, {"executor": {"model_timeout_seconds": 30}})


class TestEnvOverrides(unittest.TestCase):

    def test_double_underscore_nests(self):
        with _clean_env(DIALECTIC_EXECUTOR__MODEL_TIMEOUT_SECONDS="60"):
            self.assertEqual(_load_env_overrides(),
                             {"executor": {"model_timeout_seconds": 60}})

    def test_values_typed(self):
        with _clean_env(DIALECTIC_STAGES__AUTO_ADVANCE="true",
                        DIALECTIC_WORKER__POLL_INTERVAL_SECONDS="0.5",
                        DIALECTIC_STORAGE__ROOT="/srv/dialectic"):
            overrides = _load_env_overrides()
        self.assertIs(overrides["stages"]["auto_advance"], True)
        self.assertEqual(overrides["worker"]["poll_interval_seconds"], 0.5)
        self.assertEqual(overrides["storage"]["root"], "/srv/dialectic")

    def test_meta_variables_ignored(self):
        with _clean_env(DIALECTIC_ENV="prod", DIALECTIC_DB_BACKEND="postgres",
                        DIALECTIC_WORKER_MODE="arq"):
            self.assertEqual(_load_env_overrides(), {})

    def test_unparseable_yaml_kept_as_string(self):
        with _clean_env(DIALECTIC_LLM__PROVIDER="[unclosed"):
            self.assertEqual(_load_env_overrides()["llm"]["provider"], "[unclosed")


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.base = os.path.join(self.tmp, "dialectic.yaml")
        with open(self.base, "w") as f:
            f.write("db:\n  path: base.db\nexecutor:\n  model_timeout_seconds: 90\n")
        os.makedirs(os.path.join(self.tmp, "config"))
        with open(os.path.join(self.tmp, "config", "staging.yaml"), "w") as f:
            f.write("db:\n  path: staging.db\nstages:\n  auto_advance: true\n")

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def test_defaults_without_files(self):
        with _clean_env():
            cfg = load_config(base_path=os.path.join(self.tmp, "missing.yaml"))
        for section in DEFAULTS:
            self.assertIn(section, cfg)
        self.assertEqual(cfg["_active_env"], "default")
        self.assertEqual(get_config_value("compression.output_reserve_tokens", cfg), 2048)

    def test_base_file_over_defaults(self):
        with _clean_env():
            cfg = load_config(base_path=self.base)
        self.assertEqual(cfg["db"]["path"], "base.db")
        self.assertEqual(cfg["db"]["backend"], "sqlite")
        self.assertEqual(cfg["executor"]["model_timeout_seconds"], 90)
        self.assertEqual(cfg["_config_source"], self.base)

    def test_overlay_next_to_base(self):
        with _clean_env():
            cfg = load_config(base_path=self.base, env="staging",
                              config_dir=os.path.join(self.tmp, "nowhere"))
        self.assertEqual(cfg["db"]["path"], "staging.db")
        self.assertIs(cfg["stages"]["auto_advance"], True)
        self.assertEqual(cfg["executor"]["model_timeout_seconds"], 90)
        self.assertEqual(cfg["_active_env"], "staging")

    def test_overlay_from_config_dir_env(self):
        with _clean_env(DIALECTIC_ENV="staging",
                        DIALECTIC_CONFIG_DIR=os.path.join(self.tmp, "config")):
            self.assertEqual(_load_overlay_file(self.base)["db"]["path"], "staging.db")

    def test_missing_overlay_is_empty(self):
        with _clean_env():
            self.assertEqual(_load_overlay_file(self.base, env="prod",
                                                config_dir=self.tmp), {})
            self.assertEqual(_load_overlay_file(self.base), {})

    def test_env_vars_win(self):
        with _clean_env(DIALECTIC_DB__PATH="env.db"):
            cfg = load_config(base_path=self.base, env="staging")
        self.assertEqual(cfg["db"]["path"], "env.db")

    def test_env_vars_can_be_disabled(self):
        with _clean_env(DIALECTIC_DB__PATH="env.db"):
            cfg = load_config(base_path=self.base, include_env_vars=False)
        self.assertEqual(cfg["db"]["path"], "base.db")

    def test_non_mapping_file_rejected(self):
        with open(self.base, "w") as f:
            f.write("- just\n- a list\n")
        with _clean_env(), self.assertRaises(ValueError):
            load_config(base_path=self.base)

    def test_repository_files_load(self):
        with _clean_env():
            cfg = load_config(base_path=os.path.join(_project_root, "dialectic.yaml"),
                              env="dev", config_dir=os.path.join(_project_root, "config"))
        self.assertEqual(cfg["projects"]["default_process_template_id"], "tpl-dialectic")
        self.assertEqual(cfg["logging"]["level"], "DEBUG")


class TestGetConfigValue(unittest.TestCase):

    def test_dotted_path(self):
        cfg = {"a": {"b": {"c": 3}}}
        self.assertEqual(get_config_value("a.b.c", cfg), 3)
        self.assertEqual(get_config_value("a.b", cfg), {"c": 3})

    def test_missing_returns_default(self):
        cfg = {"a": {"b": 1}}
        self.assertEqual(get_config_value("a.x", cfg, "fallback"), "fallback")
        self.assertIsNone(get_config_value("a.b.c", cfg))

    def test_falsy_values_returned(self):
        cfg = {"stages": {"auto_advance": False}, "n": 0}
        self.assertIs(get_config_value("stages.auto_advance", cfg, True), False)
        self.assertEqual(get_config_value("n", cfg, 5), 0)

    def test_process_config_cached(self):
        config_mod.reset_config()
        try:
            with _clean_env(DIALECTIC_CONFIG=os.path.join(tempfile.gettempdir(), "absent.yaml")):
                first = config_mod.get_config()
                self.assertIs(config_mod.get_config(), first)
                self.assertEqual(get_config_value("api.collapse_forbidden"), True)
        finally:
            config_mod.reset_config()


if __name__ == "__main__":
    unittest.main()
