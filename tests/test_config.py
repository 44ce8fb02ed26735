"""Tests for engine configuration loading."""

import logging

import pytest

from jutsu_engine.config import EngineConfig, load_config, save_config


class TestDefaults:
    def test_defaults(self):
        config = load_config(env={})
        assert config.backend == "geometry"
        assert config.language == "en"
        assert config.port == 8765
        assert config.remote_max_retries == 2
        assert config.capture_enabled is False

    def test_hold_duration_per_backend(self):
        assert EngineConfig(backend="geometry").hold_duration == 0.8
        assert EngineConfig(backend="neural").hold_duration == 0.4
        assert EngineConfig(backend="remote").hold_duration is None


class TestYaml:
    def test_file_values(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("backend: neural\nlanguage: zh\njutsu_cost: 25\n")
        config = load_config(path, env={})
        assert config.backend == "neural"
        assert config.language == "zh"
        assert config.jutsu_cost == 25

    def test_unknown_keys_warned(self, tmp_path, caplog):
        path = tmp_path / "engine.yaml"
        path.write_text("backend: remote\nsharingan: true\n")
        with caplog.at_level(logging.WARNING, logger="jutsu_engine.config"):
            config = load_config(path, env={})
        assert config.backend == "remote"
        assert "sharingan" in caplog.text

    def test_empty_file(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("")
        assert load_config(path, env={}).backend == "geometry"

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("- geometry\n")
        with pytest.raises(ValueError):
            load_config(path, env={})

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "nested" / "engine.yaml"
        save_config(EngineConfig(backend="remote", remote_poll_interval=4.0), path)
        config = load_config(path, env={})
        assert config.backend == "remote"
        assert config.remote_poll_interval == 4.0


class TestEnvironment:
    def test_overrides(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("backend: geometry\n")
        config = load_config(path, env={
            "GEMINI_API_KEY": "secret",
            "JUTSU_ENGINE_BACKEND": "remote",
            "JUTSU_ENGINE_LANGUAGE": "zh",
        })
        assert config.remote_api_key == "secret"
        assert config.backend == "remote"
        assert config.language == "zh"

    def test_empty_values_ignored(self):
        assert load_config(env={"JUTSU_ENGINE_BACKEND": ""}).backend == "geometry"


class TestValidation:
    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="backend"):
            load_config(env={"JUTSU_ENGINE_BACKEND": "chakra-sense"})

    def test_unknown_language(self):
        with pytest.raises(ValueError, match="language"):
            EngineConfig(language="fr").validate()

    def test_non_positive_tick(self):
        with pytest.raises(ValueError, match="tick_interval"):
            EngineConfig(tick_interval=0).validate()
