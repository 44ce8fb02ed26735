"""Tests for the command-line interface."""

import pytest
from typer.testing import CliRunner

from jutsu_engine.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("GEMINI_API_KEY", "JUTSU_ENGINE_BACKEND", "JUTSU_ENGINE_LANGUAGE", "JUTSU_ENGINE_MODEL_PATH"):
        monkeypatch.delenv(var, raising=False)


class TestCatalogCommand:
    def test_lists_jutsu_and_signs(self):
        result = runner.invoke(app, ["catalog"])
        assert result.exit_code == 0
        assert "chidori" in result.output
        assert "Ox (Ushi) → Ram (Hitsuji) → Monkey (Saru)" in result.output
        assert "Interlace all fingers" in result.output

    def test_chinese(self):
        result = runner.invoke(app, ["catalog", "--language", "zh"])
        assert result.exit_code == 0
        assert "雷遁·千鸟" in result.output

    def test_bad_language(self):
        result = runner.invoke(app, ["catalog", "--language", "fr"])
        assert result.exit_code == 1


class TestFetchModel:
    def test_no_mirrors(self, tmp_path):
        config = tmp_path / "engine.yaml"
        config.write_text("model_mirrors: []\n")
        result = runner.invoke(app, ["fetch-model", "-o", str(tmp_path / "m.onnx"), "-c", str(config)])
        assert result.exit_code == 1
        assert not (tmp_path / "m.onnx").exists()


class TestVerify:
    def test_requires_api_key(self, tmp_path):
        result = runner.invoke(app, ["verify", str(tmp_path / "hands.jpg"), "tiger"])
        assert result.exit_code == 1

    def test_unknown_seal(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GEMINI_API_KEY", "k")
        result = runner.invoke(app, ["verify", str(tmp_path / "hands.jpg"), "phoenix"])
        assert result.exit_code == 1

    def test_unreadable_image(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GEMINI_API_KEY", "k")
        result = runner.invoke(app, ["verify", str(tmp_path / "missing.jpg"), "tiger"])
        assert result.exit_code == 1
