"""Tests for the snap command line interface."""

import pytest
import pytesseract
import yaml
from click.testing import CliRunner

from snaptext.cli import snap
from snaptext.daemon.errors import (
    ConfigurationError,
    InvalidRegion,
    MissingCredential,
    NoTextFound,
    PermissionDenied,
    ProviderError,
    Timeout,
)

from conftest import write_png


def fake_tesseract(text="Scanned text"):
    def image_to_data(image, lang, config, output_type):
        return {
            "text": [text], "conf": ["88"], "block_num": [1], "par_num": [1], "line_num": [1],
            "left": [0], "top": [0], "width": [10], "height": [10],
        }

    return image_to_data


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "snaptext.yaml"
    path.write_text(yaml.safe_dump({
        "history": {"path": str(tmp_path / "history.jsonl")},
        "logging": {"to_file": False},
        "capture": {"screenshot_dir": str(tmp_path)},
    }))
    return path


@pytest.fixture
def run(config_file, monkeypatch):
    monkeypatch.setattr(snap, "setup_logging", lambda *args, **kwargs: None)
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(snap.cli, ["--config", str(config_file), *args])

    return invoke


def test_exit_code_mapping():
    assert snap.exit_code_for(None) == 0
    assert snap.exit_code_for(NoTextFound()) == 0
    assert snap.exit_code_for(MissingCredential("openai")) == 2
    assert snap.exit_code_for(ConfigurationError("bad")) == 2
    assert snap.exit_code_for(InvalidRegion()) == 3
    assert snap.exit_code_for(PermissionDenied()) == 3
    assert snap.exit_code_for(Timeout("openai")) == 1
    assert snap.exit_code_for(ProviderError("openai", 500)) == 1


def test_bulk_ocr_success(run, tmp_path, monkeypatch):
    monkeypatch.setattr(pytesseract, "image_to_data", fake_tesseract())
    files = [write_png(tmp_path / f"img{i}.png", color=(i, i, i)) for i in range(2)]

    result = run("bulk-ocr", *map(str, files))

    assert result.exit_code == 0, result.output
    assert "=== Image 1: img0.png ===" in result.output
    assert "Scanned text" in result.output


def test_bulk_ocr_partial_failure_and_export(run, tmp_path, monkeypatch):
    monkeypatch.setattr(pytesseract, "image_to_data", fake_tesseract())
    good = write_png(tmp_path / "good.png")
    missing = tmp_path / "missing.png"
    out = tmp_path / "results.txt"

    result = run("bulk-ocr", str(good), str(missing), "--out", str(out), "--no-history")

    assert result.exit_code == 1
    content = out.read_text()
    assert "=== Image 1: good.png ===\nScanned text" in content
    assert "=== Image 2: missing.png ===\n[error]" in content
    assert not (tmp_path / "history.jsonl").exists() or (tmp_path / "history.jsonl").read_text() == ""


def test_bulk_ocr_missing_key_is_config_error(run, tmp_path):
    image = write_png(tmp_path / "a.png")

    result = run("bulk-ocr", str(image), "--backend", "openai")

    assert result.exit_code == 2
    assert "API key missing for OpenAI" in result.output


def test_bulk_ocr_unknown_backend(run, tmp_path):
    image = write_png(tmp_path / "a.png")

    result = run("bulk-ocr", str(image), "--backend", "nope")

    assert result.exit_code == 2


def test_capture_empty_region_is_capture_error(run):
    result = run("capture", "--mode", "region", "--region", "0,0,0,10")

    assert result.exit_code == 3


def test_capture_region_requires_rect(run):
    result = run("capture", "--mode", "region")

    assert result.exit_code == 2


def test_missing_config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(snap, "setup_logging", lambda *args, **kwargs: None)
    result = CliRunner().invoke(snap.cli, ["--config", str(tmp_path / "absent.yaml"), "backends"])

    assert result.exit_code == 2


def test_set_key_then_backends(run, config_file):
    result = run("config", "set-key", "openai", "sk-abc")
    assert result.exit_code == 0, result.output

    saved = yaml.safe_load(config_file.read_text())
    assert saved["backends"]["openai"]["api_key"] == "sk-abc"

    listing = run("backends")
    assert listing.exit_code == 0
    assert "openai" in listing.output
    assert "sk-abc" not in listing.output


def test_set_key_rejects_unknown_and_local(run):
    assert run("config", "set-key", "nope", "k").exit_code == 2
    assert run("config", "set-key", "local", "k").exit_code == 2


def test_set_default_backend(run, config_file):
    result = run("config", "set-default", "anthropic")

    assert result.exit_code == 0
    assert yaml.safe_load(config_file.read_text())["ocr"]["default_backend"] == "anthropic"


def test_history_lists_bulk_results(run, tmp_path, monkeypatch):
    monkeypatch.setattr(pytesseract, "image_to_data", fake_tesseract("Remember me"))
    run("bulk-ocr", str(write_png(tmp_path / "h.png")))

    result = run("history", "--search", "remember", "--stats")

    assert result.exit_code == 0
    assert "Remember me" in result.output
    assert "Total records: 1" in result.output


@pytest.mark.parametrize("content", ["ocr: [unclosed\n  bad: : yaml", "- just\n- a list\n", "42\n"])
def test_malformed_config_is_config_error(tmp_path, monkeypatch, content):
    monkeypatch.setattr(snap, "setup_logging", lambda *args, **kwargs: None)
    path = tmp_path / "broken.yaml"
    path.write_text(content)

    result = CliRunner().invoke(snap.cli, ["--config", str(path), "backends"])

    assert result.exit_code == 2
    assert "Configuration error" in result.output
