import os

import pytest

from bubblegrade.config import load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "OMR_ENV_FILE",
        "OMR_MODE",
        "OMR_HOST",
        "OMR_PORT",
        "OMR_CLASSIFIER_MODEL",
        "OMR_CLASSIFIER_TIMEOUT",
        "OMR_DEBUG_JPEG_QUALITY",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = load_settings()
    assert settings.mode == "local"
    assert settings.host == "127.0.0.1"
    assert settings.port == 8001
    assert settings.classifier_model is None


def test_docker_mode_binds_all_interfaces(monkeypatch):
    monkeypatch.setenv("OMR_MODE", "docker")
    assert load_settings().host == "0.0.0.0"


def test_env_file_is_loaded(monkeypatch, tmp_path):
    env_file = tmp_path / "omr.env"
    env_file.write_text("OMR_PORT=9100\nOMR_CLASSIFIER_TIMEOUT=0.5\n")
    monkeypatch.setenv("OMR_ENV_FILE", str(env_file))
    try:
        settings = load_settings()
    finally:
        # load_dotenv writes straight into os.environ
        os.environ.pop("OMR_PORT", None)
        os.environ.pop("OMR_CLASSIFIER_TIMEOUT", None)
    assert settings.port == 9100
    assert settings.classifier_timeout == 0.5


def test_missing_env_file(monkeypatch, tmp_path):
    monkeypatch.setenv("OMR_ENV_FILE", str(tmp_path / "nope.env"))
    with pytest.raises(RuntimeError):
        load_settings()


@pytest.mark.parametrize(
    "name, value",
    [
        ("OMR_MODE", "cloud"),
        ("OMR_PORT", "eighty"),
        ("OMR_CLASSIFIER_TIMEOUT", "0"),
        ("OMR_DEBUG_JPEG_QUALITY", "101"),
    ],
)
def test_rejects_bad_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(RuntimeError):
        load_settings()
