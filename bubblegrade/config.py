from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os

from dotenv import load_dotenv


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _parse_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc


def _parse_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number.") from exc


def load_env() -> Optional[Path]:
    env_file = os.environ.get("OMR_ENV_FILE")
    if not env_file:
        return None

    path = Path(env_file)
    if not path.is_absolute():
        repo_root = Path(__file__).resolve().parents[1]
        path = repo_root / env_file

    if not path.exists():
        raise RuntimeError(f"OMR_ENV_FILE not found: {path}")

    load_dotenv(path)
    return path


@dataclass(frozen=True)
class Settings:
    mode: str
    host: str
    port: int
    version: str
    classifier_model: Optional[str]
    classifier_input_size: int
    classifier_timeout: float
    cv_threads: int
    debug_jpeg_quality: int


def load_settings() -> Settings:
    load_env()
    mode = _env("OMR_MODE", "local")
    if mode not in ("local", "docker"):
        raise RuntimeError("OMR_MODE must be 'local' or 'docker'.")

    timeout = _parse_float("OMR_CLASSIFIER_TIMEOUT", 2.0)
    if timeout <= 0:
        raise RuntimeError("OMR_CLASSIFIER_TIMEOUT must be positive.")

    quality = _parse_int("OMR_DEBUG_JPEG_QUALITY", 75)
    if not 1 <= quality <= 100:
        raise RuntimeError("OMR_DEBUG_JPEG_QUALITY must be between 1 and 100.")

    return Settings(
        mode=mode,
        host=_env("OMR_HOST", "0.0.0.0" if mode == "docker" else "127.0.0.1"),
        port=_parse_int("OMR_PORT", 8001),
        version=_env("OMR_VERSION", "0.1.0"),
        classifier_model=os.getenv("OMR_CLASSIFIER_MODEL") or None,
        classifier_input_size=_parse_int("OMR_CLASSIFIER_INPUT_SIZE", 32),
        classifier_timeout=timeout,
        cv_threads=_parse_int("OMR_CV_THREADS", 0),
        debug_jpeg_quality=quality,
    )


SETTINGS = load_settings()
