import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml

from prsentry_core.errors import ConfigError

DEFAULT_CONFIG: dict = {
    "api_base": "https://api.openai.com/v1",
    "model_id": "gpt-4o",
    "chunk_budget": 12000,  # characters of serialized hunk text per model call
    "max_workers": 4,
    "max_attempts": 4,
    "backoff_base": 1.0,
    "backoff_max": 30.0,
    "request_timeout": 60.0,
    "run_timeout": 900.0,  # whole-run wall clock; keep below the CI job limit
    "temperature": 0.1,
    "max_tokens": 2048,
    "guidelines": None,  # None = use built-in default; set to a path string to override
    "exclude": [],  # fnmatch patterns or directory names to skip (e.g. "migrations/", "*.min.js")
    "reports": [],  # SARIF files from upstream scanners to fold into the review
}

BUILTIN_GUIDELINES_DIR = Path(__file__).parent / "guidelines"
_BUILTIN_DEFAULT = BUILTIN_GUIDELINES_DIR / "default.md"


@dataclass(frozen=True)
class ReviewConfig:
    """Settings for one process, built once by load_config and passed down explicitly."""

    api_key: Optional[str] = None
    api_base: str = DEFAULT_CONFIG["api_base"]
    model_id: str = DEFAULT_CONFIG["model_id"]
    github_token: Optional[str] = None
    event_path: Optional[str] = None
    chunk_budget: int = DEFAULT_CONFIG["chunk_budget"]
    max_workers: int = DEFAULT_CONFIG["max_workers"]
    max_attempts: int = DEFAULT_CONFIG["max_attempts"]
    backoff_base: float = DEFAULT_CONFIG["backoff_base"]
    backoff_max: float = DEFAULT_CONFIG["backoff_max"]
    request_timeout: float = DEFAULT_CONFIG["request_timeout"]
    run_timeout: float = DEFAULT_CONFIG["run_timeout"]
    temperature: float = DEFAULT_CONFIG["temperature"]
    max_tokens: int = DEFAULT_CONFIG["max_tokens"]
    guidelines: Optional[str] = None
    exclude: tuple = ()
    reports: tuple = ()

    def validate(self) -> "ReviewConfig":
        """Raise ConfigError for anything that would fail later. Performs no I/O."""
        if not self.api_key:
            raise ConfigError("API_KEY environment variable is not set.")
        if not self.api_base:
            raise ConfigError("API_BASE must not be empty.")
        if not self.model_id:
            raise ConfigError("MODEL_ID must not be empty.")
        for name in ("chunk_budget", "max_workers", "max_attempts", "max_tokens"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}.")
        for name in ("backoff_base", "backoff_max", "request_timeout", "run_timeout"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}.")
        return self


def load_config(
    config_path: str = ".prsentry.yml",
    cli_overrides: Optional[dict] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ReviewConfig:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prsentry.yml in the current directory
      3. CLI argument overrides

    Credentials and endpoint coordinates come from the environment.
    """
    env = os.environ if environ is None else environ
    config = {
        **DEFAULT_CONFIG,
        "exclude": list(DEFAULT_CONFIG["exclude"]),
        "reports": list(DEFAULT_CONFIG["reports"]),
    }

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            try:
                file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {config_path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping, got {type(file_config).__name__}.")
        config.update(file_config)

    if env.get("API_BASE"):
        config["api_base"] = env["API_BASE"]
    if env.get("MODEL_ID"):
        config["model_id"] = env["MODEL_ID"]

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    config["api_key"] = env.get("API_KEY")
    config.setdefault("github_token", None)
    if not config["github_token"]:
        config["github_token"] = env.get("GITHUB_TOKEN")
    if not config.get("event_path"):
        config["event_path"] = env.get("GITHUB_EVENT_PATH")

    known = {f.name for f in fields(ReviewConfig)}
    unknown = sorted(set(config) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}")
    config["exclude"] = tuple(config.get("exclude") or ())
    config["reports"] = tuple(config.get("reports") or ())
    return ReviewConfig(**config)


def load_guidelines(config: ReviewConfig) -> str:
    """
    Load review guidelines.

    If ``guidelines`` is set in config, loads from that path (relative to cwd).
    Otherwise falls back to the built-in default.
    """
    custom_path = config.guidelines
    if custom_path:
        p = Path(custom_path)
        if not p.exists():
            raise ConfigError(f"Guidelines file not found: {custom_path}")
        return p.read_text()

    if _BUILTIN_DEFAULT.exists():
        return _BUILTIN_DEFAULT.read_text()

    raise ConfigError("No guidelines configured and built-in default is missing.")
