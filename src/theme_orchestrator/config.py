"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

import platformdirs

APP_NAME = "theme-orchestrator"
APP_AUTHOR = "theme-orchestrator"


class ConfigError(Exception):
	"""Raised when config.toml holds a value of the wrong type."""
	pass


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	transcripts_db_path: Path = field(init=False)
	plans_db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	log_level: str = "INFO"

	# Iteration budgets per strategy tier
	simple_max_iterations: int = 12
	hybrid_max_iterations: int = 40
	god_mode_max_iterations: int = 80

	# Sub-agent budgets
	specialist_max_iterations: int = 8
	review_max_iterations: int = 4
	hybrid_max_specialist_calls: int = 3
	god_mode_max_specialist_calls: int = 8

	# Tool execution
	batch_read_concurrency: int = 10
	max_tool_result_chars: int = 8000

	# Validation and resource ceilings (0 disables a ceiling)
	max_validation_retries: int = 2
	max_input_tokens: int = 0
	max_cost_cents: float = 0.0

	def __post_init__(self) -> None:
		self.transcripts_db_path = self.data_dir / "transcripts.db"
		self.plans_db_path = self.data_dir / "plans.db"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


_PATH_FIELDS = {"config_dir", "data_dir"}
_DERIVED_FIELDS = {"transcripts_db_path", "plans_db_path", "log_dir"}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply THEME_ORCHESTRATOR_* environment variable overrides."""
	env_map = {
		"THEME_ORCHESTRATOR_CONFIG_DIR": "config_dir",
		"THEME_ORCHESTRATOR_DATA_DIR": "data_dir",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, Path(val))

	level = os.getenv("THEME_ORCHESTRATOR_LOG_LEVEL")
	if level:
		config.log_level = level.upper()

	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	known = {f.name: f for f in fields(config) if f.name not in _DERIVED_FIELDS}
	for key, val in data.items():
		if key not in known:
			continue
		if key in _PATH_FIELDS:
			setattr(config, key, Path(os.path.expanduser(val)))
			continue
		current = getattr(config, key)
		if isinstance(current, float):
			if not isinstance(val, (int, float)) or isinstance(val, bool):
				raise ConfigError(f"{toml_path}: '{key}' must be a number, got {val!r}")
			val = float(val)
		elif isinstance(current, int) and (not isinstance(val, int) or isinstance(val, bool)):
			raise ConfigError(f"{toml_path}: '{key}' must be an integer, got {val!r}")
		setattr(config, key, val)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_env_overrides(config)
	config = _apply_toml(config)
	# Env wins over toml, so apply it again once the toml-provided dirs are known
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
