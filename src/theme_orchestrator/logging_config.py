"""Centralized logging configuration for theme-orchestrator."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "theme_orchestrator"


class SensitiveDataFilter(logging.Filter):
	"""Flag log records that mention credentials."""

	# Bare "token" is left out: token usage is logged on every run
	SENSITIVE_PATTERNS = (
		"access_token",
		"password",
		"secret",
		"api_key",
		"authorization",
	)

	def filter(self, record: logging.LogRecord) -> bool:
		if isinstance(record.msg, str) and not record.msg.startswith("[SENSITIVE]"):
			msg_lower = record.msg.lower()
			if any(pattern in msg_lower for pattern in self.SENSITIVE_PATTERNS):
				record.msg = f"[SENSITIVE] {record.msg}"
		return True


def setup_logging(
	level: Optional[str] = None,
	log_dir: Optional[Path] = None,
) -> logging.Logger:
	"""
	Set up logging with console and file handlers.

	Args:
		level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env var or INFO.
		log_dir: Directory for the rotating log file. Console only when omitted.

	Returns:
		Configured package logger
	"""
	level = level or os.getenv("THEME_ORCHESTRATOR_LOG_LEVEL", "INFO")
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(ROOT_LOGGER)
	logger.setLevel(log_level)

	# Avoid duplicate handlers
	if logger.handlers:
		return logger

	detailed_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	)
	simple_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(message)s",
		datefmt="%H:%M:%S",
	)

	console_handler = logging.StreamHandler(sys.stderr)
	console_handler.setLevel(log_level)
	console_handler.setFormatter(simple_formatter)
	console_handler.addFilter(SensitiveDataFilter())
	logger.addHandler(console_handler)

	if log_dir is not None:
		log_path = Path(log_dir)
		log_path.mkdir(parents=True, exist_ok=True)

		file_handler = RotatingFileHandler(
			log_path / f"{ROOT_LOGGER}.log",
			maxBytes=10 * 1024 * 1024,  # 10 MB
			backupCount=5,
		)
		file_handler.setLevel(logging.DEBUG)  # File gets all logs
		file_handler.setFormatter(detailed_formatter)
		file_handler.addFilter(SensitiveDataFilter())
		logger.addHandler(file_handler)

	return logger
