"""
Configuration
=============
Loads environment variables from .env file using python-dotenv, then lets a
project-level YAML file override the loop defaults.

Environment Variables:
    LOOP_MAX_ITERATIONS         — iteration budget per run (default: 10)
    LOOP_MAX_DURATION_MS        — wall-clock budget per run (default: 1800000)
    LOOP_NO_PROGRESS_THRESHOLD  — consecutive no-progress iterations tolerated (default: 3)
    LOOP_COOLDOWN_MS            — pause between iterations (default: 1000)
    CRITERIA_TIMEOUT_MS         — default timeout for a success check (default: 120000)
    PROJECT_ROOT                — working tree the service operates on (default: cwd)
    LOOP_STORE_PATH             — JSON-lines run store; empty keeps runs in memory
    PROGRESS_JUDGE_URL          — OpenAI-compatible endpoint for model-backed progress checks
    PROGRESS_JUDGE_MODEL        — model name sent to the judge endpoint
    PROGRESS_JUDGE_API_KEY      — bearer token for the judge endpoint

Project File:
    <project>/.loopdriver/config.yaml, section ``loop``:

        loop:
          max_iterations: 15
          max_duration_ms: 600000
          no_progress_threshold: 3
          cooldown_ms: 500
          success_criteria:
            - type: type_check
            - type: test_pass
              command: pytest -q
"""
import os
import logging
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from loopdriver.core.constants import CONFIG_FILE_NAME, DATA_DIR_NAME
from loopdriver.core.exceptions import ConfigurationError
from loopdriver.models.success_criteria import SuccessCriteria, validate_criteria

load_dotenv()

logger = logging.getLogger(__name__)

LOOP_MAX_ITERATIONS = int(os.getenv("LOOP_MAX_ITERATIONS", 10))
LOOP_MAX_DURATION_MS = int(os.getenv("LOOP_MAX_DURATION_MS", 1_800_000))
LOOP_NO_PROGRESS_THRESHOLD = int(os.getenv("LOOP_NO_PROGRESS_THRESHOLD", 3))
LOOP_COOLDOWN_MS = int(os.getenv("LOOP_COOLDOWN_MS", 1000))

# Success checks are killed after this long unless the criterion says otherwise
CRITERIA_TIMEOUT_MS = int(os.getenv("CRITERIA_TIMEOUT_MS", 120_000))

PROJECT_ROOT = os.getenv("PROJECT_ROOT", os.getcwd())
LOOP_STORE_PATH = os.getenv("LOOP_STORE_PATH", "")

PROGRESS_JUDGE_URL = os.getenv("PROGRESS_JUDGE_URL", "")
PROGRESS_JUDGE_MODEL = os.getenv("PROGRESS_JUDGE_MODEL", "gpt-4o-mini")
PROGRESS_JUDGE_API_KEY = os.getenv("PROGRESS_JUDGE_API_KEY", "")


def _default_criteria() -> List[SuccessCriteria]:
    return [SuccessCriteria(type="test_pass")]


class LoopConfig(BaseModel):
    """Effective loop defaults after env + project file are merged."""
    max_iterations: int = Field(default=LOOP_MAX_ITERATIONS, gt=0)
    max_duration_ms: int = Field(default=LOOP_MAX_DURATION_MS, gt=0)
    no_progress_threshold: int = Field(default=LOOP_NO_PROGRESS_THRESHOLD, gt=0)
    cooldown_ms: int = Field(default=LOOP_COOLDOWN_MS, ge=0)
    criteria_timeout_ms: int = Field(default=CRITERIA_TIMEOUT_MS, gt=0)
    success_criteria: List[SuccessCriteria] = Field(default_factory=_default_criteria)


def get_project_data_dir(project_path: str) -> str:
    return os.path.join(project_path, DATA_DIR_NAME)


def get_project_config_path(project_path: str) -> str:
    return os.path.join(get_project_data_dir(project_path), CONFIG_FILE_NAME)


def _read_project_section(config_path: str) -> Dict[str, Any]:
    """Return the ``loop`` section of the YAML file, or {} if absent."""
    if not os.path.isfile(config_path):
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    section = data.get("loop") or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'loop' section in {config_path} must be a mapping")
    return section


def load_loop_config(
    project_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> LoopConfig:
    """
    Build the effective LoopConfig.

    Precedence (lowest → highest): environment defaults, project YAML file,
    explicit ``overrides``.

    Raises
    ------
    ConfigurationError
        On unparsable YAML, out-of-range values, or a custom criterion
        without a command.
    """
    merged: Dict[str, Any] = {}
    if project_path:
        config_path = get_project_config_path(project_path)
        merged.update(_read_project_section(config_path))
        if merged:
            logger.info("Loaded loop config from %s", config_path)
    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = LoopConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid loop configuration: {e}") from e

    validate_criteria(config.success_criteria)
    return config
