# DiaLoop Learning Store
# YAML file persistence for the confidence accumulator's evidence.

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

import yaml

from ..core.base_classes import BaseLearningStore

logger = logging.getLogger(__name__)


class LearningStoreError(Exception):
    """Raised when the learning state cannot be written or read."""


class YamlLearningStore(BaseLearningStore):
    """Stores the accumulator state as a single YAML document.

    Writes go to a temporary sibling file that is then moved over the
    target, so a crash mid-write never leaves a truncated document.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path

    def save(self, state: Dict[str, Any]) -> None:
        document = {"saved_at": datetime.now().isoformat(), "state": state}
        tmp_path = f"{self.file_path}.tmp"
        try:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, 'w') as f:
                yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.file_path)
        except (OSError, yaml.YAMLError) as e:
            raise LearningStoreError(f"Could not save learning state to '{self.file_path}': {e}") from e
        logger.debug(f"Learning state saved to '{self.file_path}'")

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.file_path):
            logger.debug(f"No learning state at '{self.file_path}'")
            return None
        try:
            with open(self.file_path, 'r') as f:
                document = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise LearningStoreError(f"Could not read learning state from '{self.file_path}': {e}") from e
        if not isinstance(document, dict) or not isinstance(document.get("state"), dict):
            logger.warning(f"Learning state file '{self.file_path}' has no usable state. Ignoring it.")
            return None
        return document["state"]


class InMemoryLearningStore(BaseLearningStore):
    """Keeps the last saved state in memory. Useful for simulations and tests."""

    def __init__(self):
        self.state: Optional[Dict[str, Any]] = None
        self.save_count = 0

    def save(self, state: Dict[str, Any]) -> None:
        self.state = state
        self.save_count += 1

    def load(self) -> Optional[Dict[str, Any]]:
        return self.state
