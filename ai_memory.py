"""File-backed memory of the adaptive tuner.

Three human-readable JSON files live in one directory:

``runtime-config.json``
    Adaptive RSI/ATR thresholds, TP/SL multipliers and a bounded history of
    optimisation changes.
``ai-weights.json``
    Mirror of the latest ``ai_weights`` row.
``ai-learning.json``
    The last 50 learning events written after each closed trade.

``create_backup`` copies whichever of them exist into a timestamped folder
under ``ai-memory/``.
"""

from __future__ import annotations

import json
import shutil
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from log_utils import setup_logger
from weight_optimizer import DEFAULT_RUNTIME_CONFIG, weights_from_row

logger = setup_logger(__name__)

WEIGHTS_FILE_NAME = "ai-weights.json"
RUNTIME_CONFIG_FILE_NAME = "runtime-config.json"
LEARNING_LOG_FILE_NAME = "ai-learning.json"
BACKUP_DIR_NAME = "ai-memory"

HISTORY_LIMIT = 10
LEARNING_LOG_LIMIT = 50


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
    tmp_path.replace(path)


def _read_json(path: Path) -> Any:
    """Return the decoded file or ``None`` when missing or unreadable."""

    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None


class AIMemory:
    """Load and persist the tuner's files under ``data_dir``."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self.weights_path = self.data_dir / WEIGHTS_FILE_NAME
        self.runtime_config_path = self.data_dir / RUNTIME_CONFIG_FILE_NAME
        self.learning_log_path = self.data_dir / LEARNING_LOG_FILE_NAME
        self.backup_root = self.data_dir / BACKUP_DIR_NAME

    # ------------------------------------------------------------------
    # Runtime config
    # ------------------------------------------------------------------
    def load_runtime_config(self, defaults: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Return the stored runtime config merged over the defaults.

        ``defaults`` (usually the configured thresholds) replace the
        built-in defaults for keys the file does not set.
        """

        config = deepcopy(DEFAULT_RUNTIME_CONFIG)
        if defaults:
            config.update({key: value for key, value in defaults.items() if value is not None})
        stored = _read_json(self.runtime_config_path)
        if isinstance(stored, dict):
            config.update(stored)
        if not isinstance(config.get("optimization_history"), list):
            config["optimization_history"] = []
        return config

    def save_runtime_config(
        self,
        config: Dict[str, Any],
        changes: Optional[Sequence[str]] = None,
        *,
        now: Optional[datetime] = None,
        optimized: bool = False,
    ) -> Dict[str, Any]:
        """Persist ``config`` and append one history entry.

        The history keeps at most ten entries, newest last.  Only a periodic
        optimization run (``optimized=True``) moves ``last_optimized``.
        """

        stamp = (now or datetime.now()).isoformat()
        payload = deepcopy(dict(config))
        history = list(payload.get("optimization_history") or [])
        history = history[-(HISTORY_LIMIT - 1):]
        history.append({"timestamp": stamp, "changes": list(changes or [])})
        payload["optimization_history"] = history
        if optimized:
            payload["last_optimized"] = stamp
        _write_json_atomic(self.runtime_config_path, payload)
        logger.info("Runtime config saved to %s", self.runtime_config_path)
        return payload

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------
    def load_weights(self) -> Optional[Dict[str, float]]:
        stored = _read_json(self.weights_path)
        if not isinstance(stored, dict):
            return None
        return weights_from_row(stored)

    def save_weights(
        self,
        weights: Dict[str, float],
        runtime_config: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        payload: Dict[str, Any] = dict(weights)
        if runtime_config:
            for key in ("rsi_oversold", "rsi_overbought", "atr_low_pct", "atr_high_pct"):
                if key in runtime_config:
                    payload[key] = runtime_config[key]
        payload["updated_at"] = (now or datetime.now()).isoformat()
        _write_json_atomic(self.weights_path, payload)

    # ------------------------------------------------------------------
    # Learning log
    # ------------------------------------------------------------------
    def learning_events(self) -> List[Dict[str, Any]]:
        stored = _read_json(self.learning_log_path)
        if not isinstance(stored, list):
            return []
        return [event for event in stored if isinstance(event, dict)]

    def recent_learning_events(self, count: int = 10) -> List[Dict[str, Any]]:
        return self.learning_events()[-count:]

    def append_learning_event(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        events = self.learning_events()
        events.append(dict(event))
        events = events[-LEARNING_LOG_LIMIT:]
        _write_json_atomic(self.learning_log_path, events)
        return events

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    def create_backup(self, *, now: Optional[datetime] = None) -> Path:
        """Copy the existing AI files into ``ai-memory/<timestamp>/``."""

        stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M")
        target = self.backup_root / stamp
        target.mkdir(parents=True, exist_ok=True)
        copied = 0
        for path in (self.weights_path, self.runtime_config_path, self.learning_log_path):
            if path.exists():
                shutil.copy2(path, target / path.name)
                copied += 1
        logger.info("AI backup created at %s (%d files)", target, copied)
        return target


__all__ = [
    "AIMemory",
    "HISTORY_LIMIT",
    "LEARNING_LOG_FILE_NAME",
    "LEARNING_LOG_LIMIT",
    "RUNTIME_CONFIG_FILE_NAME",
    "WEIGHTS_FILE_NAME",
]
