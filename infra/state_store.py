"""
Insight Infrastructure: State Store

Persisted key-value state for the insight layer: response cache, daily
budget counters, bounded audit log, and the operator flags (runtime switch,
per-feature enable flags, per-feature rollout percentages).

Every read and mutation re-reads the pluggable backend first, so flags and
budget counters written by another process are honoured and never overwritten
with stale values. Backends degrade to defaults on read/write failure; a broken
store never takes the insight layer down.
"""

import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional
import logging

logger = logging.getLogger(__name__)


DEFAULT_STATE: Dict[str, Any] = {
    "cache": {},              # "feature:contextHash" -> {created_at, response}
    "budget": {},             # feature -> {date: YYYY-MM-DD (UTC), count}
    "audit": [],              # bounded, oldest first
    "runtime_enabled": True,  # global kill switch
    "feature_enabled": {},    # feature -> bool (absent = registry default)
    "rollout_percent": {},    # feature -> 0..100 (absent = registry default)
}

FLAG_KEYS = ("runtime_enabled", "feature_enabled", "rollout_percent")


def _default_state() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_STATE)


# ─── Backends ──────────────────────────────────────────────────────────────

class StateBackend(ABC):
    """Where the state dict is persisted."""

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """Return the persisted state, or None when nothing usable exists."""

    @abstractmethod
    def save(self, state: Dict[str, Any]) -> None:
        """Persist the full state dict."""


class MemoryBackend(StateBackend):
    """Process-local backend. Shared instances simulate a shared browser store in tests."""

    def __init__(self) -> None:
        self._data: Optional[Dict[str, Any]] = None

    def load(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data) if self._data is not None else None

    def save(self, state: Dict[str, Any]) -> None:
        self._data = copy.deepcopy(state)


class JsonFileBackend(StateBackend):
    """
    JSON file backend with atomic writes (temp file + rename).
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized JsonFileBackend at {self.path}")

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            logger.debug("No state file found, using defaults")
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load state from {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning("Invalid state file format, using defaults")
            return None
        return data

    def save(self, state: Dict[str, Any]) -> None:
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=".insight_state_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(temp_path, self.path)
            logger.debug("Saved insight state to file")
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to save state to {self.path}: {e}")
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)


# ─── Store ─────────────────────────────────────────────────────────────────

@dataclass
class FlagChange:
    """Change event delivered to subscribers."""
    key: str                        # one of FLAG_KEYS
    feature: Optional[str]          # None for runtime_enabled
    value: Any                      # new value (None when an override was cleared)


Subscriber = Callable[[FlagChange], None]


class InsightStore:
    """
    Cache, budget, audit and flag storage for the insight orchestrator.

    One instance is injected per orchestrator. Each operation re-reads the
    backend, applies its change and writes the state back. Flag changes made by
    another process are delivered to subscribers on that re-read.
    """

    MAX_AUDIT_ENTRIES = 200
    MAX_CACHE_ENTRIES = 500

    def __init__(self, backend: Optional[StateBackend] = None):
        self.backend = backend or MemoryBackend()
        self._subscribers: List[Subscriber] = []
        self._state = self._read_backend() or _default_state()

    # ─── Persistence ───────────────────────────────────────────────────────

    def _read_backend(self) -> Optional[Dict[str, Any]]:
        """Sanitised backend state, or None when the backend has nothing usable."""
        try:
            data = self.backend.load()
        except Exception as e:
            logger.warning(f"State backend load failed, keeping current state: {e}")
            data = None
        if not data:
            return None
        state = _default_state()
        for key, default in DEFAULT_STATE.items():
            value = data.get(key, default)
            if isinstance(value, type(default)):
                state[key] = value
            else:
                logger.warning(f"Discarding malformed state section '{key}'")
        return state

    def _save(self) -> None:
        try:
            self.backend.save(self._state)
        except Exception as e:
            logger.warning(f"State backend save failed: {e}")

    # ─── Cache ─────────────────────────────────────────────────────────────

    @staticmethod
    def cache_key(feature: str, context_hash: str) -> str:
        return f"{feature}:{context_hash}"

    def get_cache_entry(self, key: str) -> Optional[Dict[str, Any]]:
        self.refresh()
        entry = self._state["cache"].get(key)
        if not isinstance(entry, dict) or not isinstance(entry.get("response"), dict):
            return None
        return entry

    def put_cache_entry(self, key: str, created_at: int, response: Dict[str, Any]) -> None:
        self.refresh()
        cache = self._state["cache"]
        cache[key] = {"created_at": int(created_at), "response": response}
        if len(cache) > self.MAX_CACHE_ENTRIES:
            oldest = sorted(cache, key=lambda k: cache[k].get("created_at", 0))
            for stale_key in oldest[: len(cache) - self.MAX_CACHE_ENTRIES]:
                del cache[stale_key]
        self._save()

    def clear_cache(self) -> None:
        self.refresh()
        self._state["cache"] = {}
        self._save()

    # ─── Budget ────────────────────────────────────────────────────────────

    def get_budget_count(self, feature: str, day: str) -> int:
        """Calls recorded today for a feature (0 once the UTC day rolls over)."""
        self.refresh()
        entry = self._state["budget"].get(feature)
        if not isinstance(entry, dict) or entry.get("date") != day:
            return 0
        try:
            return int(entry.get("count", 0))
        except (TypeError, ValueError):
            return 0

    def increment_budget(self, feature: str, day: str) -> int:
        count = self.get_budget_count(feature, day) + 1
        self._state["budget"][feature] = {"date": day, "count": count}
        self._save()
        return count

    # ─── Audit ─────────────────────────────────────────────────────────────

    def append_audit(self, entry: Dict[str, Any]) -> None:
        self.refresh()
        audit = self._state["audit"]
        audit.append(entry)
        if len(audit) > self.MAX_AUDIT_ENTRIES:
            self._state["audit"] = audit[-self.MAX_AUDIT_ENTRIES:]
        self._save()

    def recent_audit(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest entries first."""
        self.refresh()
        if limit <= 0:
            return []
        return list(reversed(self._state["audit"][-limit:]))

    # ─── Flags ─────────────────────────────────────────────────────────────

    def is_runtime_enabled(self) -> bool:
        self.refresh()
        return bool(self._state["runtime_enabled"])

    def set_runtime_enabled(self, enabled: bool) -> None:
        self.refresh()
        enabled = bool(enabled)
        if self._state["runtime_enabled"] == enabled:
            return
        self._state["runtime_enabled"] = enabled
        self._save()
        self._notify(FlagChange("runtime_enabled", None, enabled))

    def feature_enabled_override(self, feature: str) -> Optional[bool]:
        self.refresh()
        value = self._state["feature_enabled"].get(feature)
        return value if isinstance(value, bool) else None

    def set_feature_enabled(self, feature: str, enabled: Optional[bool]) -> None:
        """Set (or clear, with None) a per-feature enable flag."""
        self.refresh()
        flags = self._state["feature_enabled"]
        if enabled is None:
            if feature not in flags:
                return
            del flags[feature]
        else:
            if flags.get(feature) == bool(enabled):
                return
            flags[feature] = bool(enabled)
        self._save()
        self._notify(FlagChange("feature_enabled", feature, enabled))

    def rollout_percent_override(self, feature: str) -> Optional[float]:
        self.refresh()
        value = self._state["rollout_percent"].get(feature)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return min(100.0, max(0.0, float(value)))

    def set_rollout_percent(self, feature: str, percent: Optional[float]) -> None:
        """Override a feature's rollout percentage (None restores the registry default)."""
        self.refresh()
        overrides = self._state["rollout_percent"]
        if percent is None:
            if feature not in overrides:
                return
            del overrides[feature]
            value = None
        else:
            value = min(100.0, max(0.0, float(percent)))
            if overrides.get(feature) == value:
                return
            overrides[feature] = value
        self._save()
        self._notify(FlagChange("rollout_percent", feature, value))

    # ─── Change events ─────────────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a flag-change callback. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, change: FlagChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as e:
                logger.warning(f"Flag subscriber raised on {change.key}: {e}")

    def refresh(self) -> List[FlagChange]:
        """
        Re-read the backend and emit change events for flags another process changed.

        Every read and mutation calls this first. When the backend has nothing
        usable the in-memory state is kept.

        Returns:
            The list of changes that were delivered to subscribers
        """
        fresh = self._read_backend()
        if fresh is None:
            return []
        previous = {key: self._state[key] for key in FLAG_KEYS}
        self._state = fresh
        changes: List[FlagChange] = []
        if previous["runtime_enabled"] != self._state["runtime_enabled"]:
            changes.append(FlagChange("runtime_enabled", None, self._state["runtime_enabled"]))
        for key in ("feature_enabled", "rollout_percent"):
            before: Mapping[str, Any] = previous[key]
            after: Mapping[str, Any] = self._state[key]
            for feature in sorted(set(before) | set(after)):
                if before.get(feature) != after.get(feature):
                    changes.append(FlagChange(key, feature, after.get(feature)))
        for change in changes:
            self._notify(change)
        if changes:
            logger.info(f"Picked up {len(changes)} flag change(s) from state backend")
        return changes

    def reset(self) -> None:
        """Drop all state (cache, budget, audit and flags)."""
        self._state = _default_state()
        self._save()


def create_insight_store_from_config(config: Optional[Mapping[str, Any]] = None) -> InsightStore:
    """
    Build an InsightStore from the ``state`` config section.

    Args:
        config: {"store": "memory" | "json", "path": "data/.insight_state.json"}
    """
    config = config or {}
    kind = str(config.get("store", "memory")).lower()
    if kind == "json":
        path = config.get("path") or os.getenv("INSIGHT_STATE_FILE", "data/.insight_state.json")
        return InsightStore(JsonFileBackend(str(path)))
    if kind != "memory":
        logger.warning(f"Unknown state store '{kind}', falling back to memory")
    return InsightStore(MemoryBackend())
