"""
Context Meta Builder - snapshot timestamp, fingerprint and provenance tokens.

Context objects are supplied by dashboard data loaders and have no guaranteed
shape. They are treated as a tree of JSON-like values (None, bool, number,
string, list, mapping) and walked with an explicit, bounded visitor so that
deeply nested or cyclic input always terminates.
"""

import hashlib
import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .schemas import CONTEXT_VERSION, Context, ContextMeta

logger = logging.getLogger(__name__)

MAX_SOURCE_IDS = 8
MAX_SOURCE_ID_LENGTH = 48
MAX_VISIT_NODES = 2000
MAX_VISIT_DEPTH = 12

PROVENANCE_KEYS = frozenset({
    "venue", "venues", "venueid", "venue_id",
    "exchange", "exchangeid", "exchange_id",
    "chain", "chains", "chainid", "chain_id", "network",
    "route", "routekey", "route_key", "routeid", "route_id", "toproutekey",
    "provider", "providerid", "provider_id",
    "source", "sources", "sourceid", "source_id",
})

# Checked in order; first finite positive value wins.
SNAPSHOT_TS_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("snapshotTs",),
    ("snapshot_ts",),
    ("generatedAt",),
    ("generated_at",),
    ("asOf",),
    ("as_of",),
    ("updatedAt",),
    ("updated_at",),
    ("lastUpdated",),
    ("timestamp",),
    ("riskEngine", "snapshotTs"),
    ("risk_engine", "snapshot_ts"),
    ("meta", "snapshotTs"),
)

SNAPSHOT_AGE_KEYS = ("snapshotAgeMs", "snapshot_age_ms")


def now_ms() -> int:
    return int(time.time() * 1000)


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def coerce_epoch_ms(value: Any) -> Optional[int]:
    """
    Coerce a timestamp-like value to epoch ms.

    Accepts numbers, numeric strings and ISO-8601 strings. Values below 1e11
    are treated as epoch seconds.
    """
    number = _finite(value)
    if number is None and isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    if number is None or number <= 0:
        return None
    if number < 1e11:
        number *= 1000
    return int(number)


def get_path(context: Any, path: Sequence[str]) -> Any:
    """Read a nested key path from a mapping, returning None on any miss."""
    node = context
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


class ContextVisitor:
    """
    Depth-first walk over a context tree with hard caps.

    Yields (key, value) pairs for every mapping entry and list element
    (list elements inherit the key of their parent). Stops after
    ``max_nodes`` visited nodes; does not descend past ``max_depth``.
    """

    def __init__(self, max_nodes: int = MAX_VISIT_NODES, max_depth: int = MAX_VISIT_DEPTH):
        self.max_nodes = max_nodes
        self.max_depth = max_depth
        self.visited = 0

    def walk(self, root: Any) -> Iterable[Tuple[Optional[str], Any]]:
        stack: List[Tuple[Optional[str], Any, int]] = [(None, root, 0)]
        seen_containers = set()
        while stack and self.visited < self.max_nodes:
            key, node, depth = stack.pop()
            self.visited += 1
            yield key, node
            if depth >= self.max_depth or not isinstance(node, (dict, list, tuple)):
                continue
            if id(node) in seen_containers:
                continue
            seen_containers.add(id(node))
            if isinstance(node, dict):
                children = [(str(k), v, depth + 1) for k, v in node.items()]
            else:
                children = [(key, v, depth + 1) for v in node]
            # Reverse so the first child is visited first.
            stack.extend(reversed(children))


def _string_like(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return str(value)
    return None


def collect_source_ids(context: Any, limit: int = MAX_SOURCE_IDS) -> List[str]:
    """Collect up to ``limit`` distinct provenance tokens from the context tree."""
    found: List[str] = []
    visitor = ContextVisitor()
    for key, value in visitor.walk(context):
        if key is None or key.lower() not in PROVENANCE_KEYS:
            continue
        token = _string_like(value)
        if token is None:
            continue
        token = token[:MAX_SOURCE_ID_LENGTH]
        if token not in found:
            found.append(token)
            if len(found) >= limit:
                break
    return found


def resolve_snapshot_ts(context: Any, now: Optional[int] = None) -> int:
    """Return when the context was observed, defaulting to ``now``."""
    current = now if now is not None else now_ms()
    for path in SNAPSHOT_TS_PATHS:
        ts = coerce_epoch_ms(get_path(context, path))
        if ts is not None:
            return ts
    if isinstance(context, dict):
        for key in SNAPSHOT_AGE_KEYS:
            age = _finite(context.get(key))
            if age is not None and age >= 0:
                return int(current - age)
    return current


def canonical_json(value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        # Cyclic structures and mixed-type keys land here
        return repr(value)


def fingerprint_context(feature: str, context: Any) -> str:
    """Deterministic content fingerprint of a feature + context pair."""
    digest = hashlib.sha256(f"{feature}:{canonical_json(context)}".encode("utf-8"))
    return digest.hexdigest()[:16]


def build_context_meta(
    context: Context,
    context_hash: str,
    now: Optional[int] = None,
) -> ContextMeta:
    return ContextMeta(
        snapshot_ts=resolve_snapshot_ts(context, now),
        context_hash=context_hash,
        source_ids=collect_source_ids(context),
        context_version=CONTEXT_VERSION,
    )


COVERAGE_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("dataCoverage",),
    ("data_coverage",),
    ("coverage",),
    ("coverageRatio",),
    ("coverage_ratio",),
    ("riskEngine", "coverage"),
    ("risk_engine", "coverage"),
)


def read_coverage(context: Any) -> Optional[float]:
    """First finite coverage value among the aliased context fields, clamped to [0, 1]."""
    for path in COVERAGE_PATHS:
        value = _finite(get_path(context, path))
        if value is not None:
            return min(1.0, max(0.0, value))
    return None
