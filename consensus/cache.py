"""Consensus result cache, optionally persisted to a pickle file between runs."""

import hashlib
import json
import logging
import pickle
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from pathlib import Path

from config.config_loader import ConsensusSettings, ModelReference
from consensus.models import ConsensusResult, OutputUnit

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100


def _hash(payload: object) -> str:
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ConsensusCache:
    """Bounded TTL cache keyed by the units, the source text and the settings that shape a run.

    With a ``path`` the entries are loaded on construction and written back
    after every store, so a later process can reuse them. Timestamps are wall
    clock seconds for that reason.
    """

    def __init__(
        self,
        ttl_sec: float,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        path: Path | None = None,
    ) -> None:
        self._ttl_sec = ttl_sec
        self._max_entries = max_entries
        self._clock = clock
        self._path = path
        self._entries: OrderedDict[str, tuple[float, ConsensusResult]] = OrderedDict()
        if path is not None:
            self._load(path)

    def __len__(self) -> int:
        return len(self._entries)

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            with open(path, "rb") as f:
                entries = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError, AttributeError, ImportError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", path, exc)
            return
        if not isinstance(entries, OrderedDict):
            logger.warning("Ignoring cache file %s: unexpected content", path)
            return
        now = self._clock()
        for key, (stored_at, result) in entries.items():
            if now - stored_at < self._ttl_sec:
                self._entries[key] = (stored_at, result)
        logger.debug("Loaded %d cached results from %s", len(self._entries), path)

    def _persist(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "wb") as f:
            pickle.dump(self._entries, f, protocol=pickle.HIGHEST_PROTOCOL)

    @staticmethod
    def make_key(
        units: Sequence[OutputUnit],
        source_text: str | None,
        settings: ConsensusSettings,
        participants: Sequence[ModelReference],
    ) -> str:
        content = {
            "units": [[u.unit_id, u.text, u.kind.value, list(u.options)] for u in units],
            "source": source_text or "",
        }
        shaping = {
            "models": sorted([p.model_id, p.weight] for p in participants),
            "threshold": settings.consensus_threshold,
            "max_iterations": settings.max_iterations,
            "min_models_required": settings.min_models_required,
            "source_validation": settings.enable_source_validation,
            "fallback": settings.fallback_to_single_model,
            "min_consensus_fraction": settings.min_consensus_fraction,
        }
        return f"{_hash(content)}:{_hash(shaping)}"

    def get(self, key: str) -> ConsensusResult | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at >= self._ttl_sec:
            del self._entries[key]
            logger.debug("Cache entry expired: %s", key[:16])
            return None
        self._entries.move_to_end(key)
        return result

    def put(self, key: str, result: ConsensusResult) -> None:
        if not result.success:
            logger.debug("Not caching unsuccessful consensus result")
            return
        self._entries[key] = (self._clock(), result)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted: %s", evicted[:16])
        self._persist()
