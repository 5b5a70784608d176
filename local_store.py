"""
local_store.py -- Local-first JSON key/value persistence.

One file per key under config.STATE_DIR.  Every write is atomic (write tmp
then rename) and stamps `lastUpdated` so stale data can be evicted.

Storage is best effort: read and write failures are logged as warnings and
the caller gets its in-memory default back.  Nothing here raises.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any

import config

logger = logging.getLogger(__name__)

MARKETS_CACHE_KEY = "markets_cache"

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]+")


def market_data_key(symbol: str) -> str:
    return f"market_data_{symbol}"


def session_key(strategy: str, market: str) -> str:
    return f"session_{strategy}_{market}"


def journal_key(name: str) -> str:
    return f"trading_journal_{name}"


class LocalStore:
    def __init__(self, state_dir: str | None = None, *, clock=time.time) -> None:
        self.state_dir = state_dir or config.STATE_DIR
        self._clock = clock

    def _path(self, key: str) -> str:
        return os.path.join(self.state_dir, _SAFE_KEY.sub("_", key) + ".json")

    # ------------------ Core API ------------------

    def save(self, key: str, value: dict[str, Any]) -> bool:
        """Write *value* under *key*.  Returns False (and warns) on failure."""
        payload = dict(value)
        payload["lastUpdated"] = self._clock()
        path = self._path(key)
        tmp_path = path + ".tmp"
        try:
            os.makedirs(self.state_dir, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=str)
            os.replace(tmp_path, path)
            logger.debug("Stored %s", key)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to store %s: %s", key, e)
            return False

    def load(self, key: str, default: Any = None, *, max_age: float | None = None) -> Any:
        """
        Read *key*.  Missing, unreadable or older-than-*max_age* entries
        return *default*.
        """
        path = self._path(key)
        if not os.path.exists(path):
            return default
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read %s: %s -- using defaults", key, e)
            return default
        if not isinstance(payload, dict):
            logger.warning("Ignoring malformed %s (not an object)", key)
            return default
        if max_age is not None and self.age(payload) > max_age:
            logger.info("%s is older than %.0fs -- ignoring", key, max_age)
            return default
        return payload

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete %s: %s", key, e)

    def keys(self) -> list[str]:
        try:
            names = os.listdir(self.state_dir)
        except OSError:
            return []
        return sorted(n[:-5] for n in names if n.endswith(".json"))

    def age(self, payload: dict[str, Any]) -> float:
        stamp = payload.get("lastUpdated", payload.get("timestamp"))
        try:
            return max(0.0, self._clock() - float(stamp))
        except (TypeError, ValueError):
            return float("inf")

    def evict_stale(self, max_age: float | None = None) -> list[str]:
        """Delete every entry older than *max_age* (default 24h).  Returns the evicted keys."""
        limit = config.STALE_DATA_MAX_AGE_SEC if max_age is None else float(max_age)
        evicted = []
        for key in self.keys():
            payload = self.load(key)
            if payload is None or self.age(payload) > limit:
                self.delete(key)
                evicted.append(key)
        if evicted:
            logger.info("Evicted %d stale entries: %s", len(evicted), ", ".join(evicted))
        return evicted

    # ------------------ Market metadata ------------------

    def save_markets(self, markets: list[dict]) -> bool:
        return self.save(MARKETS_CACHE_KEY, {"markets": list(markets), "timestamp": self._clock()})

    def load_markets(self, ttl: float | None = None) -> list[dict] | None:
        """Cached active_symbols list, or None once older than the TTL (1h)."""
        ttl = config.MARKET_CACHE_TTL_SEC if ttl is None else float(ttl)
        payload = self.load(MARKETS_CACHE_KEY, max_age=ttl)
        if payload is None:
            return None
        markets = payload.get("markets")
        return list(markets) if isinstance(markets, list) else None
