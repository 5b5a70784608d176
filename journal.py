"""
journal.py -- Local trading journal with running aggregates.

Append-only list of trade and analysis entries.  Aggregates (wins, losses,
total profit, win rate, ...) are recomputed by a full scan after every
mutation, and the journal is written to the local store under
`trading_journal_<name>` at the same time.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
import time
from typing import Any

from local_store import LocalStore, journal_key

logger = logging.getLogger(__name__)

_VALID_TYPES = {"TRADE", "ANALYSIS"}
_VALID_ACTIONS = {"WIN", "LOSS", "ANALYSIS_COMPLETE"}


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _to_opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _norm_upper(value: Any, valid: set[str], default: str) -> str:
    text = str(value or "").strip().upper()
    return text if text in valid else default


@dataclass
class JournalEntry:
    id: str
    timestamp: float
    type: str
    action: str
    stake: float = 0.0
    profit: float = 0.0
    market: str = ""
    strategy: str = ""
    contract_type: str = ""
    entry_price: float | None = None
    exit_price: float | None = None
    payout: float | None = None
    simulated: bool = False
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JournalStats:
    total_trades: int = 0
    total_wins: int = 0
    total_losses: int = 0
    total_profit: float = 0.0
    total_stake: float = 0.0
    win_rate: float = 0.0
    average_profit: float = 0.0
    runs: int = 0


class TradingJournal:
    def __init__(
        self,
        name: str = "autobot",
        *,
        store: LocalStore | None = None,
        limit: int = 1000,
    ) -> None:
        self.name = name
        self.store = store
        self.limit = max(10, int(limit))
        self._entries: list[JournalEntry] = []
        self._next_id = 1
        self._stats = JournalStats()
        self._load()

    # ------------------ Core API ------------------

    def add_entry(self, entry: dict[str, Any] | JournalEntry) -> JournalEntry:
        data = asdict(entry) if isinstance(entry, JournalEntry) else dict(entry)
        row = self._entry_from_dict(data)
        self._entries.append(row)
        if len(self._entries) > self.limit:
            self._entries = self._entries[-self.limit:]
        self._recompute()
        self._save()
        return row

    def record_trade(self, result, request, *, runs: int | None = None) -> JournalEntry:
        """Journal a settled executor TradeResult for its TradeRequest."""
        return self.add_entry({
            "type": "TRADE",
            "action": result.result,
            "stake": result.stake or request.stake,
            "profit": result.profit,
            "market": request.market,
            "strategy": request.strategy,
            "contract_type": request.contract_type,
            "entry_price": result.entry_spot,
            "exit_price": result.exit_spot,
            "payout": result.payout,
            "simulated": not result.authoritative,
            "details": {"contract_id": result.contract_id, "barrier": request.barrier},
        })

    def record_analysis(self, market: str, strategy: str, details: dict[str, Any] | None = None) -> JournalEntry:
        return self.add_entry({
            "type": "ANALYSIS",
            "action": "ANALYSIS_COMPLETE",
            "market": market,
            "strategy": strategy,
            "details": dict(details or {}),
        })

    def get_entries(self, limit: int | None = None) -> list[JournalEntry]:
        """The most recent *limit* entries (all when None), oldest first."""
        if limit is None:
            return list(self._entries)
        return self._entries[-limit:] if limit > 0 else []

    def clear(self) -> None:
        self._entries = []
        self._next_id = 1
        self._recompute()
        self._save()

    def stats(self) -> JournalStats:
        return self._stats

    # ------------------ Aggregates ------------------

    def _recompute(self) -> None:
        trades = [e for e in self._entries if e.type == "TRADE"]
        wins = sum(1 for e in trades if e.action == "WIN")
        losses = sum(1 for e in trades if e.action == "LOSS")
        total_profit = sum(e.profit for e in trades)
        total_stake = sum(e.stake for e in trades)
        n = len(trades)
        self._stats = JournalStats(
            total_trades=n,
            total_wins=wins,
            total_losses=losses,
            total_profit=round(total_profit, 2),
            total_stake=round(total_stake, 2),
            win_rate=(wins / n * 100.0) if n else 0.0,
            average_profit=(total_profit / n) if n else 0.0,
            runs=sum(1 for e in self._entries if e.type == "ANALYSIS"),
        )

    # ------------------ Snapshot ------------------

    def _entry_from_dict(self, data: dict[str, Any]) -> JournalEntry:
        entry_id = str(data.get("id") or "")
        if not entry_id:
            entry_id = f"{self.name}-{self._next_id}"
            self._next_id += 1
        return JournalEntry(
            id=entry_id,
            timestamp=_to_float(data.get("timestamp"), time.time()) or time.time(),
            type=_norm_upper(data.get("type"), _VALID_TYPES, "TRADE"),
            action=_norm_upper(data.get("action"), _VALID_ACTIONS, "LOSS"),
            stake=max(0.0, _to_float(data.get("stake"))),
            profit=_to_float(data.get("profit")),
            market=str(data.get("market") or ""),
            strategy=str(data.get("strategy") or ""),
            contract_type=str(data.get("contract_type") or ""),
            entry_price=_to_opt_float(data.get("entry_price")),
            exit_price=_to_opt_float(data.get("exit_price")),
            payout=_to_opt_float(data.get("payout")),
            simulated=bool(data.get("simulated", False)),
            details=dict(data.get("details") or {}),
        )

    def snapshot_state(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "entries": [asdict(e) for e in self._entries],
            "next_id": self._next_id,
            "stats": asdict(self._stats),
            "timestamp": time.time(),
        }

    def restore_state(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        self._entries = []
        saved_next = max(1, int(payload.get("next_id", 1) or 1))
        rows = payload.get("entries", [])
        if isinstance(rows, list):
            for row in rows:
                if not isinstance(row, dict):
                    continue
                self._entries.append(self._entry_from_dict(row))
        self._next_id = max(saved_next, len(self._entries) + 1)
        self._recompute()

    def _save(self) -> None:
        if self.store is not None:
            self.store.save(journal_key(self.name), self.snapshot_state())

    def _load(self) -> None:
        if self.store is None:
            return
        payload = self.store.load(journal_key(self.name))
        if payload:
            self.restore_state(payload)
            logger.info("Loaded journal %s (%d entries)", self.name, len(self._entries))
