"""
executor.py -- Turn a TradeRequest into a settled TradeResult.

Two implementations share one interface, execute_trade(request):

  LiveExecutor       proposal -> buy -> watch proposal_open_contract until
                     the contract is sold.  Only the broker decides the
                     outcome.  One trade in flight at a time.
  SimulatedExecutor  local random draw.  Every result carries
                     authoritative=False and is logged as SIMULATED; it is
                     never wired up in live mode.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
import time
from dataclasses import asdict, dataclass, replace
from typing import Any

import config
from errors import FeedError, TradeError

logger = logging.getLogger(__name__)

DIGIT_CONTRACTS = {"DIGITEVEN", "DIGITODD", "DIGITOVER", "DIGITUNDER", "DIGITDIFF", "DIGITMATCH"}
BARRIER_CONTRACTS = {"DIGITOVER", "DIGITUNDER", "DIGITDIFF", "DIGITMATCH"}
MIN_DIGIT_TICKS = 5


@dataclass(frozen=True)
class TradeRequest:
    market: str
    contract_type: str
    stake: float
    duration: int = 5
    duration_unit: str = "t"
    strategy: str = ""
    barrier: int | None = None
    currency: str = "USD"


@dataclass(frozen=True)
class TradeResult:
    success: bool
    contract_id: str = ""
    profit: float = 0.0
    result: str = ""
    stake: float = 0.0
    entry_spot: str | None = None
    exit_spot: str | None = None
    payout: float = 0.0
    authoritative: bool = True
    error: str = ""
    timestamp: float = 0.0

    @property
    def won(self) -> bool:
        return self.result == "WIN"

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_request(request: TradeRequest) -> TradeRequest:
    """Validate a request and force digit contracts onto a tick duration of at least 5."""
    ctype = str(request.contract_type or "").strip().upper()
    if ctype not in DIGIT_CONTRACTS:
        raise TradeError(f"unsupported contract type {request.contract_type!r}", code="InvalidRequest")
    if not request.market:
        raise TradeError("market is required", code="InvalidRequest")
    if not request.stake or request.stake <= 0:
        raise TradeError(f"stake must be positive (got {request.stake})", code="InvalidRequest")
    if ctype in BARRIER_CONTRACTS:
        if request.barrier is None or not 0 <= int(request.barrier) <= 9:
            raise TradeError(f"{ctype} needs a barrier digit 0-9", code="InvalidRequest")
    duration = max(MIN_DIGIT_TICKS, int(request.duration or MIN_DIGIT_TICKS))
    return replace(
        request,
        contract_type=ctype,
        stake=round(float(request.stake), 2),
        duration=duration,
        duration_unit="t",
    )


def proposal_params(request: TradeRequest) -> dict[str, Any]:
    params: dict[str, Any] = {
        "amount": request.stake,
        "basis": "stake",
        "contract_type": request.contract_type,
        "currency": request.currency,
        "duration": request.duration,
        "duration_unit": request.duration_unit,
        "symbol": request.market,
    }
    if request.contract_type in BARRIER_CONTRACTS:
        params["barrier"] = str(int(request.barrier))
    return params


def _spot(value: Any) -> str | None:
    return None if value is None else str(value)


class LiveExecutor:
    def __init__(self, client, *, settlement_timeout: float | None = None) -> None:
        self.client = client
        self.settlement_timeout = float(
            config.SETTLEMENT_TIMEOUT_SEC if settlement_timeout is None else settlement_timeout
        )
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def execute_trade(self, request: TradeRequest) -> TradeResult:
        """
        Place one contract and wait for the broker to settle it.

        Raises TradeError when a trade is already in flight, when the broker
        rejects the proposal or buy, or when settlement does not arrive in
        time (outcome ambiguous).  Transport failures surface as
        FeedConnectionError.
        """
        if self._busy:
            raise TradeError("another trade is still in flight", code="Busy")
        self._busy = True
        try:
            request = normalize_request(request)
            await self.client.connect()
            proposal = await self.client.proposal(proposal_params(request))
            proposal_id = proposal.get("id")
            if not proposal_id:
                raise TradeError("proposal returned no id", code="InvalidContractProposal")
            price = proposal.get("ask_price", request.stake)

            bought = await self.client.buy(proposal_id, price)
            contract_id = bought.get("contract_id")
            if not contract_id:
                raise TradeError("buy returned no contract id", code="ContractCreationFailure")
            logger.info(
                "Bought %s %s on %s (barrier=%s) stake=%.2f contract=%s",
                request.strategy or "-", request.contract_type, request.market,
                request.barrier, request.stake, contract_id,
            )
            contract = await self._await_settlement(contract_id)
        finally:
            self._busy = False

        profit = float(contract.get("profit") or 0.0)
        won = str(contract.get("status") or "").lower() == "won" or profit > 0
        result = TradeResult(
            success=True,
            contract_id=str(contract_id),
            profit=profit,
            result="WIN" if won else "LOSS",
            stake=request.stake,
            entry_spot=_spot(contract.get("entry_spot", contract.get("entry_tick"))),
            exit_spot=_spot(contract.get("exit_spot", contract.get("exit_tick"))),
            payout=float(contract.get("payout") or bought.get("payout") or 0.0),
            authoritative=True,
            timestamp=time.time(),
        )
        logger.info("Contract %s settled: %s %+.2f", contract_id, result.result, profit)
        return result

    async def _await_settlement(self, contract_id) -> dict:
        settled: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_update(msg: dict) -> None:
            contract = msg.get("proposal_open_contract") or {}
            if contract.get("is_sold") and not settled.done():
                settled.set_result(contract)

        sub_id = await self.client.subscribe_contract(contract_id, on_update)
        try:
            return await asyncio.wait_for(settled, timeout=self.settlement_timeout)
        except asyncio.TimeoutError as e:
            raise TradeError(
                f"contract {contract_id} not settled after {self.settlement_timeout:.0f}s "
                "-- outcome unknown, check the broker statement",
                code="SettlementTimeout",
            ) from e
        finally:
            try:
                await self.client.forget(sub_id)
            except FeedError as e:
                logger.warning("Could not unsubscribe contract %s: %s", contract_id, e)


class SimulatedExecutor:
    """Local coin-flip settlement.  Results are labelled non-authoritative."""

    def __init__(
        self,
        *,
        win_probability: float | None = None,
        payout_ratio: float | None = None,
        rng: random.Random | None = None,
        settle_delay: float = 0.0,
    ) -> None:
        self.win_probability = float(
            config.SIM_WIN_PROBABILITY if win_probability is None else win_probability
        )
        self.payout_ratio = float(config.SIM_PAYOUT_RATIO if payout_ratio is None else payout_ratio)
        self.rng = rng or random.Random()
        # seconds a simulated contract stays open before it settles
        self.settle_delay = max(0.0, float(settle_delay))
        self._ids = itertools.count(1)
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def execute_trade(self, request: TradeRequest) -> TradeResult:
        if self._busy:
            raise TradeError("another trade is still in flight", code="Busy")
        self._busy = True
        try:
            request = normalize_request(request)
            if self.settle_delay:
                await asyncio.sleep(self.settle_delay)
            won = self.rng.random() < self.win_probability
        finally:
            self._busy = False
        payout = round(request.stake * self.payout_ratio, 2) if won else 0.0
        profit = round(payout - request.stake, 2)
        result = TradeResult(
            success=True,
            contract_id=f"SIM-{next(self._ids)}",
            profit=profit,
            result="WIN" if won else "LOSS",
            stake=request.stake,
            payout=payout,
            authoritative=False,
            timestamp=time.time(),
        )
        logger.info(
            "[SIMULATED] %s %s on %s stake=%.2f -> %s %+.2f (not a broker result)",
            request.strategy or "-", request.contract_type, request.market,
            request.stake, result.result, profit,
        )
        return result


def build_executor(mode: str | None = None, client=None):
    mode = (mode or config.EXECUTION_MODE).strip().lower()
    if mode == "live":
        if client is None:
            raise ValueError("live execution needs a broker client")
        return LiveExecutor(client)
    return SimulatedExecutor()
