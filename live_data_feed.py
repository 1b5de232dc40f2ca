#!/usr/bin/env python3
"""
Opportunity source and risk-signal provider.

Live feeds (fetched concurrently per cycle):
- Sanctum   GET {sanctum_url}/v1/apy/latest   -> LST APYs (percent)
- Kamino    GET {kamino_url}/strategies       -> lending/LP vaults
- Jupiter   GET {jupiter_price_url}/price     -> SOL / LST prices

Every feed is validated at this boundary and comes back as a tagged
FeedResult: status "live" with parsed records, or "fallback" with the
hard-coded table below plus the error text. Scoring code only ever sees
YieldOpportunity records.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiohttp

from agent_config import get_section
from errors import DataUnavailable
from logging_utils import get_logger
from risk_manager import RegimeSignals
from yield_scanner import YieldOpportunity, merge_opportunities

FEED_LIVE = "live"
FEED_FALLBACK = "fallback"
FEED_STATIC = "static"

_FEED_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError, KeyError)

LST_MINTS: Dict[str, str] = {
    "J1toso1uCk3RLmjorhTtrVwY9HJ7X8V9yYac6Y7kGCPn": "JitoSOL",
    "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So": "mSOL",
    "bSo13r4TkiE4xumBojwQ4o6Aeok8HA5EoqmhJFs1Ffk": "bSOL",
    "5oVNBeEEQvYi1cX3ir8Dx5n1P7pdxydbGF2X4TxVusJm": "INF",
}
PRICE_IDS: Dict[str, str] = {
    "SOL": "SOL",
    "JitoSOL": "J1toso1uCk3RLmjorhTtrVwY9HJ7X8V9yYac6Y7kGCPn",
    "mSOL": "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So",
    "bSOL": "bSo13r4TkiE4xumBojwQ4o6Aeok8HA5EoqmhJFs1Ffk",
}
VAULT_TOKENS = frozenset({"SOL", "JitoSOL", "mSOL"})
DEFAULT_LST_APY = 0.08

LST_STRATEGY = "Liquid Staking"
LST_ASSET = "SOL"
VAULT_PROTOCOL = "Kamino"

_log = get_logger("live_data_feed")


# =============================================================================
# Boundary records
# =============================================================================

@dataclass(frozen=True)
class LstQuote:
    symbol: str
    mint: str
    apy: float
    price: float = 0.0
    tvl: float = 0.0


@dataclass(frozen=True)
class VaultQuote:
    id: str
    name: str
    strategy: str
    apy: float
    tvl: float
    token: str
    risk: str


@dataclass(frozen=True)
class FeedResult:
    """Tagged outcome of one feed: live data or fallback data + error."""
    source: str
    status: str
    data: Any
    error: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.status == FEED_FALLBACK


@dataclass(frozen=True)
class OpportunityScan:
    opportunities: Tuple[YieldOpportunity, ...]
    feeds: Dict[str, str] = field(default_factory=dict)  # source -> status

    @property
    def fallback_sources(self) -> List[str]:
        return sorted(name for name, status in self.feeds.items() if status == FEED_FALLBACK)


FALLBACK_LSTS: Tuple[LstQuote, ...] = (
    LstQuote("JitoSOL", "J1toso1uCk3RLmjorhTtrVwY9HJ7X8V9yYac6Y7kGCPn", 0.08, 240.0, 500_000_000.0),
    LstQuote("mSOL", "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So", 0.07, 235.0, 450_000_000.0),
    LstQuote("bSOL", "bSo13r4TkiE4xumBojwQ4o6Aeok8HA5EoqmhJFs1Ffk", 0.065, 230.0, 200_000_000.0),
    LstQuote("INF", "5oVNBeEEQvYi1cX3ir8Dx5n1P7pdxydbGF2X4TxVusJm", 0.10, 250.0, 50_000_000.0),
)
FALLBACK_VAULTS: Tuple[VaultQuote, ...] = (
    VaultQuote("1", "JitoSOL Lending", "Lending", 0.12, 50_000_000.0, "JitoSOL", "low"),
    VaultQuote("2", "mSOL Lending", "Lending", 0.10, 45_000_000.0, "mSOL", "low"),
)
FALLBACK_PRICES: Dict[str, float] = {
    "SOL": 220.0,
    "JitoSOL": 240.0,
    "mSOL": 235.0,
    "bSOL": 230.0,
}


# =============================================================================
# Parsing (boundary validation)
# =============================================================================

def _as_float(value: Any, default: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return float(default)
    return out if math.isfinite(out) else float(default)


def vault_risk_tier(apy: float) -> str:
    if apy > 0.15:
        return "high"
    if apy > 0.10:
        return "medium"
    return "low"


def parse_sanctum_apys(payload: Any) -> List[LstQuote]:
    """Map Sanctum `{mint: {apy: pct}}` (or `{"apys": {mint: pct}}`) to LST quotes."""
    if isinstance(payload, Mapping) and isinstance(payload.get("apys"), Mapping):
        payload = payload["apys"]
    if not isinstance(payload, Mapping):
        raise ValueError(f"Sanctum payload must be a mapping, got {type(payload).__name__}")
    quotes = []
    for mint, entry in payload.items():
        symbol = LST_MINTS.get(str(mint))
        if not symbol:
            continue
        raw = entry.get("apy") if isinstance(entry, Mapping) else entry
        if isinstance(raw, (int, float)) and not isinstance(raw, bool) and math.isfinite(raw) and raw >= 0:
            apy = float(raw) / 100.0
        else:
            _log.warning(f"Sanctum APY for {symbol} is invalid ({raw!r}); using default {DEFAULT_LST_APY * 100:.1f}%")
            apy = DEFAULT_LST_APY
        quotes.append(LstQuote(symbol=symbol, mint=str(mint), apy=apy))
    if not quotes:
        raise ValueError("Sanctum payload contained no known LST mints")
    return sorted(quotes, key=lambda q: q.apy, reverse=True)


def parse_kamino_strategies(payload: Any, *, min_apy: float, max_vaults: int) -> List[VaultQuote]:
    if not isinstance(payload, list):
        raise ValueError(f"Kamino payload must be a list, got {type(payload).__name__}")
    vaults = []
    for idx, row in enumerate(payload):
        if not isinstance(row, Mapping):
            _log.warning(f"Dropping malformed Kamino strategy row {idx}: {type(row).__name__}")
            continue
        token = str(row.get("token") or "")
        apy = _as_float(row.get("apy"), -1.0)
        if token not in VAULT_TOKENS or apy <= min_apy:
            continue
        vaults.append(
            VaultQuote(
                id=str(row.get("id") or ""),
                name=str(row.get("name") or f"{token} Vault"),
                strategy=str(row.get("strategyType") or "Lending"),
                apy=apy,
                tvl=max(0.0, _as_float(row.get("tvl"), 0.0)),
                token=token,
                risk=vault_risk_tier(apy),
            )
        )
        if len(vaults) >= max_vaults:
            break
    return vaults


def parse_jupiter_prices(payload: Any) -> Dict[str, float]:
    data = payload.get("data") if isinstance(payload, Mapping) else None
    if not isinstance(data, Mapping):
        raise ValueError("Jupiter price payload missing `data` mapping")
    prices = {}
    for symbol, price_id in PRICE_IDS.items():
        entry = data.get(price_id)
        price = _as_float(entry.get("price") if isinstance(entry, Mapping) else None, 0.0)
        prices[symbol] = price if price > 0 else FALLBACK_PRICES[symbol]
    return prices


def lst_to_opportunity(quote: LstQuote) -> YieldOpportunity:
    return YieldOpportunity(
        protocol=quote.symbol,
        strategy=LST_STRATEGY,
        asset=LST_ASSET,
        apy=quote.apy,
        tvl=quote.tvl,
        risk="low",
        opportunity_type="liquid-staking",
    )


def vault_to_opportunity(vault: VaultQuote) -> YieldOpportunity:
    return YieldOpportunity(
        protocol=VAULT_PROTOCOL,
        strategy=vault.name,
        asset=vault.token,
        apy=vault.apy,
        tvl=vault.tvl,
        risk=vault.risk,
        opportunity_type="vault",
    )


# =============================================================================
# HTTP
# =============================================================================

async def fetch_json(
    session: aiohttp.ClientSession,
    url: str,
    *,
    method: str = "GET",
    params: Optional[Dict[str, Any]] = None,
    payload: Optional[Dict[str, Any]] = None,
    timeout_s: float = 10.0,
) -> Any:
    """Request a JSON document; non-200 responses raise aiohttp.ClientResponseError."""
    async with session.request(
        method,
        url,
        params=params,
        json=payload,
        timeout=aiohttp.ClientTimeout(total=timeout_s),
    ) as resp:
        resp.raise_for_status()
        return await resp.json(content_type=None)


# =============================================================================
# Opportunity sources
# =============================================================================

class StaticOpportunitySource:
    """Fixed opportunity list (tests, backtests, offline runs)."""

    def __init__(self, opportunities: Sequence[YieldOpportunity]):
        self.opportunities = tuple(opportunities)

    async def fetch_opportunities(self) -> OpportunityScan:
        return OpportunityScan(opportunities=self.opportunities, feeds={"static": FEED_STATIC})


class LiveOpportunitySource:
    """Sanctum + Kamino + Jupiter with per-feed fallback tables."""

    def __init__(self, feed_cfg: Optional[Dict[str, Any]] = None):
        self.cfg = dict(feed_cfg) if feed_cfg is not None else get_section("data_feed")
        self.timeout_s = float(self.cfg.get("timeout_seconds", 10.0))
        self.log = get_logger("live_data_feed")

    def _fallback(self, source: str, data: Any, exc: BaseException) -> FeedResult:
        self.log.warning(f"{source} feed unavailable, using fallback data: {exc}")
        return FeedResult(source=source, status=FEED_FALLBACK, data=data, error=str(exc) or type(exc).__name__)

    async def fetch_lst_apys(self, session: aiohttp.ClientSession) -> FeedResult:
        url = f"{str(self.cfg['sanctum_url']).rstrip('/')}/v1/apy/latest"
        try:
            payload = await fetch_json(session, url, timeout_s=self.timeout_s)
            return FeedResult(source="sanctum", status=FEED_LIVE, data=parse_sanctum_apys(payload))
        except _FEED_ERRORS as exc:
            return self._fallback("sanctum", list(FALLBACK_LSTS), exc)

    async def fetch_kamino_vaults(self, session: aiohttp.ClientSession) -> FeedResult:
        url = f"{str(self.cfg['kamino_url']).rstrip('/')}/strategies"
        try:
            payload = await fetch_json(session, url, timeout_s=self.timeout_s)
            vaults = parse_kamino_strategies(
                payload,
                min_apy=float(self.cfg.get("min_vault_apy", 0.05)),
                max_vaults=int(self.cfg.get("max_vaults", 5)),
            )
            return FeedResult(source="kamino", status=FEED_LIVE, data=vaults)
        except _FEED_ERRORS as exc:
            return self._fallback("kamino", list(FALLBACK_VAULTS), exc)

    async def fetch_prices(self, session: aiohttp.ClientSession) -> FeedResult:
        url = f"{str(self.cfg['jupiter_price_url']).rstrip('/')}/price"
        try:
            payload = await fetch_json(
                session,
                url,
                params={"ids": ",".join(PRICE_IDS.values())},
                timeout_s=self.timeout_s,
            )
            return FeedResult(source="jupiter", status=FEED_LIVE, data=parse_jupiter_prices(payload))
        except _FEED_ERRORS as exc:
            return self._fallback("jupiter", dict(FALLBACK_PRICES), exc)

    @staticmethod
    def _enrich_prices(lsts: Sequence[LstQuote], prices: Mapping[str, float]) -> List[LstQuote]:
        sol = prices.get("SOL", FALLBACK_PRICES["SOL"])
        out = []
        for q in lsts:
            price = q.price or prices.get(q.symbol) or sol * (1 + q.apy * 0.1)
            out.append(LstQuote(q.symbol, q.mint, q.apy, price, q.tvl))
        return out

    async def fetch_opportunities(self) -> OpportunityScan:
        """Fan out all feeds, wait for every one to settle, merge into one list."""
        async with aiohttp.ClientSession() as session:
            lst_res, vault_res, price_res = await asyncio.gather(
                self.fetch_lst_apys(session),
                self.fetch_kamino_vaults(session),
                self.fetch_prices(session),
            )
        lsts = self._enrich_prices(lst_res.data, price_res.data)
        opportunities = merge_opportunities(
            [lst_to_opportunity(q) for q in lsts],
            [vault_to_opportunity(v) for v in vault_res.data],
        )
        feeds = {r.source: r.status for r in (lst_res, vault_res, price_res)}
        self.log.info(
            f"Scanned {len(opportunities)} opportunities "
            f"(LST={len(lsts)}, vaults={len(vault_res.data)}, feeds={feeds})"
        )
        return OpportunityScan(opportunities=tuple(opportunities), feeds=feeds)


# =============================================================================
# Risk signal providers
# =============================================================================

class StaticSignalProvider:
    def __init__(self, volatility_index: float = 18.0, network_tps: float = 3500.0, lst_spread: float = 0.001):
        self.signals = RegimeSignals(
            volatility_index=volatility_index,
            network_tps=network_tps,
            lst_spread=lst_spread,
        )

    async def fetch_signals(self) -> RegimeSignals:
        return self.signals


class LiveSignalProvider:
    """Network throughput from Solana RPC; volatility and spread from config."""

    SAMPLE_COUNT = 5

    def __init__(self, feed_cfg: Optional[Dict[str, Any]] = None):
        self.cfg = dict(feed_cfg) if feed_cfg is not None else get_section("data_feed")
        self.timeout_s = float(self.cfg.get("timeout_seconds", 10.0))
        self.log = get_logger("signal_feed")

    @staticmethod
    def parse_performance_samples(payload: Any) -> float:
        samples = payload.get("result") if isinstance(payload, Mapping) else None
        if not isinstance(samples, list) or not samples:
            raise ValueError("RPC getRecentPerformanceSamples returned no samples")
        txs = 0.0
        secs = 0.0
        for s in samples:
            if not isinstance(s, Mapping):
                continue
            txs += _as_float(s.get("numTransactions"), 0.0)
            secs += _as_float(s.get("samplePeriodSecs"), 0.0)
        if secs <= 0:
            raise ValueError("RPC performance samples have no elapsed time")
        return txs / secs

    async def fetch_network_tps(self, session: aiohttp.ClientSession) -> float:
        payload = await fetch_json(
            session,
            str(self.cfg["solana_rpc_url"]),
            method="POST",
            payload={
                "jsonrpc": "2.0",
                "id": 1,
                "method": "getRecentPerformanceSamples",
                "params": [self.SAMPLE_COUNT],
            },
            timeout_s=self.timeout_s,
        )
        return self.parse_performance_samples(payload)

    async def fetch_signals(self) -> RegimeSignals:
        try:
            async with aiohttp.ClientSession() as session:
                tps = await self.fetch_network_tps(session)
        except _FEED_ERRORS as exc:
            raise DataUnavailable(f"network throughput unavailable: {str(exc) or type(exc).__name__}") from exc
        return RegimeSignals(
            volatility_index=float(self.cfg.get("volatility_index", 18.0)),
            network_tps=tps,
            lst_spread=float(self.cfg.get("lst_spread", 0.001)),
        )
