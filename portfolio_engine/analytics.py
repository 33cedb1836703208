"""
Position analytics reconstructed from transaction history and daily prices.

The log-text heuristics live in ``extract_fee_events`` and
``detect_rebalance_events`` only; the daily return pipeline never reads logs.
"""
import math
import re
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional
import pandas as pd
import structlog

from .models import (
    DailyReturn, FeeSummary, Position, PositionAnalytics, PricePoint,
    PriceRange, RebalanceEvent, TransactionRecord
)

logger = structlog.get_logger()

FEE_PATTERN = re.compile(r"Fee:\s*\$?(\d+(?:\.\d+)?)")
REWARD_MARKER = re.compile(r"Harvest|Reward")
NUMBER = re.compile(r"\d+(?:\.\d+)?")
REBALANCE_MARKER = "Rebalance"


def extract_fee_events(logs: Iterable[str]) -> FeeSummary:
    """Sum fees paid and rewards earned from transaction log lines.

    ``Fee: <n>`` counts as paid; a line mentioning Harvest or Reward followed
    by a number counts as earned. Anything else is ignored.
    """
    summary = FeeSummary()
    for line in logs:
        fee = FEE_PATTERN.search(line)
        if fee:
            summary.paid += float(fee.group(1))
            continue

        marker = REWARD_MARKER.search(line)
        if marker:
            amount = NUMBER.search(line, marker.end())
            if amount:
                summary.earned += float(amount.group(0))
    return summary


def detect_rebalance_events(transactions: Iterable[TransactionRecord]) -> List[RebalanceEvent]:
    events = []
    for tx in transactions:
        line = next((log for log in tx.logs if REBALANCE_MARKER in log), None)
        if line is not None:
            events.append(RebalanceEvent(timestamp=tx.timestamp, cost=tx.fee, description=line))
    return events


def impermanent_loss(r0: float, r1: float) -> float:
    """Impermanent loss in percent for price ratios ``r0`` and ``r1``"""
    return abs(2 * math.sqrt(r0 * r1) / (r0 + r1) - 1) * 100


def daily_price_frame(historical_prices: Dict[str, List[PricePoint]]) -> pd.DataFrame:
    """Last observed price per calendar day (UTC), one column per symbol"""
    columns = {}
    for symbol, points in historical_prices.items():
        if not points:
            continue
        series = pd.Series(
            [point.price for point in points],
            index=pd.to_datetime([point.timestamp for point in points], utc=True)
        ).sort_index()
        columns[symbol] = series.groupby(series.index.date).last()

    if not columns:
        return pd.DataFrame()
    return pd.DataFrame(columns).sort_index()


def _price(frame: pd.DataFrame, day: date, symbol: str) -> Optional[float]:
    if symbol not in frame.columns or day not in frame.index:
        return None
    value = frame.at[day, symbol]
    if pd.isna(value):
        return None
    return float(value)


def _price_on_or_before(frame: pd.DataFrame, day: date, symbol: str) -> Optional[float]:
    if symbol not in frame.columns:
        return None
    series = frame[symbol].dropna()
    earlier = series[[d <= day for d in series.index]]
    if earlier.empty:
        return None
    return float(earlier.iloc[-1])


def _latest_price(frame: pd.DataFrame, symbol: str) -> Optional[float]:
    if symbol not in frame.columns:
        return None
    series = frame[symbol].dropna()
    return float(series.iloc[-1]) if not series.empty else None


def _daily_deltas(transactions: List[TransactionRecord]) -> Dict[date, Dict[str, float]]:
    deltas: Dict[date, Dict[str, float]] = {}
    for tx in transactions:
        if not tx.succeeded:
            continue
        day_deltas = deltas.setdefault(tx.timestamp.date(), {})
        for symbol, amount in tx.token_deltas.items():
            day_deltas[symbol] = day_deltas.get(symbol, 0.0) + amount
    return deltas


def _valuation(amounts: Dict[str, float], borrowed: Dict[str, float],
               frame: pd.DataFrame, day: date) -> Optional[float]:
    value = 0.0
    for symbol, amount in amounts.items():
        if amount == 0:
            continue
        price = _price(frame, day, symbol)
        if price is None:
            return None
        value += amount * price
    for symbol, amount in borrowed.items():
        price = _price(frame, day, symbol)
        if price is None:
            return None
        value -= amount * price
    return value


def _deposit_value(day_deltas: Dict[str, float], frame: pd.DataFrame, day: date) -> float:
    value = 0.0
    for symbol, amount in day_deltas.items():
        if amount <= 0:
            continue
        price = _price(frame, day, symbol)
        if price is None:
            price = _price_on_or_before(frame, day, symbol)
        if price is None:
            logger.warning("Deposit has no price, baseline left unchanged", symbol=symbol, day=str(day))
            continue
        value += amount * price
    return value


def analyze_position(position: Position, transactions: List[TransactionRecord],
                     historical_prices: Dict[str, List[PricePoint]],
                     borrowed: Optional[Dict[str, float]] = None) -> PositionAnalytics:
    transactions = sorted(transactions, key=lambda tx: tx.timestamp)
    borrowed = position.borrowed_amounts() if borrowed is None else borrowed
    current = position.held_amounts()
    frame = daily_price_frame(historical_prices)

    # Wallet-wide history also moves tokens that never belong to this position
    legs = sorted({token.symbol for sub in position.positions for token in sub.tokens})
    tracked = set(current) | set(borrowed) | set(legs)
    deltas = {
        day: {symbol: amount for symbol, amount in day_deltas.items() if symbol in tracked}
        for day, day_deltas in _daily_deltas(transactions).items()
    }

    created_day = position.created_at.date()
    start = min([created_day] + [tx.timestamp.date() for tx in transactions])
    end_candidates = [start] + [tx.timestamp.date() for tx in transactions] + list(frame.index)
    end = max(end_candidates)
    days = [start + timedelta(days=offset) for offset in range((end - start).days + 1)]

    # Walk backwards from today's holdings, undoing each day's deltas
    holdings: Dict[date, Dict[str, float]] = {}
    running = dict(current)
    for day in reversed(days):
        holdings[day] = dict(running)
        for symbol, amount in deltas.get(day, {}).items():
            running[symbol] = running.get(symbol, 0.0) - amount

    if position.initial_investment is not None:
        baseline, baseline_day = position.initial_investment, created_day
    else:
        # Unreported cost basis: value the reconstructed holdings on the first priced day
        baseline, baseline_day = 0.0, None
        for day in days:
            opening = _valuation(holdings[day], borrowed, frame, day)
            if opening is not None:
                baseline, baseline_day = opening, day
                break

    if baseline_day is not None:
        for day in days:
            if day > baseline_day:
                baseline += _deposit_value(deltas.get(day, {}), frame, day)

    daily_returns: List[DailyReturn] = []

    for prev_day, day in zip(days, days[1:]):
        prev_held = holdings[prev_day]
        day_deltas = deltas.get(day, {})
        symbols = {s for s, a in prev_held.items() if a} | set(borrowed) | set(day_deltas)

        prev_prices = {s: _price(frame, prev_day, s) for s in symbols}
        prices = {s: _price(frame, day, s) for s in symbols}
        if any(p is None for p in prev_prices.values()) or any(p is None for p in prices.values()):
            continue

        movement = {s: prices[s] - prev_prices[s] for s in symbols}
        change = sum(movement[s] * prev_held.get(s, 0.0) for s in symbols)
        change -= sum(movement[s] * amount for s, amount in borrowed.items())
        change -= sum(-amount * prices[s] for s, amount in day_deltas.items() if amount < 0)

        prev_value = _valuation(prev_held, borrowed, frame, prev_day)
        value = _valuation(holdings[day], borrowed, frame, day)
        if prev_value is None or value is None:
            continue

        daily_returns.append(DailyReturn(
            day=day,
            value=value,
            value_change=change,
            return_rate=change / prev_value * 100 if prev_value > 0 else 0.0
        ))

    fees = FeeSummary()
    for tx in transactions:
        tx_fees = extract_fee_events(tx.logs)
        fees.paid += tx_fees.paid
        fees.earned += tx_fees.earned

    il = None
    if len(legs) == 2:
        ratios = []
        for symbol in legs:
            initial = _price_on_or_before(frame, created_day, symbol)
            latest = _latest_price(frame, symbol)
            if initial is None or latest is None or initial <= 0:
                ratios = None
                break
            ratios.append(latest / initial)
        if ratios:
            il = impermanent_loss(*ratios)

    price_ranges = {}
    for symbol in current:
        if symbol not in frame.columns:
            continue
        window = frame[symbol][[start <= d <= end for d in frame.index]].dropna()
        if window.empty:
            continue
        price_ranges[symbol] = PriceRange(
            min=float(window.min()), max=float(window.max()), current=float(window.iloc[-1])
        )

    total_return_rate = (
        (position.investment_value - baseline) / baseline * 100 if baseline > 0 else 0.0
    )

    logger.info("Position analytics computed", strategy_id=position.strategy_id,
                days=len(daily_returns), transactions=len(transactions))

    return PositionAnalytics(
        strategy_id=position.strategy_id,
        daily_returns=daily_returns,
        impermanent_loss=il,
        fees=fees,
        rebalance_events=detect_rebalance_events(transactions),
        price_ranges=price_ranges,
        total_return_rate=total_return_rate
    )
