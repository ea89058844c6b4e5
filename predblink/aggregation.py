# predblink/aggregation.py
"""
Derived views over stored events.

Everything here is a pure function over already-ordered rows: the store
decides ordering and bounds, this module folds and merges.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Iterable, List, Optional, Sequence, Tuple

from predblink.chain.events import MarketCreatedEvent, TradeEvent

# newYesPrice is 18-decimal fixed point; 1e16 units is one cent
PRICE_UNITS_PER_CENT = 10 ** 16
DEFAULT_PRICE_CENTS = 50
USDC_DECIMALS = 6
ACTIVITY_FEED_LIMIT = 50


@dataclass(frozen=True)
class PricePoint:
    block_number: int
    yes_price: int
    no_price: int
    is_yes: bool
    is_buy: bool
    amount: str
    trader: str


@dataclass(frozen=True)
class ActivityItem:
    kind: str  # TRADE or CREATE
    market_id: int
    user: str
    block_number: int
    log_index: int
    transaction_hash: str
    timestamp: Optional[str]
    market_type: Optional[int] = None
    question: Optional[str] = None
    is_yes: Optional[bool] = None
    is_buy: Optional[bool] = None
    amount: Optional[str] = None
    target_value: Optional[str] = None


def price_to_cents(new_yes_price: int) -> int:
    return new_yes_price // PRICE_UNITS_PER_CENT


def format_usdc(amount: int, places: int = 2) -> str:
    """Render a 6-decimal USDC integer amount with `places` decimals."""
    with localcontext() as ctx:
        # uint256 has up to 78 digits; the default 28-digit context would round
        ctx.prec = 100
        value = Decimal(amount).scaleb(-USDC_DECIMALS)
        return str(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


def build_price_history(trades: Iterable[TradeEvent]) -> List[PricePoint]:
    """Project each trade's post-trade price into a series point, in input order."""
    history = []
    for trade in trades:
        yes_cents = price_to_cents(trade.new_yes_price)
        history.append(PricePoint(
            block_number=trade.block_number,
            yes_price=yes_cents,
            no_price=100 - yes_cents,
            is_yes=trade.is_yes,
            is_buy=trade.is_buy,
            amount=format_usdc(trade.usdc_amount, 2),
            trader=trade.trader
        ))
    return history


def current_prices(history: Sequence[PricePoint]) -> Tuple[int, int]:
    """(yes, no) in cents after the last point; 50/50 with no trades."""
    if not history:
        return DEFAULT_PRICE_CENTS, 100 - DEFAULT_PRICE_CENTS
    last = history[-1]
    return last.yes_price, last.no_price


def _timestamp(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def trade_activity(trade: TradeEvent, market_type: Optional[int] = None,
                   question: Optional[str] = None) -> ActivityItem:
    return ActivityItem(
        kind='TRADE',
        market_id=trade.market_id,
        user=trade.trader,
        block_number=trade.block_number,
        log_index=trade.log_index,
        transaction_hash=trade.transaction_hash,
        timestamp=_timestamp(trade.indexed_at),
        market_type=market_type,
        question=question,
        is_yes=trade.is_yes,
        is_buy=trade.is_buy,
        amount=format_usdc(trade.usdc_amount, 0)
    )


def market_activity(market: MarketCreatedEvent) -> ActivityItem:
    return ActivityItem(
        kind='CREATE',
        market_id=market.market_id,
        user=market.creator,
        block_number=market.block_number,
        log_index=market.log_index,
        transaction_hash=market.transaction_hash,
        timestamp=_timestamp(market.indexed_at),
        market_type=market.market_type,
        question=market.question,
        target_value=str(market.target_value)
    )


def merge_activity(trades: Iterable[ActivityItem], markets: Iterable[ActivityItem],
                   limit: int = ACTIVITY_FEED_LIMIT) -> List[ActivityItem]:
    """Newest first by block, ties broken by descending log index."""
    merged = sorted(
        [*trades, *markets],
        key=lambda item: (item.block_number, item.log_index),
        reverse=True
    )
    return merged[:limit]
