# predblink/chain/events.py
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from predblink.chain.abi_decoder import AbiParam, EventShape, decode_log
from predblink.chain.rpc_client import RawLog
from predblink.errors import DecodeError

MAX_BIGINT = 2 ** 63 - 1

# PredBlink.sol events
TRADE = EventShape("Trade", (
    AbiParam("marketId", "uint256", indexed=True),
    AbiParam("trader", "address", indexed=True),
    AbiParam("isYes", "bool"),
    AbiParam("isBuy", "bool"),
    AbiParam("usdcAmount", "uint256"),
    AbiParam("shares", "uint256"),
    AbiParam("newYesPrice", "uint256"),
))

MARKET_CREATED = EventShape("MarketCreated", (
    AbiParam("id", "uint256", indexed=True),
    AbiParam("marketType", "uint8", indexed=True),
    AbiParam("feedId", "bytes32"),
    AbiParam("question", "string"),
    AbiParam("targetValue", "uint256"),
    AbiParam("endTime", "uint256"),
    AbiParam("endBlock", "uint256"),
    AbiParam("creator", "address"),
))

RESOLVED = EventShape("Resolved", (
    AbiParam("marketId", "uint256", indexed=True),
    AbiParam("outcome", "uint8"),
    AbiParam("finalValue", "uint256"),
))

CLAIMED = EventShape("Claimed", (
    AbiParam("marketId", "uint256", indexed=True),
    AbiParam("user", "address", indexed=True),
    AbiParam("payout", "uint256"),
))

VOIDED = EventShape("Voided", (
    AbiParam("marketId", "uint256", indexed=True),
))


@dataclass(frozen=True)
class TradeEvent:
    market_id: int
    trader: str
    is_yes: bool
    is_buy: bool
    usdc_amount: int
    shares: int
    new_yes_price: int
    transaction_hash: str
    block_number: int
    log_index: int = 0
    indexed_at: Optional[datetime] = None


@dataclass(frozen=True)
class MarketCreatedEvent:
    market_id: int
    market_type: int
    feed_id: str
    question: str
    target_value: int
    end_time: int
    end_block: int
    creator: str
    transaction_hash: str
    block_number: int
    log_index: int = 0
    indexed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ResolutionEvent:
    market_id: int
    outcome: int
    final_value: int
    transaction_hash: str
    block_number: int
    log_index: int = 0
    indexed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ClaimEvent:
    market_id: int
    user: str
    payout: int
    transaction_hash: str
    block_number: int
    log_index: int = 0
    indexed_at: Optional[datetime] = None


@dataclass(frozen=True)
class VoidEvent:
    market_id: int
    transaction_hash: str
    block_number: int
    log_index: int = 0
    indexed_at: Optional[datetime] = None


EventRecord = Union[TradeEvent, MarketCreatedEvent, ResolutionEvent, ClaimEvent, VoidEvent]


def _bigint(values: Dict[str, Any], name: str) -> int:
    value = values[name]
    if value > MAX_BIGINT:
        raise DecodeError(f"{name}={value} exceeds the storable integer range")
    return value


def _provenance(log: RawLog) -> Dict[str, Any]:
    return {
        "transaction_hash": log.transaction_hash,
        "block_number": log.block_number,
        "log_index": log.log_index,
    }


def _build_trade(v: Dict[str, Any], log: RawLog) -> TradeEvent:
    return TradeEvent(
        market_id=_bigint(v, "marketId"),
        trader=v["trader"],
        is_yes=v["isYes"],
        is_buy=v["isBuy"],
        usdc_amount=v["usdcAmount"],
        shares=v["shares"],
        new_yes_price=v["newYesPrice"],
        **_provenance(log)
    )


def _build_market(v: Dict[str, Any], log: RawLog) -> MarketCreatedEvent:
    return MarketCreatedEvent(
        market_id=_bigint(v, "id"),
        market_type=v["marketType"],
        feed_id=v["feedId"],
        question=v["question"],
        target_value=v["targetValue"],
        end_time=_bigint(v, "endTime"),
        end_block=_bigint(v, "endBlock"),
        creator=v["creator"],
        **_provenance(log)
    )


def _build_resolution(v: Dict[str, Any], log: RawLog) -> ResolutionEvent:
    return ResolutionEvent(
        market_id=_bigint(v, "marketId"),
        outcome=v["outcome"],
        final_value=v["finalValue"],
        **_provenance(log)
    )


def _build_claim(v: Dict[str, Any], log: RawLog) -> ClaimEvent:
    return ClaimEvent(
        market_id=_bigint(v, "marketId"),
        user=v["user"],
        payout=v["payout"],
        **_provenance(log)
    )


def _build_void(v: Dict[str, Any], log: RawLog) -> VoidEvent:
    return VoidEvent(market_id=_bigint(v, "marketId"), **_provenance(log))


@dataclass(frozen=True)
class EventKind:
    """One row of the signature table: which shape, how to build the record."""

    key: str
    shape: EventShape
    build: Callable[[Dict[str, Any], RawLog], EventRecord]

    @property
    def topic0(self) -> str:
        return self.shape.topic0

    def decode(self, log: RawLog) -> EventRecord:
        return self.build(decode_log(log.topics, log.data, self.shape), log)


EVENT_KINDS = (
    EventKind("trades", TRADE, _build_trade),
    EventKind("markets", MARKET_CREATED, _build_market),
    EventKind("resolutions", RESOLVED, _build_resolution),
    EventKind("claims", CLAIMED, _build_claim),
    EventKind("voids", VOIDED, _build_void),
)

EVENTS_BY_TOPIC: Dict[str, EventKind] = {kind.topic0: kind for kind in EVENT_KINDS}


def identify(log: RawLog) -> Optional[EventKind]:
    """Match topics[0] against the known signatures; None for anything else."""
    if not log.topics:
        return None
    return EVENTS_BY_TOPIC.get(log.topics[0].lower())


def decode_event(log: RawLog) -> Optional[EventRecord]:
    kind = identify(log)
    if kind is None:
        return None
    return kind.decode(log)
