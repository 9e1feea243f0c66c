from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

DEFAULT_INTERVAL_HOURS = 8


class ExchangeName(str, Enum):
    BINANCE = "Binance"
    BYBIT = "Bybit"


@dataclass(frozen=True)
class ContractSnapshot:
    """One venue's view of one perpetual contract, before merging."""

    symbol: str
    exchange: ExchangeName
    mark_price: float = 0.0
    last_price: float = 0.0
    open_interest: float = 0.0  # contracts, base-asset units
    open_interest_value: float = 0.0  # quote currency
    insurance_fund: float = 0.0
    volume_24h: float = 0.0
    funding_rate: float = 0.0
    next_funding_time: int = 0  # epoch ms
    funding_interval_hours: int = DEFAULT_INTERVAL_HOURS

    @property
    def price(self) -> float:
        return self.mark_price if self.mark_price > 0 else self.last_price


@dataclass(frozen=True)
class MarketDataEntry:
    coin_id: Optional[str] = None
    market_cap: Optional[float] = None
    fdv: Optional[float] = None
    name: Optional[str] = None
    image: Optional[str] = None

    def to_dict(self) -> dict:
        return {"marketCap": self.market_cap, "fdv": self.fdv}


EMPTY_MARKET_DATA = MarketDataEntry()


@dataclass(frozen=True)
class UnifiedPerpRecord:
    symbol: str
    exchange: ExchangeName
    price: float
    mark_price: float
    last_price: float
    open_interest: float
    open_interest_value: float
    insurance_fund: float
    fund_oi_ratio: float
    volume_24h: float
    funding_rate: float
    funding_apy: Optional[float]
    next_funding_time: int
    funding_interval_hours: int
    market_cap: Optional[float] = None
    fdv: Optional[float] = None
    coin_name: Optional[str] = None
    coin_image: Optional[str] = None

    @property
    def key(self) -> tuple[str, ExchangeName]:
        return (self.symbol, self.exchange)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "exchange": self.exchange.value,
            "price": self.price,
            "markPrice": self.mark_price,
            "lastPrice": self.last_price,
            "openInterest": self.open_interest,
            "openInterestValue": self.open_interest_value,
            "insuranceFund": self.insurance_fund,
            "fundOiRatio": self.fund_oi_ratio,
            "marketCap": self.market_cap,
            "fdv": self.fdv,
            "volume24h": self.volume_24h,
            "fundingRate": self.funding_rate,
            "fundingApy": self.funding_apy,
            "nextFundingTime": self.next_funding_time,
            "fundingIntervalHours": self.funding_interval_hours,
            "coinName": self.coin_name,
            "coinImage": self.coin_image,
        }


@dataclass(frozen=True)
class FundingPoint:
    time: int  # epoch ms
    rate: float

    def to_dict(self) -> dict:
        return {"time": self.time, "rate": self.rate}


@dataclass(frozen=True)
class IndexConstituent:
    exchange: str
    symbol: str
    price: float
    weight: float

    def to_dict(self) -> dict:
        return {
            "exchange": self.exchange,
            "symbol": self.symbol,
            "price": self.price,
            "weight": self.weight,
        }


@dataclass
class FundingHistory:
    points: list[FundingPoint] = field(default_factory=list)
    constituents: list[IndexConstituent] = field(default_factory=list)
