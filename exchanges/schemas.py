"""
Response schemas for the venue REST endpoints we read.

Only the fields we use are declared; everything else is ignored. Venues send
numbers as strings and sometimes as empty strings, so numeric fields coerce
"" / None to 0.
"""
import logging
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from utils import UpstreamError

logger = logging.getLogger("schemas")

M = TypeVar("M", bound=BaseModel)


def _blank_to_zero(value: Any) -> Any:
    if value is None or value == "":
        return 0
    return value


Num = Annotated[float, BeforeValidator(_blank_to_zero)]
Millis = Annotated[int, BeforeValidator(_blank_to_zero)]


class VenueModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


def parse_model(model: type[M], data: Any, source: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise UpstreamError(f"{source}: unexpected {model.__name__} payload: {e}") from e


def parse_rows(model: type[M], rows: Any, source: str) -> list[M]:
    """Validate row by row; a malformed row is dropped, not the whole list."""
    if not isinstance(rows, list):
        raise UpstreamError(f"{source}: expected a list of {model.__name__}, got {type(rows).__name__}")
    parsed: list[M] = []
    skipped = 0
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError:
            skipped += 1
    if skipped:
        logger.warning("%s: skipped %d malformed %s rows", source, skipped, model.__name__)
    return parsed


# =============================
# Binance USDⓈ-M futures
# =============================

class BinanceSymbolInfo(VenueModel):
    symbol: str
    contractType: str = ""
    status: str = ""
    quoteAsset: str = ""


class BinanceExchangeInfo(VenueModel):
    symbols: list[dict] = Field(default_factory=list)


class BinancePremiumIndex(VenueModel):
    symbol: str
    markPrice: Num = 0.0
    lastFundingRate: Num = 0.0
    nextFundingTime: Millis = 0
    time: Millis = 0


class BinanceTicker24h(VenueModel):
    symbol: str
    lastPrice: Num = 0.0
    quoteVolume: Num = 0.0


class BinanceOpenInterest(VenueModel):
    symbol: str
    openInterest: Num = 0.0


class BinanceFundingInfo(VenueModel):
    symbol: str
    fundingIntervalHours: int


class BinanceFundingRate(VenueModel):
    symbol: str = ""
    fundingTime: Millis
    fundingRate: Num = 0.0


class BinanceInsuranceAsset(VenueModel):
    asset: str
    marginBalance: Num = 0.0


class BinanceInsuranceGroup(VenueModel):
    symbols: list[str] = Field(default_factory=list)
    assets: list[BinanceInsuranceAsset] = Field(default_factory=list)


class BinanceConstituent(VenueModel):
    exchange: str = ""
    symbol: str = ""
    price: Num = 0.0
    weight: Num = 0.0


class BinanceConstituents(VenueModel):
    symbol: str = ""
    constituents: list[dict] = Field(default_factory=list)


# =============================
# Bybit v5 (category=linear)
# =============================

class BybitEnvelope(VenueModel):
    retCode: int
    retMsg: str = ""
    result: dict = Field(default_factory=dict)


class BybitInstrument(VenueModel):
    symbol: str
    status: str = ""
    quoteCoin: str = ""
    contractType: str = ""
    fundingInterval: Millis = 0  # minutes


class BybitTicker(VenueModel):
    symbol: str
    markPrice: Num = 0.0
    lastPrice: Num = 0.0
    turnover24h: Num = 0.0
    fundingRate: Num = 0.0
    nextFundingTime: Millis = 0


class BybitOpenInterest(VenueModel):
    openInterest: Num = 0.0
    timestamp: Millis = 0


class BybitInsurancePool(VenueModel):
    coin: str = ""
    symbols: str = ""
    balance: Num = 0.0

    def symbol_list(self) -> list[str]:
        return [s.strip() for s in self.symbols.split(",") if s.strip()]


class BybitFundingRate(VenueModel):
    symbol: str = ""
    fundingRate: Num = 0.0
    fundingRateTimestamp: Millis


def bybit_result(data: Any, source: str) -> dict:
    """Unwrap a v5 envelope, raising on retCode != 0."""
    envelope = parse_model(BybitEnvelope, data, source)
    if envelope.retCode != 0:
        raise UpstreamError(f"{source}: retCode={envelope.retCode} {envelope.retMsg}")
    return envelope.result
