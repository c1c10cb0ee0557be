"""
MetalBloom API - Live Precious Metal Prices
Backend for the MetalBloom dashboard: live spot prices and 7-day trends for
Gold, Silver, Platinum and Palladium.
"""

from fastapi import FastAPI, HTTPException, Query
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from abc import ABC, abstractmethod
from typing import Optional
from datetime import date, datetime, timedelta, timezone
from enum import Enum
import httpx
import asyncio
import logging
import math
import os
import random
import time

# ══════════════════════════════════════════════════════════════════════════════
# Configuration
# ══════════════════════════════════════════════════════════════════════════════

DEFAULT_CURRENCY = "INR"
HISTORY_DAYS = 7  # Lookback window of the detail view trend chart
REQUEST_TIMEOUT_SECONDS = 5.0
PRICE_SOURCE = os.getenv("METALBLOOM_PRICE_SOURCE", "mock")
METALPRICE_API_URL = os.getenv("METALPRICE_API_URL", "https://api.metalpriceapi.com/v1")
METALPRICE_API_KEY = os.getenv("METALPRICE_API_KEY", "")
SUPPORTED_METALS = ["XAU", "XAG", "XPT", "XPD"]
METAL_NAMES = {
    "XAU": "Gold",
    "XAG": "Silver",
    "XPT": "Platinum",
    "XPD": "Palladium",
}
SUPPORTED_CURRENCIES = ["INR", "USD"]

# Shared HTTP client for connection pooling
_http_client: Optional[httpx.AsyncClient] = None

async def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client used by live price sources."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(
            timeout=REQUEST_TIMEOUT_SECONDS,
            follow_redirects=True,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )
    return _http_client

# ══════════════════════════════════════════════════════════════════════════════
# Models
# ══════════════════════════════════════════════════════════════════════════════

class Metal(str, Enum):
    XAU = "XAU"
    XAG = "XAG"
    XPT = "XPT"
    XPD = "XPD"

    @property
    def display_name(self) -> str:
        return METAL_NAMES[self.value]


class Currency(str, Enum):
    INR = "INR"
    USD = "USD"


class SpotSnapshot(BaseModel):
    """Point-in-time read of current prices for all tracked metals."""
    model_config = ConfigDict(frozen=True)

    base: Currency
    timestamp: int  # Unix seconds
    rates: dict[Metal, Optional[float]]

    @field_validator("rates")
    @classmethod
    def drop_missing_rates(cls, rates: dict) -> dict:
        # A metal without a usable live rate is absent, never zero
        return {metal: price for metal, price in rates.items() if is_usable_price(price)}


class HistoricalTable(BaseModel):
    """Per-metal prices keyed by ISO date. Key order carries no meaning."""
    model_config = ConfigDict(frozen=True)

    base: Currency
    start_date: str = ""
    end_date: str = ""
    rates: dict[str, dict[str, Optional[float]]]


class PricePoint(BaseModel):
    date: str
    price: float


class PriceChange(BaseModel):
    change: float  # Absolute amount
    percent: float  # Absolute percentage
    is_positive: bool


class MetalDetail(BaseModel):
    name: str
    symbol: Metal
    current_price: Optional[float] = None
    previous_close: Optional[float] = None
    previous_open: Optional[float] = None
    last_updated: datetime
    currency: Currency
    historical_prices: list[PricePoint]
    change: Optional[PriceChange] = None


class LivePricesResponse(BaseModel):
    status: str
    currency: Currency
    unit: str
    last_updated: datetime
    metals: dict[str, dict]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    price_source: str


# ══════════════════════════════════════════════════════════════════════════════
# Errors
# ══════════════════════════════════════════════════════════════════════════════

class MetalPriceError(Exception):
    """Base class for price data errors."""


class FetchError(MetalPriceError):
    """Transport failure: network error, timeout or bad status."""


class ParseError(MetalPriceError):
    """The price source answered with a malformed payload."""


class NotFoundError(MetalPriceError):
    """Requested metal symbol is not one of the tracked metals."""


def parse_metal(symbol: str) -> Metal:
    """Resolve a metal symbol from a request, case-insensitively."""
    try:
        return Metal(symbol.strip().upper())
    except ValueError:
        raise NotFoundError(
            f"Metal '{symbol}' not found. Use one of: {SUPPORTED_METALS}"
        ) from None


def parse_currency(code: str) -> Currency:
    try:
        return Currency(code.strip().upper())
    except ValueError:
        raise ValueError(
            f"Currency '{code}' not supported. Use one of: {SUPPORTED_CURRENCIES}"
        ) from None


# ══════════════════════════════════════════════════════════════════════════════
# Price Sources
# ══════════════════════════════════════════════════════════════════════════════

class PriceSource(ABC):
    """
    Read interface every price backend implements.

    Both reads may raise FetchError or ParseError. The historical table always
    holds every metal; filtering by metal is left to the caller.
    """

    name: str

    @abstractmethod
    async def get_live_rates(self, currency: Currency) -> SpotSnapshot:
        raise NotImplementedError

    @abstractmethod
    async def get_historical_rates(self, metal: Metal, currency: Currency, days: int) -> HistoricalTable:
        raise NotImplementedError


class MockPriceSource(PriceSource):
    """
    In-memory price generator for development and demos.

    The 7-day history is generated once per instance so repeated reads agree.
    Currency only changes the `base` field and `days` is ignored.
    """

    name = "mock"

    BASE_RATES = {
        Metal.XAU: 6000,
        Metal.XAG: 70,
        Metal.XPT: 2500,
        Metal.XPD: 3000,
    }
    # (low, high) jitter applied to each historical day
    JITTER = {
        Metal.XAU: (-50, 50),
        Metal.XAG: (-2, 3),
        Metal.XPT: (-50, 50),
        Metal.XPD: (-50, 50),
    }
    WINDOW_DAYS = 7

    def __init__(self, rng: Optional[random.Random] = None, today: Optional[date] = None):
        self._rng = rng or random.Random()
        self._today = today or datetime.now(timezone.utc).date()
        self._history = self._generate_history()

    def _generate_history(self) -> dict[str, dict[str, float]]:
        history = {}
        for days_ago in range(self.WINDOW_DAYS - 1, -1, -1):
            day = (self._today - timedelta(days=days_ago)).isoformat()
            history[day] = {
                metal.value: float(base + round(self._rng.uniform(*self.JITTER[metal])))
                for metal, base in self.BASE_RATES.items()
            }
        return history

    async def get_live_rates(self, currency: Currency) -> SpotSnapshot:
        return SpotSnapshot(
            base=currency,
            timestamp=int(time.time()),
            rates={metal: float(rate) for metal, rate in self.BASE_RATES.items()},
        )

    async def get_historical_rates(self, metal: Metal, currency: Currency, days: int) -> HistoricalTable:
        return HistoricalTable(
            base=currency,
            start_date="",
            end_date="",
            rates={day: dict(rates) for day, rates in self._history.items()},
        )


class MetalPriceAPISource(PriceSource):
    """
    Live prices from a MetalpriceAPI-compatible HTTP service.

    Expected payloads:
        /latest    -> {success, base, timestamp, rates: {XAU, USDXAU, ...}}
        /timeframe -> {success, base, start_date, end_date, rates: {date: {XAU, USDXAU, ...}}}

    The service quotes `XAU` as ounces per unit of the base currency and the
    price per ounce under `{base}XAU`. The price per ounce is read from the
    `{base}{metal}` key when present, otherwise the bare rate is inverted.
    """

    name = "metalpriceapi"

    def __init__(self, api_key: str, base_url: str = METALPRICE_API_URL,
                 client: Optional[httpx.AsyncClient] = None):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client

    async def _get_json(self, endpoint: str, params: dict) -> dict:
        client = self._client or await get_http_client()
        url = f"{self._base_url}/{endpoint}"
        query = {"api_key": self._api_key, "currencies": ",".join(SUPPORTED_METALS), **params}

        try:
            response = await client.get(url, params=query, headers={"Accept": "application/json"})
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logging.warning(f"Timeout fetching {endpoint} from {self._base_url}")
            raise FetchError(f"Timed out fetching {endpoint} prices") from e
        except httpx.HTTPStatusError as e:
            logging.warning(f"HTTP error fetching {endpoint}: {e.response.status_code}")
            raise FetchError(f"Price service returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logging.warning(f"Error fetching {endpoint}: {str(e)}")
            raise FetchError(f"Could not reach price service: {str(e)}") from e

        try:
            data = response.json()
        except ValueError as e:
            logging.warning(f"Invalid JSON response for {endpoint}: {str(e)}")
            raise ParseError(f"Invalid JSON in {endpoint} response") from e

        if not isinstance(data, dict):
            raise ParseError(f"Unexpected {endpoint} payload type: {type(data).__name__}")

        # The service reports API-level failures with a 200 and success=false
        if data.get("success") is False:
            error = data.get("error") or {}
            message = error.get("info") or error.get("message") if isinstance(error, dict) else str(error)
            logging.warning(f"Price service rejected {endpoint} request: {message}")
            raise FetchError(f"Price service error: {message or 'unknown error'}")

        return data

    @staticmethod
    def _prices_per_ounce(rates: dict, base: str) -> dict:
        """Metal prices in the base currency from one rates object."""
        prices = {}
        for metal in SUPPORTED_METALS:
            quoted = rates.get(f"{base}{metal}")
            inverse = rates.get(metal)
            if quoted is not None:
                prices[metal] = quoted
            elif isinstance(inverse, (int, float)) and is_usable_price(inverse):
                prices[metal] = 1 / inverse
            elif metal in rates:
                # Left for validation: None is filtered, anything else is malformed
                prices[metal] = inverse
        return prices

    async def get_live_rates(self, currency: Currency) -> SpotSnapshot:
        data = await self._get_json("latest", {"base": currency.value})
        try:
            base = data.get("base", currency.value)
            return SpotSnapshot(
                base=base,
                timestamp=data["timestamp"],
                rates=self._prices_per_ounce(data.get("rates") or {}, base),
            )
        except (KeyError, AttributeError, ValidationError) as e:
            logging.warning(f"Malformed live rates payload: {str(e)}")
            raise ParseError(f"Malformed live rates payload: {str(e)}") from e

    async def get_historical_rates(self, metal: Metal, currency: Currency, days: int) -> HistoricalTable:
        end = datetime.now(timezone.utc).date()
        start = end - timedelta(days=max(days, 1) - 1)
        data = await self._get_json("timeframe", {
            "base": currency.value,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        })
        try:
            base = data.get("base", currency.value)
            return HistoricalTable(
                base=base,
                start_date=data.get("start_date") or "",
                end_date=data.get("end_date") or "",
                rates={
                    day: self._prices_per_ounce(rates, base)
                    for day, rates in data["rates"].items()
                },
            )
        except (KeyError, AttributeError, ValidationError) as e:
            logging.warning(f"Malformed historical rates payload: {str(e)}")
            raise ParseError(f"Malformed historical rates payload: {str(e)}") from e


def create_price_source(name: str = PRICE_SOURCE) -> PriceSource:
    """Build the price source selected by configuration."""
    if name == MockPriceSource.name:
        return MockPriceSource()
    if name == MetalPriceAPISource.name:
        if not METALPRICE_API_KEY:
            logging.warning("METALPRICE_API_KEY is not set; live requests will be rejected")
        return MetalPriceAPISource(METALPRICE_API_KEY, METALPRICE_API_URL)
    raise ValueError(
        f"Unknown price source '{name}'. Use one of: "
        f"{[MockPriceSource.name, MetalPriceAPISource.name]}"
    )


# ══════════════════════════════════════════════════════════════════════════════
# Metal Detail Aggregation
# ══════════════════════════════════════════════════════════════════════════════

def is_usable_price(value: Optional[float]) -> bool:
    """A missing, zero or NaN price means no price was reported that day."""
    if value is None:
        return False
    return value != 0 and not math.isnan(value)


def calculate_change(current_price: Optional[float], previous_close: Optional[float]) -> Optional[PriceChange]:
    """
    Change of the current price against the previous close.

    Amounts are returned as magnitudes with a separate direction flag. A zero
    previous close yields a 0% change instead of an infinite one.
    """
    if current_price is None or previous_close is None:
        return None
    if math.isnan(current_price) or math.isnan(previous_close):
        return None

    change = current_price - previous_close
    percent = 0.0 if previous_close == 0 else (change / previous_close) * 100

    return PriceChange(
        change=round(abs(change), 2),
        percent=round(abs(percent), 2),
        is_positive=change >= 0,
    )


def build_metal_detail(metal: Metal, currency: Currency,
                       live: SpotSnapshot, table: HistoricalTable) -> MetalDetail:
    """
    Reduce a live snapshot and a historical table into the detail view model.

    ISO date keys sort correctly as strings, and that order defines which
    points count as previous open and previous close. With too little history
    both fall back to the current price.
    """
    current_price = live.rates.get(metal)

    dates = sorted(table.rates.keys())
    series = []
    for day in dates:
        price = table.rates[day].get(metal.value)
        # Days without a price are dropped, never zero-filled
        if is_usable_price(price):
            series.append(PricePoint(date=day, price=price))
    prices = [point.price for point in series]

    previous_close = prices[-2] if len(prices) > 1 else current_price
    previous_open = prices[0] if len(prices) > 0 else current_price

    return MetalDetail(
        name=metal.display_name,
        symbol=metal,
        current_price=current_price,
        previous_close=previous_close,
        previous_open=previous_open,
        last_updated=datetime.fromtimestamp(live.timestamp, tz=timezone.utc),
        currency=currency,
        historical_prices=series,
        change=calculate_change(current_price, previous_close),
    )


class MetalDetailAggregator:
    """Serves the dashboard and detail views from a single price source."""

    def __init__(self, source: PriceSource):
        self.source = source

    async def get_live_prices(self, currency: Currency) -> SpotSnapshot:
        return await self.source.get_live_rates(currency)

    async def get_metal_detail(self, metal: Metal, currency: Currency) -> MetalDetail:
        """
        Fetch live and historical rates concurrently and build the view model.

        Errors from either read propagate unchanged; nothing partial is returned.
        """
        live, table = await asyncio.gather(
            self.source.get_live_rates(currency),
            self.source.get_historical_rates(metal, currency, HISTORY_DAYS),
        )

        detail = build_metal_detail(metal, currency, live, table)
        logging.info(
            f"{metal.value}/{currency.value}: {len(detail.historical_prices)} history points, "
            f"previous close {detail.previous_close}"
        )
        return detail


metal_api = MetalDetailAggregator(create_price_source())


# ══════════════════════════════════════════════════════════════════════════════
# FastAPI Application
# ══════════════════════════════════════════════════════════════════════════════

app = FastAPI(
    title="MetalBloom API",
    description="""
## Live Precious Metals Price Tracker

Current prices and 7-day trends for **Gold**, **Silver**, **Platinum** and
**Palladium**, in **INR** or **USD**.

### Quick Start
```bash
# Dashboard: all metal prices
curl https://your-api.com/api/v1/metals

# Gold detail view in USD
curl https://your-api.com/api/v1/metals/XAU?currency=USD
```
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def resolve_currency(currency: str) -> Currency:
    try:
        return parse_currency(currency)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ══════════════════════════════════════════════════════════════════════════════
# API Endpoints
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/", tags=["Root"])
async def root():
    """Welcome endpoint with API information."""
    return {
        "name": "MetalBloom API",
        "version": "1.0.0",
        "description": "Live precious metals price tracker",
        "documentation": "/docs",
        "endpoints": {
            "all_metals": "/api/v1/metals",
            "metal_detail": "/api/v1/metals/{symbol}",
            "health": "/api/v1/health",
            "currencies": "/api/v1/currencies",
        },
    }


@app.get("/api/v1/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Check API health and the configured price source."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        price_source=metal_api.source.name,
    )


@app.get("/api/v1/currencies", tags=["Reference"])
async def get_currencies():
    """Get list of supported currencies."""
    return {
        "currencies": SUPPORTED_CURRENCIES,
        "default": DEFAULT_CURRENCY,
    }


@app.get("/api/v1/metals", response_model=LivePricesResponse, tags=["Prices"])
async def get_all_metals(
    currency: str = Query(
        default=DEFAULT_CURRENCY,
        description="Currency for prices",
        examples=["INR", "USD"],
    )
):
    """
    Get current prices for all tracked metals.

    Metals without a live rate are returned with `price: null`.
    """
    snapshot = await metal_api.get_live_prices(resolve_currency(currency))

    metals_data = {}
    for metal in Metal:
        price = snapshot.rates.get(metal)
        if price is None:
            logging.warning(f"Missing live price for {metal.value}")
        metals_data[metal.value] = {
            "name": metal.display_name,
            "symbol": metal.value,
            "price": price,
        }

    return LivePricesResponse(
        status="success",
        currency=snapshot.base,
        unit="troy_ounce",
        last_updated=datetime.fromtimestamp(snapshot.timestamp, tz=timezone.utc),
        metals=metals_data,
    )


@app.get("/api/v1/metals/{symbol}", response_model=MetalDetail, tags=["Prices"])
async def get_metal_detail(
    symbol: str,
    currency: str = Query(
        default=DEFAULT_CURRENCY,
        description="Currency for prices",
        examples=["INR", "USD"],
    )
):
    """
    Get the detail view for one metal.

    **Supported metals:** `XAU` (Gold), `XAG` (Silver), `XPT` (Platinum),
    `XPD` (Palladium). Symbols are case-insensitive.

    Includes previous close and open from the last 7 days, the change against
    the previous close, and the daily price series for the trend chart.
    """
    metal = parse_metal(symbol)
    return await metal_api.get_metal_detail(metal, resolve_currency(currency))


# ══════════════════════════════════════════════════════════════════════════════
# Error Handlers
# ══════════════════════════════════════════════════════════════════════════════

@app.exception_handler(NotFoundError)
async def metal_not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": str(exc),
            "redirect": "/api/v1/metals",
        },
    )


@app.exception_handler(FetchError)
@app.exception_handler(ParseError)
async def price_source_error_handler(request: Request, exc: MetalPriceError):
    logging.warning(f"Price source failure in {request.url.path}: {str(exc)}")
    return JSONResponse(
        status_code=502,
        content={
            "error": "Bad Gateway",
            "message": str(exc),
            "retryable": True,
        },
    )


@app.exception_handler(404)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": "The requested endpoint does not exist.",
            "available_endpoints": ["/api/v1/metals", "/api/v1/currencies", "/api/v1/health", "/docs"],
        },
    )


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    import traceback
    error_details = traceback.format_exc()
    logging.error(f"Unhandled exception in {request.url.path}: {error_details}")

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "Something went wrong. Please try again.",
            "detail": str(exc) if exc else "Unknown error",
        },
    )


# ══════════════════════════════════════════════════════════════════════════════
# Run Server
# ══════════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    logging.info(f"Starting MetalBloom API with '{metal_api.source.name}' price source")
    logging.info("Documentation: http://localhost:8000/docs")

    uvicorn.run(app, host="0.0.0.0", port=8000)
