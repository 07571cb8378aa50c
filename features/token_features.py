"""Token feature vectorization.

Maps a partial token/market/social/smart-money state into the fixed,
versioned 28-field vector consumed by every model kind. Extraction is
total: missing or non-finite inputs resolve to defaults in one place
(FeatureExtractor.extract_raw) and every output is clamped to [0, 1].
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd

from core.exceptions import InputError

FEATURE_VERSION = "v2"

FEATURE_NAMES: tuple[str, ...] = (
    # Core
    "liquidityUsd",
    "riskScore",
    "holderCount",
    "top10Percent",
    "mintRevoked",
    "freezeRevoked",
    "lpBurnedPercent",
    "hasSocials",
    "tokenAgeHours",
    # Momentum
    "priceChange5m",
    "priceChange1h",
    "priceChange24h",
    "volumeChange1h",
    "volumeChange24h",
    "buyPressure1h",
    # Smart money
    "smartMoneyNetBuys",
    "smartMoneyHolding",
    "isSmartMoneyBullish",
    # Trends
    "priceVelocity",
    "volumeAcceleration",
    "liquidityTrend",
    "holderTrend",
    # Patterns
    "hasVolumeSpike",
    "isPumping",
    "isDumping",
    # Sentiment
    "sentimentScore",
    "sentimentConfidence",
    "hasSentimentData",
)

FEATURE_COUNT = len(FEATURE_NAMES)

FEATURE_DISPLAY_NAMES: dict[str, str] = {
    "liquidityUsd": "Liquidity USD",
    "riskScore": "Risk Score",
    "holderCount": "Holder Count",
    "top10Percent": "Top 10% Holdings",
    "mintRevoked": "Mint Revoked",
    "freezeRevoked": "Freeze Revoked",
    "lpBurnedPercent": "LP Burned %",
    "hasSocials": "Has Socials",
    "tokenAgeHours": "Token Age",
    "priceChange5m": "Price Change 5m",
    "priceChange1h": "Price Change 1h",
    "priceChange24h": "Price Change 24h",
    "volumeChange1h": "Volume Change 1h",
    "volumeChange24h": "Volume Change 24h",
    "buyPressure1h": "Buy Pressure 1h",
    "smartMoneyNetBuys": "Smart Money Net Buys",
    "smartMoneyHolding": "Smart Money Holding %",
    "isSmartMoneyBullish": "Smart Money Bullish",
    "priceVelocity": "Price Velocity",
    "volumeAcceleration": "Volume Acceleration",
    "liquidityTrend": "Liquidity Trend",
    "holderTrend": "Holder Trend",
    "hasVolumeSpike": "Volume Spike",
    "isPumping": "Is Pumping",
    "isDumping": "Is Dumping",
    "sentimentScore": "Sentiment Score",
    "sentimentConfidence": "Sentiment Confidence",
    "hasSentimentData": "Has Sentiment Data",
}

MAX_LIQUIDITY_USD = 1_000_000
MAX_HOLDER_COUNT = 100_000
MAX_TOKEN_AGE_HOURS = 720
PRICE_CHANGE_MIN = -100.0
PRICE_CHANGE_MAX = 200.0
SMART_MONEY_NET_BUYS_MAX = 50.0
SMART_MONEY_HOLDING_MAX = 50.0
VELOCITY_RANGE = 100.0
ACCELERATION_RANGE = 10.0
TREND_RANGE = 2.0
DEFAULT_RISK_SCORE = 50.0
DEFAULT_BUY_PRESSURE = 0.5


def _num(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return float(value)
    if value is None:
        return default
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    return out if math.isfinite(out) else default


@dataclass(frozen=True)
class PreviousSnapshot:
    """Subset of an earlier observation of the same token, used for trends."""
    liquidity_usd: Optional[float] = None
    holder_count: Optional[float] = None
    volume_1h: Optional[float] = None


@dataclass(frozen=True)
class TokenState:
    """Canonical token state. Every field is optional."""
    liquidity_usd: Optional[float] = None
    risk_score: Optional[float] = None
    holder_count: Optional[float] = None
    top10_percent: Optional[float] = None
    mint_revoked: Optional[bool] = None
    freeze_revoked: Optional[bool] = None
    lp_burned_percent: Optional[float] = None
    has_twitter: Optional[bool] = None
    has_telegram: Optional[bool] = None
    has_website: Optional[bool] = None
    created_at: Optional[datetime] = None
    token_age_hours: Optional[float] = None
    price_change_5m: Optional[float] = None
    price_change_1h: Optional[float] = None
    price_change_24h: Optional[float] = None
    volume_1h: Optional[float] = None
    volume_24h: Optional[float] = None
    buys_1h: Optional[float] = None
    sells_1h: Optional[float] = None
    smart_money_net_buys: Optional[float] = None
    smart_money_holding: Optional[float] = None
    is_smart_money_bullish: Optional[bool] = None
    sentiment_score: Optional[float] = None
    sentiment_confidence: Optional[float] = None
    previous: Optional[PreviousSnapshot] = None

    @classmethod
    def from_dict(cls, data: dict) -> TokenState:
        """Build from a snake_case mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and k != "previous"}
        prev = data.get("previous")
        if isinstance(prev, dict):
            kwargs["previous"] = PreviousSnapshot(
                liquidity_usd=prev.get("liquidity_usd"),
                holder_count=prev.get("holder_count"),
                volume_1h=prev.get("volume_1h"),
            )
        created = kwargs.get("created_at")
        if isinstance(created, str):
            try:
                kwargs["created_at"] = datetime.fromisoformat(created)
            except ValueError as e:
                raise InputError(f"created_at is not an ISO-8601 timestamp: {created!r}") from e
        return cls(**kwargs)

    def token_age(self, now: datetime) -> float:
        if self.token_age_hours is not None:
            return max(0.0, _num(self.token_age_hours))
        if self.created_at is None:
            return 0.0
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return max(0.0, (now - created).total_seconds() / 3600.0)


@dataclass(frozen=True)
class FeatureVector:
    """Ordered normalized values plus the raw record they came from."""
    values: tuple[float, ...]
    raw: dict[str, float] = field(default_factory=dict)
    feature_version: str = FEATURE_VERSION

    def to_dict(self) -> dict[str, float]:
        return dict(zip(FEATURE_NAMES, self.values))

    def to_array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float32)

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    missing_count: int
    invalid_count: int
    issues: list[str]


def normalize_log_scale(value: float, max_value: float) -> float:
    if value <= 0:
        return 0.0
    return min(1.0, math.log10(value + 1) / math.log10(max_value + 1))


def normalize_price_change(change: float) -> float:
    clamped = max(PRICE_CHANGE_MIN, min(PRICE_CHANGE_MAX, change))
    return (clamped - PRICE_CHANGE_MIN) / (PRICE_CHANGE_MAX - PRICE_CHANGE_MIN)


def normalize_bounded(value: float, bound: float) -> float:
    """Map [-bound, bound] onto [0, 1]."""
    clamped = max(-bound, min(bound, value))
    return (clamped + bound) / (2 * bound)


def _clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


class FeatureExtractor:
    """Pure mapping from TokenState to FeatureVector."""

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def extract_raw(self, state: TokenState, now: Optional[datetime] = None) -> dict[str, float]:
        """Resolve defaults and derived values. Unnormalized."""
        now = now or self._clock()
        prev = state.previous

        liquidity = _num(state.liquidity_usd)
        holders = _num(state.holder_count)
        volume_1h = _num(state.volume_1h)
        volume_24h = _num(state.volume_24h)
        change_5m = _num(state.price_change_5m)
        change_1h = _num(state.price_change_1h)
        risk = _num(state.risk_score, DEFAULT_RISK_SCORE) or DEFAULT_RISK_SCORE
        has_sentiment = state.sentiment_score is not None and math.isfinite(_num(state.sentiment_score, math.nan))

        return {
            "liquidityUsd": liquidity,
            "riskScore": risk,
            "holderCount": holders,
            "top10Percent": _num(state.top10_percent),
            "mintRevoked": 1.0 if state.mint_revoked else 0.0,
            "freezeRevoked": 1.0 if state.freeze_revoked else 0.0,
            "lpBurnedPercent": _num(state.lp_burned_percent),
            "hasSocials": 1.0 if (state.has_twitter or state.has_telegram or state.has_website) else 0.0,
            "tokenAgeHours": state.token_age(now),
            "priceChange5m": change_5m,
            "priceChange1h": change_1h,
            "priceChange24h": _num(state.price_change_24h),
            "volumeChange1h": self._volume_change_1h(volume_1h, prev),
            "volumeChange24h": self._volume_acceleration(volume_1h, volume_24h) * 100,
            "buyPressure1h": self._buy_pressure(_num(state.buys_1h), _num(state.sells_1h)),
            "smartMoneyNetBuys": _num(state.smart_money_net_buys),
            "smartMoneyHolding": _num(state.smart_money_holding),
            "isSmartMoneyBullish": 1.0 if state.is_smart_money_bullish else 0.0,
            "priceVelocity": change_5m - change_1h / 12,
            "volumeAcceleration": self._volume_acceleration(volume_1h, volume_24h),
            "liquidityTrend": self._trend(liquidity, prev.liquidity_usd if prev else None),
            "holderTrend": self._trend(holders, prev.holder_count if prev else None),
            "hasVolumeSpike": 1.0 if (volume_24h > 0 and volume_1h > 5 * volume_24h / 24) else 0.0,
            "isPumping": 1.0 if (change_5m > 10 and change_1h > 30) else 0.0,
            "isDumping": 1.0 if (change_5m < -10 and change_1h < -30) else 0.0,
            "sentimentScore": _num(state.sentiment_score) if has_sentiment else 0.0,
            "sentimentConfidence": _num(state.sentiment_confidence) if has_sentiment else 0.0,
            "hasSentimentData": 1.0 if has_sentiment else 0.0,
        }

    def normalize(self, raw: dict[str, float]) -> tuple[float, ...]:
        r = {name: _num(raw.get(name)) for name in FEATURE_NAMES}
        out = [
            normalize_log_scale(r["liquidityUsd"], MAX_LIQUIDITY_USD),
            r["riskScore"] / 100,
            normalize_log_scale(r["holderCount"], MAX_HOLDER_COUNT),
            r["top10Percent"] / 100,
            r["mintRevoked"],
            r["freezeRevoked"],
            r["lpBurnedPercent"] / 100,
            r["hasSocials"],
            min(1.0, r["tokenAgeHours"] / MAX_TOKEN_AGE_HOURS),
            normalize_price_change(r["priceChange5m"]),
            normalize_price_change(r["priceChange1h"]),
            normalize_price_change(r["priceChange24h"]),
            normalize_price_change(r["volumeChange1h"]),
            normalize_price_change(r["volumeChange24h"]),
            r["buyPressure1h"],
            normalize_bounded(r["smartMoneyNetBuys"], SMART_MONEY_NET_BUYS_MAX),
            min(1.0, r["smartMoneyHolding"] / SMART_MONEY_HOLDING_MAX),
            r["isSmartMoneyBullish"],
            normalize_bounded(r["priceVelocity"], VELOCITY_RANGE),
            normalize_bounded(r["volumeAcceleration"], ACCELERATION_RANGE),
            normalize_bounded(r["liquidityTrend"], TREND_RANGE),
            normalize_bounded(r["holderTrend"], TREND_RANGE),
            r["hasVolumeSpike"],
            r["isPumping"],
            r["isDumping"],
            (r["sentimentScore"] + 1) / 2,
            r["sentimentConfidence"],
            r["hasSentimentData"],
        ]
        return tuple(_clamp01(v) for v in out)

    def extract(self, state: Optional[TokenState] = None, now: Optional[datetime] = None) -> FeatureVector:
        raw = self.extract_raw(state or TokenState(), now=now)
        return FeatureVector(values=self.normalize(raw), raw=raw)

    def validate_features(self, features: dict[str, Any]) -> ValidationResult:
        issues: list[str] = []
        missing = 0
        invalid = 0
        for name in FEATURE_NAMES:
            value = features.get(name)
            if value is None:
                missing += 1
                issues.append(f"Missing: {name}")
            elif isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                invalid += 1
                issues.append(f"Invalid: {name} = {value}")
        return ValidationResult(
            valid=missing == 0 and invalid == 0,
            missing_count=missing,
            invalid_count=invalid,
            issues=issues,
        )

    @staticmethod
    def _buy_pressure(buys: float, sells: float) -> float:
        total = buys + sells
        if total == 0:
            return DEFAULT_BUY_PRESSURE
        return buys / total

    @staticmethod
    def _volume_acceleration(volume_1h: float, volume_24h: float) -> float:
        avg_hourly = volume_24h / 24
        if avg_hourly == 0:
            return 0.0
        return (volume_1h - avg_hourly) / avg_hourly

    @staticmethod
    def _volume_change_1h(volume_1h: float, prev: Optional[PreviousSnapshot]) -> float:
        prev_volume = _num(prev.volume_1h) if prev else 0.0
        if prev_volume == 0:
            return 0.0
        return (volume_1h - prev_volume) / prev_volume * 100

    @staticmethod
    def _trend(current: float, previous: Optional[float]) -> float:
        prev = _num(previous)
        if prev == 0:
            return 0.0
        if not current:
            return -1.0
        return (current - prev) / prev


def check_feature_vector(values: Sequence[Any]) -> tuple[float, ...]:
    """A caller-supplied vector as floats.

    Raises:
        InputError: wrong length, non-numeric, non-finite or outside [0, 1].
    """
    try:
        vector = tuple(float(v) for v in values)
    except (TypeError, ValueError) as e:
        raise InputError("Feature vector values must be numbers") from e
    if len(vector) != FEATURE_COUNT:
        raise InputError(f"Feature vector must have {FEATURE_COUNT} values, got {len(vector)}")
    for name, value in zip(FEATURE_NAMES, vector):
        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            raise InputError(f"Feature {name} must be within [0, 1], got {value}")
    return vector


def vector_from_mapping(features: dict[str, Any]) -> list[float]:
    """Ordered values from a name->value mapping. Missing names become 0."""
    return [_num(features.get(name)) for name in FEATURE_NAMES]


def to_frame(vectors: Sequence[Sequence[float]]) -> pd.DataFrame:
    """Stack feature vectors into a DataFrame with FEATURE_NAMES columns."""
    if len(vectors) == 0:
        return pd.DataFrame(columns=list(FEATURE_NAMES), dtype=float)
    return pd.DataFrame(np.asarray(vectors, dtype=np.float64), columns=list(FEATURE_NAMES))
