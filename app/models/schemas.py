from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PredictOptions(BaseModel):
    useCache: bool = True
    explain: bool = False
    batchId: Optional[str] = None


class PredictRequest(BaseModel):
    model: str
    tokenId: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    options: PredictOptions = Field(default_factory=PredictOptions)


class BatchPredictRequest(BaseModel):
    requests: List[PredictRequest]


class TrainRequest(BaseModel):
    model: str
    timeframe: Optional[str] = None
    epochs: Optional[int] = Field(default=None, ge=1)
    batchSize: Optional[int] = Field(default=None, ge=2)
    minSamples: Optional[int] = Field(default=None, ge=1)


class OutcomeIn(BaseModel):
    tokenId: str
    outcomeKind: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    symbol: Optional[str] = None
    initialState: Dict[str, Any] = Field(default_factory=dict)
    featureVector: Optional[List[float]] = None
    discoveredAt: Optional[str] = None
    outcomeRecordedAt: Optional[str] = None
    labelSource: str = "auto"
