"""
ML API router.

Prediction, batch prediction, training and orchestrator status endpoints.
Every response is wrapped as {"success": ..., "data": ...}.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from adaptive.jobs import JobStatus, TrainingTrigger
from adaptive.outcomes import OutcomeEvent
from app.deps import get_services, require_admin
from app.models.schemas import BatchPredictRequest, OutcomeIn, PredictRequest, TrainRequest
from app.services.ml import MLServices
from core.exceptions import InputError, TrainingConflictError
from inference.fallbacks import ModelKind
from inference.server import InferenceRequest, parse_kind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/ml", tags=["ml"])

TRAINABLE_KINDS = {ModelKind.RUG_PREDICTION}


def _to_inference_request(body: PredictRequest) -> InferenceRequest:
    return InferenceRequest.create(
        model_kind=body.model,
        input=body.input,
        subject_id=body.tokenId,
        use_cache=body.options.useCache,
        explain=body.options.explain,
        batch_id=body.options.batchId,
    )


@router.post("/predict")
async def predict(body: PredictRequest, services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    try:
        request = _to_inference_request(body)
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    response = await services.inference.predict(request)
    return {"success": True, "data": response.to_dict()}


@router.post("/predict/batch")
async def predict_batch(body: BatchPredictRequest, services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    limit = services.config.inference.max_batch_size
    if len(body.requests) > limit:
        raise HTTPException(status_code=400, detail=f"Maximum {limit} requests per batch")
    try:
        requests = [_to_inference_request(r) for r in body.requests]
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    responses = await services.inference.predict_batch(requests)
    return {"success": True, "data": [r.to_dict() for r in responses]}


@router.post("/train", dependencies=[Depends(require_admin)])
async def train(body: TrainRequest, services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    try:
        kind = parse_kind(body.model)
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if kind not in TRAINABLE_KINDS:
        raise HTTPException(status_code=400, detail=f"Training is not supported for {kind.value}")

    hyperparams = {
        "epochs": body.epochs,
        "batch_size": body.batchSize,
        "min_samples": body.minSamples,
    }
    try:
        job = await services.auto_trainer.train(TrainingTrigger.MANUAL, hyperparams)
    except TrainingConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e

    succeeded = job.status is JobStatus.COMPLETED
    return {
        "success": succeeded,
        "data": {
            "jobId": job.id,
            "status": job.status.value,
            "samplesUsed": job.samples_used,
            "trainingTime": job.training_time_ms,
            "metrics": job.metrics,
            "modelVersion": job.resulting_version,
            "deployed": job.deployed,
            "error": job.error,
        },
    }


@router.get("/training/status")
def training_status(services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    return {"success": True, "data": services.auto_trainer.get_status()}


@router.post("/training/check")
async def check_and_train(services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    job = await services.auto_trainer.check_and_train()
    return {"success": True, "data": job.to_dict() if job else None}


@router.post("/shadow/evaluate", dependencies=[Depends(require_admin)])
def evaluate_shadow(services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    return {"success": True, "data": services.auto_trainer.evaluate_shadow().to_dict()}


@router.post("/outcomes")
def ingest_outcome(body: OutcomeIn, services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    event = OutcomeEvent(
        token_id=body.tokenId,
        outcome_kind=body.outcomeKind,
        confidence=body.confidence,
        symbol=body.symbol,
        initial_state=body.initialState,
        feature_vector=tuple(body.featureVector) if body.featureVector is not None else None,
        discovered_at=body.discoveredAt,
        outcome_recorded_at=body.outcomeRecordedAt,
        label_source=body.labelSource,
    )
    try:
        sample = services.auto_trainer.ingest_outcome(event)
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"success": True, "data": sample.to_dict()}


@router.get("/stats")
def inference_stats(services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    return {"success": True, "data": services.inference.get_stats()}


@router.get("/monitoring")
async def monitoring(services: MLServices = Depends(get_services)) -> Dict[str, Any]:
    trainer = services.auto_trainer
    quality, drift = await asyncio.gather(
        asyncio.to_thread(trainer.quality_checker.check_quality),
        asyncio.to_thread(trainer.drift_monitor.check_drift),
    )
    return {"success": True, "data": {"quality": quality.to_dict(), "drift": drift.to_dict()}}


@router.get("/events")
def recent_events(
    limit: int = Query(default=50, ge=1, le=1000),
    kind: Optional[str] = None,
    services: MLServices = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "data": services.events.recent(limit=limit, kind=kind)}
