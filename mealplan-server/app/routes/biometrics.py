from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..auth import get_current_principal
from ..db import get_session
from ..schemas import BiometricIngestRequest, PhotoAnalyzeRequest
from ..services import biometrics as biometrics_service

router = APIRouter(prefix="/biometrics", tags=["biometrics"])


@router.post("/ingest")
async def ingest(payload: BiometricIngestRequest, principal=Depends(get_current_principal)):
    samples = [sample.model_dump() for sample in payload.samples]
    async with get_session() as session:
        try:
            result = await biometrics_service.ingest_samples(
                session, user_id=principal["sub"], samples=samples, source=payload.source
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return result.as_dict()


@router.get("/latest")
async def latest(
    types: Optional[str] = Query(default=None, description="Comma-separated sample types"),
    principal=Depends(get_current_principal),
):
    wanted = [t.strip().lower() for t in types.split(",") if t.strip()] if types else None
    async with get_session() as session:
        return await biometrics_service.latest(session, user_id=principal["sub"], types=wanted)


@router.get("/summary")
async def summary(days: int = Query(default=7, ge=1, le=365), principal=Depends(get_current_principal)):
    async with get_session() as session:
        return await biometrics_service.summary(session, user_id=principal["sub"], days=days)


@router.get("/sources")
async def sources(principal=Depends(get_current_principal)):
    async with get_session() as session:
        return {"sources": await biometrics_service.sources(session, user_id=principal["sub"])}


@router.get("/weight")
async def weight(range: str = Query(default="90d"), principal=Depends(get_current_principal)):
    async with get_session() as session:
        try:
            return await biometrics_service.weight_series(session, user_id=principal["sub"], range_value=range)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("/analyze-photo")
async def analyze_photo(payload: PhotoAnalyzeRequest, principal=Depends(get_current_principal)):
    try:
        return await biometrics_service.estimate_photo_macros(payload.description)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
