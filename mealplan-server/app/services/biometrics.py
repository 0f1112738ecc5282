from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..db import as_utc
from ..models import BiometricSample
from .openai_responses import call_openai_responses, openai_configured
from .users import get_or_create_account, set_latest_glucose

logger = logging.getLogger(__name__)

CANONICAL_UNITS: Dict[str, str] = {
    "weight": "kg",
    "waist": "cm",
    "steps": "count",
    "heart_rate": "bpm",
    "sleep_minutes": "min",
    "blood_pressure_systolic": "mmHg",
    "blood_pressure_diastolic": "mmHg",
    "glucose": "mg/dL",
}
SUMMED_TYPES = {"steps", "sleep_minutes"}
CONVERSIONS: Dict[tuple[str, str], float] = {
    ("weight", "lb"): 0.45359237,
    ("weight", "lbs"): 0.45359237,
    ("waist", "in"): 2.54,
    ("waist", "inch"): 2.54,
    ("waist", "inches"): 2.54,
    ("glucose", "mmol/l"): 18.0,
}
RANGE_PATTERN = re.compile(r"^(\d+)([dwmy])$")
RANGE_DAYS = {"d": 1, "w": 7, "m": 30, "y": 365}
MAX_RANGE_DAYS = 365 * 5

PHOTO_FALLBACK = {"calories": 350, "protein": 25, "carbs": 35, "fat": 12}
PHOTO_SYSTEM_PROMPT = (
    "You estimate the nutrition of a single plated meal from a short description. "
    'Reply with one JSON object: {"name": string, "calories": number, "protein": number, '
    '"carbs": number, "fat": number, "confidence": "low"|"medium"|"high"}.'
)


@dataclass
class IngestResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"inserted": self.inserted, "updated": self.updated, "skipped": self.skipped}


def parse_range(value: str) -> int:
    match = RANGE_PATTERN.match((value or "").strip().lower())
    if not match:
        raise ValueError(f"Invalid range '{value}'; use forms like 90d, 12w, 6m or 1y")
    days = int(match.group(1)) * RANGE_DAYS[match.group(2)]
    if days <= 0 or days > MAX_RANGE_DAYS:
        raise ValueError(f"Range '{value}' is out of bounds")
    return days


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif value:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid recordedAt '{value}'")
    else:
        parsed = datetime.now(timezone.utc)
    return as_utc(parsed).astimezone(timezone.utc)


def normalize_sample(sample_type: str, value: float, unit: Optional[str]) -> tuple[float, str]:
    """Convert a reading into the canonical unit for its type."""
    factor = CONVERSIONS.get((sample_type, (unit or "").strip().lower()))
    if factor is not None:
        value = value * factor
    return round(value, 2), CANONICAL_UNITS[sample_type]


async def ingest_samples(
    session: AsyncSession,
    *,
    user_id: str,
    samples: Sequence[Mapping[str, Any]],
    source: str = "manual",
) -> IngestResult:
    """Store samples; one weight per user and day is kept, the latest reading wins."""
    result = IngestResult()
    account = None
    if any(str(raw.get("type") or "").strip().lower() == "glucose" for raw in samples):
        # Resolved up front: creating the account commits, which must not flush half a batch.
        account = await get_or_create_account(session, user_id=user_id)
    for raw in samples:
        sample_type = str(raw.get("type") or "").strip().lower()
        if sample_type not in CANONICAL_UNITS:
            logger.debug("Skipping unknown biometric type %r for %s", sample_type, user_id)
            result.skipped += 1
            continue
        try:
            numeric = float(raw.get("value"))
        except (TypeError, ValueError):
            result.skipped += 1
            continue
        if numeric < 0:
            result.skipped += 1
            continue
        try:
            recorded_at = _parse_timestamp(raw.get("recordedAt"))
        except ValueError:
            await session.rollback()
            raise
        value, unit = normalize_sample(sample_type, numeric, raw.get("unit"))
        day = recorded_at.date()

        if sample_type == "weight":
            stmt = select(BiometricSample).where(
                BiometricSample.user_id == user_id,
                BiometricSample.sample_type == "weight",
                BiometricSample.day == day,
            )
            existing = (await session.execute(stmt)).scalars().first()
            if existing is not None:
                if as_utc(existing.recorded_at) <= recorded_at:
                    existing.value = value
                    existing.recorded_at = recorded_at
                    existing.source = source
                    result.updated += 1
                else:
                    result.skipped += 1
                continue

        session.add(
            BiometricSample(
                user_id=user_id,
                sample_type=sample_type,
                value=value,
                unit=unit,
                recorded_at=recorded_at,
                day=day,
                source=source,
                extra={"context": raw.get("context")} if raw.get("context") else None,
            )
        )
        result.inserted += 1

        if sample_type == "glucose" and account is not None:
            set_latest_glucose(
                account,
                value_mgdl=value,
                context=str(raw.get("context") or "OTHER"),
                recorded_at=recorded_at,
            )
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Ingested biometrics for %s from %s: %s", user_id, source, result.as_dict())
    return result


def _serialize_sample(sample: BiometricSample) -> Dict[str, Any]:
    return {
        "type": sample.sample_type,
        "value": sample.value,
        "unit": sample.unit,
        "recordedAt": as_utc(sample.recorded_at).isoformat(),
        "source": sample.source,
    }


async def latest(
    session: AsyncSession,
    *,
    user_id: str,
    types: Optional[Iterable[str]] = None,
) -> Dict[str, Dict[str, Any]]:
    wanted = [t for t in (types or CANONICAL_UNITS.keys()) if t in CANONICAL_UNITS]
    found: Dict[str, Dict[str, Any]] = {}
    for sample_type in wanted:
        stmt = (
            select(BiometricSample)
            .where(BiometricSample.user_id == user_id, BiometricSample.sample_type == sample_type)
            .order_by(BiometricSample.recorded_at.desc())
            .limit(1)
        )
        sample = (await session.execute(stmt)).scalars().first()
        if sample is not None:
            found[sample_type] = _serialize_sample(sample)
    return found


async def summary(
    session: AsyncSession,
    *,
    user_id: str,
    days: int = 7,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    if days < 1 or days > MAX_RANGE_DAYS:
        raise ValueError("days out of range")
    today = today or datetime.now(timezone.utc).date()
    start = today - timedelta(days=days - 1)
    stmt = (
        select(BiometricSample)
        .where(BiometricSample.user_id == user_id, BiometricSample.day >= start, BiometricSample.day <= today)
        .order_by(BiometricSample.recorded_at)
    )
    samples = list((await session.execute(stmt)).scalars().all())

    by_day: Dict[date, Dict[str, float]] = defaultdict(dict)
    for sample in samples:
        bucket = by_day[sample.day]
        if sample.sample_type in SUMMED_TYPES:
            bucket[sample.sample_type] = bucket.get(sample.sample_type, 0.0) + sample.value
        else:
            bucket[sample.sample_type] = sample.value

    daily = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        daily.append({"date": day.isoformat(), **by_day.get(day, {})})

    week_start = today - timedelta(days=6)
    recent_steps = [values["steps"] for day, values in by_day.items() if day >= week_start and "steps" in values]
    avg_steps = round(sum(recent_steps) / len(recent_steps)) if recent_steps else None
    return {"from": start.isoformat(), "to": today.isoformat(), "days": daily, "avgSteps7d": avg_steps}


async def sources(session: AsyncSession, *, user_id: str) -> List[Dict[str, Any]]:
    stmt = (
        select(
            BiometricSample.source,
            func.count(BiometricSample.id),
            func.max(BiometricSample.recorded_at),
        )
        .where(BiometricSample.user_id == user_id)
        .group_by(BiometricSample.source)
        .order_by(BiometricSample.source)
    )
    rows = (await session.execute(stmt)).all()
    return [
        {
            "source": source,
            "samples": count,
            "lastRecordedAt": as_utc(last).isoformat() if isinstance(last, datetime) else last,
        }
        for source, count, last in rows
    ]


async def weight_series(
    session: AsyncSession,
    *,
    user_id: str,
    range_value: str = "90d",
    today: Optional[date] = None,
) -> Dict[str, Any]:
    days = parse_range(range_value)
    today = today or datetime.now(timezone.utc).date()
    start = today - timedelta(days=days - 1)
    stmt = (
        select(BiometricSample)
        .where(
            BiometricSample.user_id == user_id,
            BiometricSample.sample_type == "weight",
            BiometricSample.day >= start,
        )
        .order_by(BiometricSample.day)
    )
    points = [
        {"date": sample.day.isoformat(), "kg": sample.value}
        for sample in (await session.execute(stmt)).scalars().all()
    ]
    change = round(points[-1]["kg"] - points[0]["kg"], 2) if len(points) > 1 else None
    return {"range": range_value, "from": start.isoformat(), "points": points, "changeKg": change}


def _fallback_estimate(description: str, reason: str) -> Dict[str, Any]:
    logger.info("Using fallback photo estimate (%s)", reason)
    return {"name": description[:80] or "Meal", **PHOTO_FALLBACK, "confidence": "low", "source": "fallback"}


def _parse_estimate(text: str) -> Dict[str, Any]:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object in estimate")
    payload = json.loads(text[start : end + 1])
    estimate = {key: max(0, round(float(payload[key]))) for key in PHOTO_FALLBACK}
    estimate["name"] = str(payload.get("name") or "Meal")
    estimate["confidence"] = payload.get("confidence") if payload.get("confidence") in ("low", "medium", "high") else "medium"
    return estimate


async def estimate_photo_macros(description: str) -> Dict[str, Any]:
    description = (description or "").strip()
    if not description:
        raise ValueError("description is required")
    if not openai_configured():
        return _fallback_estimate(description, "openai not configured")
    settings = get_settings()
    try:
        text = await asyncio.to_thread(
            call_openai_responses,
            model=settings.openai_photo_model,
            system_prompt=PHOTO_SYSTEM_PROMPT,
            user_prompt=f"Meal: {description}",
            max_output_tokens=settings.openai_photo_max_output_tokens,
        )
        estimate = _parse_estimate(text)
    except HTTPException as exc:
        return _fallback_estimate(description, f"model error {exc.status_code}")
    except (ValueError, KeyError, TypeError) as exc:
        return _fallback_estimate(description, f"unparseable estimate: {exc}")
    estimate["source"] = "ai"
    return estimate
