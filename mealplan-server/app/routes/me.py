from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..auth import get_current_principal
from ..db import get_session
from ..schemas import (
    NotificationPreferencesUpdate,
    PushTokenRequest,
    SafetyOverrideRequest,
    SafetyPinChange,
    SafetyPinRemove,
    SafetyPinSet,
    SafetyProfileUpdate,
)
from ..services.entitlements import account_entitlements, effective_tier, start_trial, trial_summary
from ..services.macros import get_macro_targets
from ..services.safety_pin import (
    PinLockedError,
    change_pin,
    issue_override_token,
    pin_status,
    remove_pin,
    set_pin,
)
from ..services.users import (
    get_or_create_account,
    register_push_token,
    remove_push_token,
    safety_profile_payload,
    update_notification_preferences,
    update_safety_profile,
)

router = APIRouter(prefix="/me", tags=["me"])


def _account_payload(principal, account):
    return {
        "sub": principal.get("sub"),
        "email": account.email or principal.get("email"),
        "plan": account.plan,
        "subscriptionStatus": account.subscription_status,
        "effectiveTier": effective_tier(account).value,
        "entitlements": account_entitlements(account),
        "trial": trial_summary(account),
        "safetyProfile": safety_profile_payload(account),
        "macroTargets": get_macro_targets(account),
        "notificationPreferences": account.notification_preferences or {},
        "pushTokens": len(account.push_tokens or []),
        "safetyPin": pin_status(account),
    }


@router.get("")
async def me(principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    return _account_payload(principal, account)


@router.post("/trial")
async def begin_trial(principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            account = await start_trial(session, account)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return {"trial": trial_summary(account), "entitlements": account_entitlements(account)}


@router.get("/safety-profile")
async def get_safety_profile(principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    return safety_profile_payload(account)


@router.put("/safety-profile")
async def put_safety_profile(payload: SafetyProfileUpdate, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            account = await update_safety_profile(
                session,
                account,
                allergies=payload.allergies,
                dietary_restrictions=payload.dietaryRestrictions,
                avoid_ingredients=payload.avoidIngredients,
                health_conditions=payload.healthConditions,
                diet_type=payload.dietType,
                diet_settings=payload.dietSettings,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return safety_profile_payload(account)


@router.post("/push-tokens")
async def add_push_token(payload: PushTokenRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            tokens = await register_push_token(session, account, payload.token)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return {"registered": True, "tokens": len(tokens)}


@router.delete("/push-tokens")
async def delete_push_token(payload: PushTokenRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            tokens = await remove_push_token(session, account, payload.token)
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return {"removed": True, "tokens": len(tokens)}


@router.put("/notifications")
async def put_notifications(payload: NotificationPreferencesUpdate, principal=Depends(get_current_principal)):
    changes = payload.model_dump(exclude_none=True)
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            preferences = await update_notification_preferences(session, account, changes)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return preferences


def _pin_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PinLockedError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/safety-pin")
async def get_safety_pin(principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
    return pin_status(account)


@router.put("/safety-pin")
async def put_safety_pin(payload: SafetyPinSet, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            account = await set_pin(session, account, payload.pin)
        except ValueError as exc:
            raise _pin_error(exc)
    return pin_status(account)


@router.post("/safety-pin/change")
async def post_safety_pin_change(payload: SafetyPinChange, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            account = await change_pin(session, account, current_pin=payload.currentPin, new_pin=payload.newPin)
        except (PinLockedError, PermissionError, LookupError, ValueError) as exc:
            raise _pin_error(exc)
    return pin_status(account)


@router.delete("/safety-pin")
async def delete_safety_pin(payload: SafetyPinRemove, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            account = await remove_pin(session, account, current_pin=payload.currentPin)
        except (PinLockedError, PermissionError, LookupError) as exc:
            raise _pin_error(exc)
    return pin_status(account)


@router.post("/safety-pin/override")
async def post_safety_override(payload: SafetyOverrideRequest, principal=Depends(get_current_principal)):
    async with get_session() as session:
        account = await get_or_create_account(session, user_id=principal["sub"], email=principal.get("email"))
        try:
            return await issue_override_token(
                session,
                account,
                pin=payload.pin,
                allergen=payload.allergen,
                meal_request=payload.mealRequest,
            )
        except (PinLockedError, PermissionError, LookupError) as exc:
            raise _pin_error(exc)
