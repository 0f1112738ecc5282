from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

MealType = Literal["breakfast", "lunch", "dinner", "snack"]


class MacroTargets(BaseModel):
    calories: Optional[float] = Field(default=None, ge=0)
    protein: Optional[float] = Field(default=None, ge=0)
    carbs: Optional[float] = Field(default=None, ge=0)
    fat: Optional[float] = Field(default=None, ge=0)

    def as_dict(self) -> Dict[str, float]:
        return {key: value for key, value in self.model_dump().items() if value}


# Account & plans


class SafetyProfileUpdate(BaseModel):
    allergies: Optional[List[str]] = None
    dietaryRestrictions: Optional[List[str]] = None
    avoidIngredients: Optional[List[str]] = None
    healthConditions: Optional[List[str]] = None
    dietType: Optional[str] = None
    dietSettings: Optional[Dict[str, Any]] = None


class PushTokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)


class NotificationPreferencesUpdate(BaseModel):
    mealReminders: Optional[bool] = None
    weeklySummary: Optional[bool] = None


class PlanApplyRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=128)
    lookupKey: str = Field(default="", max_length=64)
    status: Literal["active", "trialing", "past_due", "canceled"] = "active"


class SafetyPinSet(BaseModel):
    pin: str = Field(min_length=4, max_length=4)


class SafetyPinChange(BaseModel):
    currentPin: str = Field(min_length=1, max_length=16)
    newPin: str = Field(min_length=4, max_length=4)


class SafetyPinRemove(BaseModel):
    currentPin: str = Field(min_length=1, max_length=16)


class SafetyOverrideRequest(BaseModel):
    pin: str = Field(min_length=1, max_length=16)
    allergen: Optional[str] = Field(default=None, max_length=128)
    mealRequest: str = Field(default="", max_length=1000)


class MacroTargetsUpdate(BaseModel):
    calories: Optional[int] = Field(default=None, ge=0)
    protein: Optional[int] = Field(default=None, ge=0)
    carbs: Optional[int] = Field(default=None, ge=0)
    fat: Optional[int] = Field(default=None, ge=0)


# Guardrails, library, generation


class GuardrailPrecheckRequest(BaseModel):
    text: str = Field(default="", max_length=2000)


class GuardrailValidateRequest(BaseModel):
    meal: Dict[str, Any]
    dietType: Optional[str] = None
    phase: Optional[str] = None
    isSnack: bool = False


class LibrarySearchRequest(BaseModel):
    mealType: Optional[MealType] = None
    intent: str = Field(default="", max_length=500)
    diet: Optional[str] = None
    targets: MacroTargets = Field(default_factory=MacroTargets)
    cravings: Dict[str, float] = Field(default_factory=dict)
    recentIds: List[str] = Field(default_factory=list)
    limit: int = Field(default=5, ge=1, le=20)


class GenerateMealRequest(BaseModel):
    mealType: MealType
    request: str = Field(default="", max_length=1000)
    targets: MacroTargets = Field(default_factory=MacroTargets)
    dietType: Optional[str] = None
    phase: Optional[str] = None
    isSnack: bool = False
    servings: int = Field(default=1, ge=1, le=12)
    overrideToken: Optional[str] = Field(default=None, min_length=64, max_length=64)


class IngredientClassifyRequest(BaseModel):
    ingredients: List[str] = Field(min_length=1, max_length=200)


# Week boards & meal boards


class WeekMealRequest(BaseModel):
    meal: Dict[str, Any]


class ShoppingListExclusionsRequest(BaseModel):
    exclusions: List[str] = Field(default_factory=list, max_length=500)


class MealBoardCreateRequest(BaseModel):
    program: str = Field(min_length=1, max_length=64)
    startDate: date
    days: int = Field(default=7, ge=1, le=28)
    title: Optional[str] = Field(default=None, max_length=255)


class MealBoardItemRequest(BaseModel):
    dayIndex: int = Field(ge=0)
    slot: str
    meal: Dict[str, Any]
    servings: float = Field(default=1.0, gt=0)


class RepeatDayRequest(BaseModel):
    sourceDay: int = Field(ge=0)
    targetDays: List[int] = Field(min_length=1)


class CommitBoardRequest(BaseModel):
    scope: Literal["day", "week"] = "day"
    dayIndex: Optional[int] = Field(default=None, ge=0)


# Macros


class MacroLogRequest(BaseModel):
    at: Optional[datetime] = None
    source: str = Field(default="manual", max_length=24)
    kcal: Optional[float] = None
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0
    fiber: float = 0.0
    alcohol: float = 0.0
    starchyCarbs: Optional[float] = None
    fibrousCarbs: Optional[float] = None
    mealId: Optional[str] = None
    mealName: Optional[str] = None
    servings: float = Field(default=1.0, gt=0)
    idempotencyKey: Optional[str] = Field(default=None, max_length=160)
    ingredients: List[str] = Field(default_factory=list)


class QuickAddRequest(BaseModel):
    at: Optional[datetime] = None
    kcal: Optional[float] = None
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0
    fiber: float = 0.0
    alcohol: float = 0.0
    starchyCarbs: Optional[float] = None
    fibrousCarbs: Optional[float] = None


class LogMealRequest(BaseModel):
    meal: Dict[str, Any]
    servings: float = Field(default=1.0, gt=0)
    at: Optional[datetime] = None


# Biometrics


class BiometricSampleIn(BaseModel):
    type: str
    value: float
    unit: Optional[str] = None
    recordedAt: Optional[datetime] = None
    context: Optional[str] = None


class BiometricIngestRequest(BaseModel):
    samples: List[BiometricSampleIn] = Field(min_length=1, max_length=500)
    source: str = Field(default="manual", max_length=64)


class PhotoAnalyzeRequest(BaseModel):
    description: str = Field(min_length=1, max_length=1000)


# Reminders


class ReminderCreateRequest(BaseModel):
    mealType: MealType
    recipeName: str = Field(min_length=1, max_length=500)
    scheduledTime: str
    dayOfWeek: Optional[int] = Field(default=None, ge=0, le=6)
    timezone: str = "UTC"
    reminderEnabled: bool = True
    mealPlanRef: Optional[str] = Field(default=None, max_length=128)


class ReminderUpdateRequest(BaseModel):
    mealType: Optional[MealType] = None
    recipeName: Optional[str] = Field(default=None, max_length=500)
    scheduledTime: Optional[str] = None
    dayOfWeek: Optional[int] = Field(default=None, ge=0, le=6)
    timezone: Optional[str] = None
    reminderEnabled: Optional[bool] = None
    isActive: Optional[bool] = None
    mealPlanRef: Optional[str] = Field(default=None, max_length=128)


class ReminderDispatchRequest(BaseModel):
    now: Optional[datetime] = None


class TemplateRankRequest(BaseModel):
    templates: List[Dict[str, Any]] = Field(default_factory=list, max_length=200)
    preferredCuisines: List[str] = Field(default_factory=list)
    vegOptOut: bool = False
