from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth import get_current_principal
from ..schemas import IngredientClassifyRequest
from ..services.classifier import classify_ingredients, detect_starchy_ingredients

router = APIRouter(prefix="/ingredients", tags=["ingredients"])


@router.post("/classify")
def classify(payload: IngredientClassifyRequest, principal=Depends(get_current_principal)):
    classified = classify_ingredients(payload.ingredients)
    starch = detect_starchy_ingredients(payload.ingredients)
    return {
        "ingredients": [
            {
                "name": item.name,
                "normalizedName": item.normalized_name,
                "category": item.category,
                "isPantryStaple": item.is_pantry_staple,
            }
            for item in classified
        ],
        "starch": {"hasStarchy": starch.has_starchy, "matchedTerms": starch.matched_terms},
    }
