"""Prompt text for the try-on models"""
from typing import Dict, Optional

from schemas import GarmentType, TryOnRequest

DEFAULT_DESCRIPTION = "A cool outfit"

GARMENT_TYPE_HINTS: Dict[GarmentType, str] = {
    GarmentType.LONG_DRESS: "long dress (full length)",
    GarmentType.SHORT_DRESS: "short dress (above the knees)",
    GarmentType.LONG_SKIRT: "long skirt (ankle length)",
    GarmentType.SHORT_SKIRT: "short skirt (above the knees)",
    GarmentType.SHIRT: "top",
    GarmentType.PANTS: "pants",
    GarmentType.JACKET: "jacket or coat",
    GarmentType.OTHER: "",
}

# IDM-VTON only knows three categories
IDM_VTON_CATEGORIES: Dict[GarmentType, str] = {
    GarmentType.LONG_DRESS: "dresses",
    GarmentType.SHORT_DRESS: "dresses",
    GarmentType.LONG_SKIRT: "lower_body",
    GarmentType.SHORT_SKIRT: "lower_body",
    GarmentType.PANTS: "lower_body",
}

IDENTITY_LOCK = (
    "Preserve the original person's face and identity with 100% accuracy, perform the swap only on the "
    "garment regions. The face, eyes, nose, lips, and hair are reference-locked. They must be a 1:1 match "
    "with the input photo."
)

MAKEOVER_DIRECTIVE = (
    " IMPORTANT: The user wants a complete makeover. REMOVE any existing pants, trousers, or bottom garments "
    "the person is wearing and show bare legs if the new garment is a dress or skirt. CHANGE the shoes to be "
    "fashionable and matching the new outfit."
)


def describe_garment(description: Optional[str], garment_type: Optional[GarmentType]) -> str:
    """Combine the user's description with the garment type hint."""
    base = (description or "").strip() or DEFAULT_DESCRIPTION
    hint = GARMENT_TYPE_HINTS.get(garment_type, "") if garment_type else ""
    return f"{base}. The garment is a {hint}" if hint else base


def _modifiers(request: TryOnRequest) -> str:
    text = ""
    if request.makeover:
        text += MAKEOVER_DIRECTIVE
    if request.makeup_style:
        text += f" Apply {request.makeup_style.strip()} makeup to the face without changing facial features."
    if request.lipstick_color:
        text += f" The lips wear {request.lipstick_color.strip()} lipstick."
    return text


def build_prompt(request: TryOnRequest, description: str) -> str:
    desc = describe_garment(description, request.garment)
    prompt = (
        f"A photo of a person wearing {desc}. The person is wearing the garment shown in the second image. "
        "High quality, realistic. MANDATORY: Preserve the person's identity, facial features, and hairstyle "
        "from the first image EXACTLY. Do not alter the face, skin tone, or hair. Only modify the clothing area."
    )
    return prompt + _modifiers(request)


def build_view_prompts(request: TryOnRequest, description: str) -> Dict[str, str]:
    """One prompt per view of a multi-view job, in front/side/full order."""
    desc = describe_garment(description, request.garment)
    modifiers = _modifiers(request)
    return {
        "front": (
            f"Upper body shot of a person wearing {desc}, framing the subject from the top of the head down "
            "to the hips. Ensure the full torso and the garment are visible. The frame should cut off at the "
            f"hip line or upper thighs. High quality, realistic. {IDENTITY_LOCK}{modifiers}"
        ),
        "side": (
            f"Side profile view of a person wearing {desc}. The person is wearing the garment shown in the "
            f"second image. High quality, realistic. {IDENTITY_LOCK}{modifiers}"
        ),
        "full": (
            f"Full body, head-to-toe shot of a person wearing {desc}. The full body must be visible from head "
            "to feet, including legs and shoes, not cropped. The person is wearing the garment shown in the "
            f"second image. High quality, realistic. {IDENTITY_LOCK}{modifiers}"
        ),
    }


def idm_vton_category(garment_type: Optional[GarmentType]) -> str:
    return IDM_VTON_CATEGORIES.get(garment_type, "upper_body") if garment_type else "upper_body"
