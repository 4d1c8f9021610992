"""Pydantic models for request/response"""
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class GenerationMode(str, Enum):
    STANDARD = "standard"
    PLUS = "plus"
    BRONZE = "bronze"


class GarmentType(str, Enum):
    SHIRT = "shirt"
    LONG_DRESS = "long_dress"
    SHORT_DRESS = "short_dress"
    LONG_SKIRT = "long_skirt"
    SHORT_SKIRT = "short_skirt"
    PANTS = "pants"
    JACKET = "jacket"
    OTHER = "other"


# Credits charged per generation
MODE_COSTS = {
    GenerationMode.STANDARD: 1.0,
    GenerationMode.PLUS: 3.0,
    GenerationMode.BRONZE: 0.5,
}
# nano-banana-pro runs behind the alternate engine switch for standard and plus
ALTERNATE_ENGINE_COST = 4.0
VIDEO_COST = 5.0


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class TryOnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Checked by the handler after the credit check, so both are optional here
    person_image: Optional[str] = Field(None, alias="personImage")
    cloth_image: Optional[str] = Field(None, alias="clothImage")
    garment_type: Optional[str] = Field(None, alias="type", description="Garment category, used for prompt phrasing only")
    garment_description: Optional[str] = Field(None, alias="garmentDescription")
    mode: GenerationMode = GenerationMode.STANDARD
    is_plus_mode: Optional[Union[bool, str]] = Field(None, alias="isPlusMode", description="Legacy switch for plus mode")
    alternate_engine: bool = Field(False, alias="alternateEngine")
    makeover: bool = Field(False, alias="isMakeoverMode")
    makeup_style: Optional[str] = Field(None, alias="makeupStyle")
    lipstick_color: Optional[str] = Field(None, alias="lipstickColor")

    @field_validator("mode", mode="before")
    @classmethod
    def lower_mode(cls, value):
        if value is None:
            return GenerationMode.STANDARD
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("alternate_engine", "makeover", mode="before")
    @classmethod
    def parse_flag(cls, value):
        return _as_bool(value) if value is not None else False

    @model_validator(mode="after")
    def apply_legacy_plus_flag(self):
        if self.is_plus_mode is not None and _as_bool(self.is_plus_mode):
            self.mode = GenerationMode.PLUS
        return self

    @property
    def cost(self) -> float:
        if self.alternate_engine and self.mode is not GenerationMode.BRONZE:
            return max(ALTERNATE_ENGINE_COST, MODE_COSTS[self.mode])
        return MODE_COSTS[self.mode]

    @property
    def garment(self) -> Optional[GarmentType]:
        try:
            return GarmentType(self.garment_type) if self.garment_type else None
        except ValueError:
            return None


class VideoRequest(BaseModel):
    image: Optional[str] = None
    description: Optional[str] = None
    model: Optional[str] = None


class AddPointsRequest(BaseModel):
    order_id: Optional[str] = Field(None, alias="orderID")
    amount: Optional[Union[str, float]] = None


class CreditsResponse(BaseModel):
    credits: float
