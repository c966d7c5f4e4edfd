from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    totalQuantity: int
    consumable: bool = False


class CreateVariantDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    totalQuantity: int


class AdjustAvailabilityDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    delta: int
    variantID: Optional[str] = None
