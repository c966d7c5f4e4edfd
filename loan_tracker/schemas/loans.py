from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: str
    personID: str
    quantity: int = 1
    notes: Optional[str] = None
    variantID: Optional[str] = None


class BasketLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: str
    variantID: Optional[str] = None
    quantity: int = 1
    notes: Optional[str] = None


class BatchLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personID: str
    items: List[BasketLineDto] = []


class ConditionUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conditionNotes: Optional[str] = None
    conditionPhoto: Optional[str] = None
