from datetime import date
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict


class CreatePersonDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    dateOfBirth: Optional[Union[date, str]] = None
    photoUrl: Optional[str] = None


class BatchPeopleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    people: List[CreatePersonDto] = []


class AttachPhotoDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    photoUrl: str
