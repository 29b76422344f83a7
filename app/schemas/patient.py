from typing import Optional
from pydantic import BaseModel, ConfigDict


class PatientSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    phone: str


class PatientDetail(PatientSummary):
    age: Optional[int] = None
    gender: Optional[str] = None
