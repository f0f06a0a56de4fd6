from datetime import datetime
from typing import Annotated, Any, Generic, List, Literal, Optional, TypeVar, Union
import phonenumbers
from pydantic import BaseModel, Field
from pydantic_extra_types.phone_numbers import PhoneNumberValidator

T = TypeVar("T")

# Sri Lankan numbers, normalised to +94xxxxxxxxx
LankanPhoneNumber = Annotated[
    Union[str, phonenumbers.PhoneNumber],
    PhoneNumberValidator(
        supported_regions=["LK"], default_region="LK", number_format="E164"
    ),
]


class RequestInfo(BaseModel):
    method: str
    path: str


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: Optional[T] = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    errors: Optional[List[Any]] = None


class HealthStatus(BaseModel):
    status: str
    version: str
    uptime: float
    timestamp: datetime


class PointSchema(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(min_length=2, max_length=2)


class Pagination(BaseModel):
    total: int
    total_pages: int
    current_page: int
    count: int
