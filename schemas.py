from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AnyUrl, BaseModel, ConfigDict, EmailStr, Field


# ids are single path segments in the document store
DOC_ID_PATTERN = r"^[^/]+$"


class StrictModel(BaseModel):
    # unknown fields are rejected rather than copied into stored documents
    model_config = ConfigDict(extra="forbid")


class Location(StrictModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


# Users

class RegisterPayload(StrictModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    phoneNumber: str = Field(..., pattern=r"^\+[1-9]\d{1,14}$")
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[A-Za-z0-9]+$")
    firstName: str = Field(..., min_length=1)
    lastName: str = Field(..., min_length=1)
    dateOfBirth: date
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zipcode: str = Field(..., min_length=1)
    name: Optional[str] = None
    accountType: Literal['individual', 'business'] = 'individual'


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdate(StrictModel):
    username: Optional[str] = Field(None, min_length=3, max_length=30, pattern=r"^[A-Za-z0-9]+$")
    phoneNumber: Optional[str] = Field(None, pattern=r"^\+[1-9]\d{1,14}$")
    firstName: Optional[str] = Field(None, min_length=1)
    lastName: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = None
    address: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    zipcode: Optional[str] = Field(None, min_length=1)


# Gigs

class GigIn(StrictModel):
    title: str = Field(..., min_length=5, max_length=100)
    description: str = Field(..., min_length=10)
    price: float = Field(..., gt=0)
    category: Optional[str] = None
    deadline: Optional[datetime] = None
    estimatedDuration: Optional[str] = None
    attachments: List[AnyUrl] = []
    location: Optional[Location] = None


class GigStatusUpdate(BaseModel):
    status: str


# Homes

class HomeIn(StrictModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zipcode: str = Field(..., min_length=1)
    location: Optional[Location] = None
    ownerId: Optional[str] = None


class HomeUpdate(StrictModel):
    address: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    zipcode: Optional[str] = Field(None, min_length=1)
    location: Optional[Location] = None


class OccupantPayload(StrictModel):
    userId: str = Field(..., min_length=1, pattern=DOC_ID_PATTERN)


class HomeDataIn(StrictModel):
    type: str = Field(..., min_length=1)  # e.g. 'maintenance', 'wifi'
    data: Dict[str, Any]


# Mailbox

class AdIn(StrictModel):
    content: str = Field(..., min_length=1)
    targetUserId: str = Field(..., min_length=1, pattern=DOC_ID_PATTERN)


# Chat frames

class JoinChatIn(BaseModel):
    gigId: str = Field(..., min_length=1, pattern=DOC_ID_PATTERN)


class ChatMessageIn(BaseModel):
    gigId: str = Field(..., min_length=1, pattern=DOC_ID_PATTERN)
    userId: Optional[str] = None
    message: str = Field(..., min_length=1, max_length=5000)


class TypingIn(BaseModel):
    gigId: str = Field(..., min_length=1, pattern=DOC_ID_PATTERN)
    userId: Optional[str] = None
