"""
Database Schemas for the Tour Booking API

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name (e.g., Tour -> "tour").
Update models carry only the fields a client may change.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


def as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def reject_null(value: Any) -> Any:
    # update models: a field may be left out, but an explicit null would $set it to None
    if value is None:
        raise ValueError("field cannot be null")
    return value


class Role(str, Enum):
    USER = "user"
    GUIDE = "guide"
    LEAD_GUIDE = "lead-guide"
    ADMIN = "admin"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    DIFFICULT = "difficult"


# -------------------------
# Tours
# -------------------------

class GeoPoint(BaseModel):
    """GeoJSON point; coordinates are [longitude, latitude]."""

    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2)
    address: Optional[str] = None
    description: Optional[str] = None

    @field_validator("coordinates")
    @classmethod
    def within_bounds(cls, v: List[float]) -> List[float]:
        lng, lat = v
        if not -180 <= lng <= 180 or not -90 <= lat <= 90:
            raise ValueError("coordinates must be [longitude, latitude] within range")
        return v


class Location(GeoPoint):
    day: Optional[int] = Field(None, ge=0)


class Tour(BaseModel):
    # ratingsAverage / ratingsQuantity are derived from reviews and never accepted from clients
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    name: str = Field(..., min_length=8, max_length=50, description="Unique tour name")
    duration: int = Field(..., gt=0, description="Duration in days")
    maxGroupSize: int = Field(..., gt=0)
    difficulty: Difficulty
    price: float = Field(..., ge=0)
    priceDiscount: Optional[float] = Field(None, ge=0)
    summary: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    imageCover: str = Field(..., description="Cover image path")
    images: List[str] = Field(default_factory=list)
    startDates: List[datetime] = Field(default_factory=list)
    startLocation: Optional[GeoPoint] = Field(None, description="Indexed for geo queries")
    locations: List[Location] = Field(default_factory=list)
    guides: List[str] = Field(default_factory=list, description="User IDs of the tour guides")

    @field_validator("name", "summary", "description")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator("startDates")
    @classmethod
    def dates_in_utc(cls, v: List[datetime]) -> List[datetime]:
        return [as_utc(d) for d in v]

    @model_validator(mode="after")
    def discount_below_price(self) -> "Tour":
        if self.priceDiscount is not None and self.priceDiscount >= self.price:
            raise ValueError(f"discount value {self.priceDiscount} should be less than regular price")
        return self


class TourUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    name: Optional[str] = Field(None, min_length=8, max_length=50)
    duration: Optional[int] = Field(None, gt=0)
    maxGroupSize: Optional[int] = Field(None, gt=0)
    difficulty: Optional[Difficulty] = None
    price: Optional[float] = Field(None, ge=0)
    # null clears the discount
    priceDiscount: Optional[float] = Field(None, ge=0)
    summary: Optional[str] = None
    description: Optional[str] = None
    imageCover: Optional[str] = None
    images: Optional[List[str]] = None
    startDates: Optional[List[datetime]] = None
    startLocation: Optional[GeoPoint] = None
    locations: Optional[List[Location]] = None
    guides: Optional[List[str]] = None

    @field_validator(
        "name", "duration", "maxGroupSize", "difficulty", "price", "summary", "description",
        "imageCover", "images", "startDates", "startLocation", "locations", "guides",
    )
    @classmethod
    def not_null(cls, v: Any) -> Any:
        return reject_null(v)

    @field_validator("startDates")
    @classmethod
    def dates_in_utc(cls, v: Optional[List[datetime]]) -> Optional[List[datetime]]:
        return None if v is None else [as_utc(d) for d in v]

    @model_validator(mode="after")
    def discount_below_price(self) -> "TourUpdate":
        if self.priceDiscount is not None and self.price is not None and self.priceDiscount >= self.price:
            raise ValueError(f"discount value {self.priceDiscount} should be less than regular price")
        return self


class TourRecord(Tour):
    """A stored tour, including the rating fields maintained from its reviews."""

    reference_fields: ClassVar[Tuple[str, ...]] = ("guides",)

    ratingsAverage: float = 0
    ratingsQuantity: int = 0


# -------------------------
# Reviews
# -------------------------

class Review(BaseModel):
    review: str = Field(..., min_length=8, max_length=100, description="Review text")
    rating: int = Field(..., ge=1, le=5)
    tour: Optional[str] = Field(None, description="Tour reference, taken from the URL on nested routes")


class ReviewRecord(Review):
    """A stored review, with the author reference set from the logged-in user."""

    reference_fields: ClassVar[Tuple[str, ...]] = ("tour", "user")

    user: Optional[str] = None


class ReviewUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    review: Optional[str] = Field(None, min_length=8, max_length=100)
    rating: Optional[int] = Field(None, ge=1, le=5)

    @field_validator("review", "rating")
    @classmethod
    def not_null(cls, v: Any) -> Any:
        return reject_null(v)


# -------------------------
# Users
# -------------------------

class UserCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=40)
    email: EmailStr
    password: str = Field(..., min_length=8)
    passwordConfirm: str

    @model_validator(mode="after")
    def passwords_match(self) -> "UserCreate":
        if self.password != self.passwordConfirm:
            raise ValueError("password and confirm password do not match")
        return self


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = Field(None, min_length=3, max_length=40)
    email: Optional[EmailStr] = None

    @field_validator("name", "email")
    @classmethod
    def not_null(cls, v: Any) -> Any:
        return reject_null(v)

    @model_validator(mode="before")
    @classmethod
    def reject_protected_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            if "password" in data or "passwordConfirm" in data:
                raise ValueError("password cannot be updated using this route")
            if "role" in data:
                raise ValueError("user cannot update their role")
        return data


class PasswordUpdate(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=8)
    passwordConfirm: str

    @model_validator(mode="after")
    def passwords_match(self) -> "PasswordUpdate":
        if self.newPassword != self.passwordConfirm:
            raise ValueError("password and confirm password do not match")
        return self


class ForgotPassword(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    newPassword: str = Field(..., min_length=8)
    passwordConfirm: str

    @model_validator(mode="after")
    def passwords_match(self) -> "PasswordReset":
        if self.newPassword != self.passwordConfirm:
            raise ValueError("password and confirm password do not match")
        return self


class UserPublic(BaseModel):
    id: str
    name: str
    email: str
    role: Role = Role.USER


def public_user(doc: dict) -> UserPublic:
    return UserPublic(id=str(doc["_id"]), name=doc.get("name"), email=doc.get("email"), role=doc.get("role", Role.USER))
