"""
Database Schemas for the Tastio review platform

Each Pydantic model represents a MongoDB collection.
Collection name is lowercase of the class name.
- User -> "user"
- Restaurant -> "restaurant"
- MenuItem -> "menuitem"
- Review -> "review"
- Favourite -> "favourite"
- Post -> "post"
- Category -> "category"
"""

from pydantic import AfterValidator, BaseModel, Field, EmailStr
from typing import Annotated, List, Literal, Optional
from datetime import datetime

Role = Literal["user", "seller", "admin"]
UserStatus = Literal["active", "suspended"]
RestaurantStatus = Literal["pending", "verified", "rejected"]


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Emails are stored and compared lowercased."""
    return email.strip().lower() if email else email


# every stored email goes through this type
Email = Annotated[EmailStr, AfterValidator(normalize_email)]


class User(BaseModel):
    email: Email = Field(..., description="Unique email address")
    name: Optional[str] = Field(None, description="Display name")
    photo: Optional[str] = Field(None, description="Avatar URL")
    role: Role = Field("user", description="Role: user, seller, admin")
    status: UserStatus = Field("active", description="Account status")
    created_at: Optional[datetime] = None

class Restaurant(BaseModel):
    owner_email: Email = Field(..., description="Applicant / owner email")
    restaurant_name: str = Field(..., min_length=1, description="Restaurant name")
    location: str = Field(..., description="Address or area")
    description: Optional[str] = None
    photo: Optional[str] = None
    status: RestaurantStatus = Field("pending", description="Application status")
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class MenuItem(BaseModel):
    name: str = Field(..., min_length=1, description="Food name")
    description: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0, description="Price in currency units")
    category: str = Field(..., description="Category name")
    seller_email: Email = Field(..., description="Owning seller")
    restaurant_id: str = Field(..., description="Restaurant _id (string)")
    average_rating: float = Field(0.0, ge=0, le=5, description="Running mean of review ratings")
    review_count: int = Field(0, ge=0, description="Number of reviews")
    created_at: Optional[datetime] = None

class Review(BaseModel):
    reviewer_email: Email = Field(..., description="Author email")
    reviewer_name: Optional[str] = None
    reviewer_photo: Optional[str] = None
    food_name: str = Field(..., description="Reviewed food")
    food_image: Optional[str] = None
    menu_id: Optional[str] = Field(None, description="MenuItem _id (string)")
    restaurant_id: Optional[str] = Field(None, description="Restaurant _id (string)")
    rating: int = Field(..., ge=1, le=5, description="Rating 1-5")
    review_text: str = Field("", description="Review body")
    posted_at: Optional[datetime] = None

class Favourite(BaseModel):
    email: Email
    review_id: str = Field(..., description="Review _id (string)")
    created_at: Optional[datetime] = None

class Post(BaseModel):
    user_email: Email
    user_name: Optional[str] = None
    user_photo: Optional[str] = None
    caption: str = Field(..., min_length=1)
    image: Optional[str] = None
    likes: List[str] = Field(default_factory=list, description="Emails of likers, no duplicates")
    date: Optional[datetime] = None

class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Unique category name")
    image: Optional[str] = None
