import re
from datetime import datetime
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from models import OrderStatus, PaymentMethod, Role

T = TypeVar("T")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_email(value: str) -> str:
    if not EMAIL_RE.match(value):
        raise ValueError("Please provide a valid email address")
    return value.lower()


# ----------------- 공통 응답 -----------------
class Envelope(BaseModel, Generic[T]):
    message: str
    status: str = "success"
    data: T


# ----------------- 사용자 / 인증 -----------------
class SignUp(BaseModel):
    email: str
    password: str = Field(..., min_length=8)

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        return _check_email(v)

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        if not (re.search(r"[a-z]", v) and re.search(r"[A-Z]", v) and re.search(r"\d", v)):
            raise ValueError(
                "Password must contain at least one uppercase letter, one lowercase letter, and one number"
            )
        return v


class UserLogin(BaseModel):
    email: str
    password: str


class UserCreate(BaseModel):
    email: str
    password: str = Field(..., min_length=6)
    role: Role = Role.CUSTOMER

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        return _check_email(v)


class UserUpdate(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)
    role: Optional[Role] = None

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: Optional[str]) -> Optional[str]:
        return _check_email(v) if v is not None else v


class UserSummary(BaseModel):
    id: int
    email: str
    model_config = {"from_attributes": True}


class UserResponse(UserSummary):
    role: Role
    created_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ----------------- 배송지 -----------------
class AddressCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_default: bool = False


class AddressUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_default: Optional[bool] = None


class AddressResponse(BaseModel):
    id: int
    user_id: int
    first_name: str
    last_name: str
    phone: str
    address: str
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_default: bool
    model_config = {"from_attributes": True}


# ----------------- 카테고리 -----------------
class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    parent_id: Optional[int] = None


class CategorySummary(BaseModel):
    id: int
    name: str
    slug: str
    parent_id: Optional[int] = None
    model_config = {"from_attributes": True}


class CategoryResponse(CategorySummary):
    parent: Optional[CategorySummary] = None
    children: List[CategorySummary] = []
    product_count: int = 0


# ----------------- 속성 -----------------
class AttributeCreate(BaseModel):
    name: str = Field(..., min_length=1)


class AttributeUpdate(BaseModel):
    name: Optional[str] = None


class AttributeValueCreate(BaseModel):
    value: str = Field(..., min_length=1)
    attribute_id: int


class AttributeValueUpdate(BaseModel):
    value: Optional[str] = None


class AttributeSummary(BaseModel):
    id: int
    name: str
    model_config = {"from_attributes": True}


class AttributeValueResponse(BaseModel):
    id: int
    value: str
    attribute_id: int
    attribute: Optional[AttributeSummary] = None
    model_config = {"from_attributes": True}


class AttributeValueSummary(BaseModel):
    id: int
    value: str
    attribute_id: int
    model_config = {"from_attributes": True}


class AttributeResponse(AttributeSummary):
    values: List[AttributeValueSummary] = []


# ----------------- 상품 -----------------
class ImageIn(BaseModel):
    url: str
    alt_text: Optional[str] = None
    position: Optional[int] = None


class VariantAttributeIn(BaseModel):
    attribute_id: int
    value_id: int


class VariantIn(BaseModel):
    sku: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    stock: Optional[int] = Field(None, ge=0)
    attributes: List[VariantAttributeIn] = []
    images: Optional[List[ImageIn]] = None


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    description: Optional[str] = None
    category_id: int
    is_active: bool = True
    images: List[ImageIn] = []
    variants: List[VariantIn] = []


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    category_id: Optional[int] = None
    images: Optional[List[ImageIn]] = None
    variants: Optional[List[VariantIn]] = None


class ImageResponse(BaseModel):
    id: int
    url: str
    alt_text: Optional[str] = None
    position: int
    type: str
    model_config = {"from_attributes": True}


class VariantAttributeResponse(BaseModel):
    id: int
    attribute_value: AttributeValueResponse
    model_config = {"from_attributes": True}


class VariantResponse(BaseModel):
    id: int
    product_id: int
    sku: str
    price: Decimal
    stock: int
    attributes: List[VariantAttributeResponse] = []
    images: List[ImageResponse] = []
    model_config = {"from_attributes": True}


class ProductResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    category_id: int
    is_active: bool
    created_at: Optional[datetime] = None
    category: Optional[CategorySummary] = None
    variants: List[VariantResponse] = []
    images: List[ImageResponse] = []
    model_config = {"from_attributes": True}


# ----------------- 주문 -----------------
class OrderItemIn(BaseModel):
    variant_id: int
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    payment_method: Optional[PaymentMethod] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class ProductSummary(BaseModel):
    id: int
    name: str
    slug: str
    model_config = {"from_attributes": True}


class OrderVariant(BaseModel):
    id: int
    sku: str
    price: Decimal
    product: ProductSummary
    model_config = {"from_attributes": True}


class OrderItemResponse(BaseModel):
    id: int
    variant_id: int
    quantity: int
    price: Decimal
    variant: OrderVariant
    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: int
    user_id: int
    status: OrderStatus
    payment_method: PaymentMethod
    total: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user: UserSummary
    items: List[OrderItemResponse] = []
    model_config = {"from_attributes": True}


class CategoryDetail(CategoryResponse):
    products: List[ProductSummary] = []
