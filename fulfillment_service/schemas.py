# schemas.py
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

# Money travels as Decimal internally and as plain decimal text on the wire ("4000.00")
Money = Annotated[Decimal, PlainSerializer(lambda v: format(v, "f"), return_type=str, when_used="json")]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ------------------------- REQUESTS -------------------------
class OrderItemCreate(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=500)


class OrderCreate(CamelModel):
    address_id: str = Field(..., min_length=1)
    items: List[OrderItemCreate] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=500)


class OrderUpdate(CamelModel):
    """Partial update; only fields present in the body are applied.

    ``driverId: null`` is meaningful (unassign), so callers must check
    ``model_fields_set`` rather than comparing against ``None``.
    """
    status: Optional[str] = None
    driver_id: Optional[str] = None
    internal_notes: Optional[str] = Field(None, max_length=1000)
    driver_delivery_cost: Optional[Decimal] = Field(None, ge=0)
    status_notes: Optional[str] = Field(None, max_length=500)
    version: Optional[int] = None


class MarkNotificationsRead(CamelModel):
    notification_ids: Optional[List[str]] = None


class PushSubscription(CamelModel):
    token: str = Field(..., min_length=1)


# ------------------------- RESPONSES -------------------------
class Party(CamelModel):
    id: str
    name: str
    phone: Optional[str] = None


class Address(CamelModel):
    id: str
    label: Optional[str] = None
    area: str
    street: Optional[str] = None
    building: Optional[str] = None
    details: Optional[str] = None


class OrderItem(CamelModel):
    id: str
    product_id: str
    product_name: Optional[str] = None
    quantity: int
    price: Money
    total: Money
    notes: Optional[str] = None


class StatusHistory(CamelModel):
    id: int
    status: str
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    created_at: datetime


class Order(CamelModel):
    id: str
    order_number: str
    status: str
    subtotal: Money
    delivery_fee: Money
    discount: Money
    total: Money
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    driver_delivery_cost: Optional[Money] = None
    customer_id: str
    address_id: str
    driver_id: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime
    delivered_at: Optional[datetime] = None
    customer: Optional[Party] = None
    driver: Optional[Party] = None
    address: Optional[Address] = None
    items: List[OrderItem] = []
    status_history: List[StatusHistory] = []


class OrderResponse(CamelModel):
    order: Order


class OrderMessage(OrderResponse):
    message: str


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderList(CamelModel):
    orders: List[Order]
    pagination: Pagination


class Driver(CamelModel):
    id: str
    name: str
    phone: Optional[str] = None
    status: str
    is_available: bool
    current_order_id: Optional[str] = None
    acquired_at: Optional[datetime] = None


class DriverList(CamelModel):
    drivers: List[Driver]


class Notification(CamelModel):
    id: str
    type: str
    title: str
    message: str
    data: Optional[Any] = None
    is_read: bool
    created_at: datetime


class NotificationList(CamelModel):
    notifications: List[Notification]
    unread_count: int
