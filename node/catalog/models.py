from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthRecord(CamelModel):
    node_id: str
    is_healthy: bool
    last_check: Optional[datetime] = None
    response_time_ms: float = 0.0
    error: Optional[str] = None


class HealthStats(CamelModel):
    total: int
    healthy_count: int
    unhealthy_count: int
    healthy_percentage: float


class Node(CamelModel):
    """
    One replica of the service. Configured once at startup; only the
    health fields are written afterwards (by a probing loop or, on the
    client side, by request failure handling).
    """
    id: str
    name: str
    url: str
    priority: int
    is_healthy: bool = True
    last_check: Optional[datetime] = None
    response_time_ms: float = 0.0
    last_error: Optional[str] = None

    def mark_healthy(self, response_time_ms: float = 0.0) -> None:
        self.is_healthy = True
        self.last_check = utcnow()
        self.response_time_ms = response_time_ms
        self.last_error = None

    def mark_unhealthy(self, error: str, response_time_ms: Optional[float] = None) -> None:
        self.is_healthy = False
        self.last_check = utcnow()
        if response_time_ms is not None:
            self.response_time_ms = response_time_ms
        self.last_error = error

    def health_record(self) -> HealthRecord:
        return HealthRecord(
            node_id=self.id,
            is_healthy=self.is_healthy,
            last_check=self.last_check,
            response_time_ms=self.response_time_ms,
            error=self.last_error,
        )


class EventKind(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ReplicationEvent(CamelModel):
    """
    One local mutation, sent by value to every peer. Never re-broadcast
    by receivers, so origin_node_id is always the node that made the write.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    kind: EventKind
    resource_type: str = Field(..., examples=["products"])
    payload: Dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)
    origin_node_id: str


class ProductIn(CamelModel):
    name: str = Field(..., min_length=1, examples=["Mechanical keyboard"])
    description: str = ""
    price: float = Field(..., ge=0, examples=[79.9])
    category: str = ""
    stock: int = Field(0, ge=0)
    image_url: str = ""


class Product(ProductIn):
    id: str
    created_at: datetime
