"""Property, room and tenant models - read side for rent collection."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Numeric
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rentflow.database import Base
from rentflow.fsm.states import TenantStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Property(Base):
    """A managed building."""
    
    __tablename__ = "properties"
    
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    
    def __repr__(self) -> str:
        return f"<Property {self.name}>"


class Room(Base):
    """Lettable unit with its monthly rent."""
    
    __tablename__ = "rooms"
    
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    
    property_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("properties.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    
    room_number: Mapped[str] = mapped_column(String(50), nullable=False)
    
    # Monthly rent
    rent_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    
    property: Mapped[Optional[Property]] = relationship(lazy="joined")
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    
    def __repr__(self) -> str:
        return f"<Room {self.room_number} rent={self.rent_amount}>"


class Tenant(Base):
    """Tenant occupying (at most) one room."""
    
    __tablename__ = "tenants"
    
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    
    room_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("rooms.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    
    # Raw phone as captured - normalized only at dispatch time
    phone: Mapped[str] = mapped_column(String(30), nullable=False)
    
    status: Mapped[str] = mapped_column(
        String(20),
        default=TenantStatus.ACTIVE.value,
        nullable=False,
        index=True,
    )
    
    room: Mapped[Optional[Room]] = relationship(lazy="joined")
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    
    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
    
    def __repr__(self) -> str:
        return f"<Tenant {self.full_name} {self.phone}>"
