"""
Async ORM layer for the no-show prevention backend.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.

Engines and session factories are built by the caller (FastAPI lifespan or
a Celery task) and passed around explicitly; nothing here is cached at
module level.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Index, func
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column, relationship
)

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    type_annotation_map = {datetime: DateTime(timezone=True)}

# ──────────────────────────────────────────────────────────────────────
# 2. Engine / session factory
# ──────────────────────────────────────────────────────────────────────
def build_url(url: Optional[str] = None) -> str:
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def create_engine(url: Optional[str] = None, **kwargs) -> AsyncEngine:
    if "poolclass" not in kwargs:
        kwargs.setdefault("pool_size", 5)
        kwargs.setdefault("max_overflow", 5)
    return create_async_engine(build_url(url), **kwargs)

def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Client(Base):
    __tablename__ = "clients"

    client_id:     Mapped[str]  = mapped_column(primary_key=True)
    first_name:    Mapped[str]  = mapped_column(default="")
    phone:         Mapped[str | None]
    visit_count:   Mapped[int]  = mapped_column(default=0)
    no_show_count: Mapped[int]  = mapped_column(default=0)
    is_vip:        Mapped[bool] = mapped_column(default=False)


class Service(Base):
    __tablename__ = "services"

    service_id: Mapped[str]   = mapped_column(primary_key=True)
    name:       Mapped[str]
    price:      Mapped[float] = mapped_column(default=0)


class Conversation(Base):
    __tablename__ = "conversations"

    conversation_id:           Mapped[str] = mapped_column(primary_key=True)
    client_id:                 Mapped[str | None] = mapped_column(ForeignKey("clients.client_id"))
    service_window_expires_at: Mapped[datetime | None]


class Booking(Base):
    __tablename__ = "bookings"

    booking_id:         Mapped[str]      = mapped_column(primary_key=True)
    client_id:          Mapped[str]      = mapped_column(ForeignKey("clients.client_id"))
    service_id:         Mapped[str]      = mapped_column(ForeignKey("services.service_id"))
    appointment_time:   Mapped[datetime]
    no_show_risk_score: Mapped[int]      = mapped_column(default=0)
    prevention_actions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    confirmation_read:  Mapped[bool]     = mapped_column(default=False)
    last_engagement_at: Mapped[datetime | None]
    created_at:         Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at:         Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )

    client:  Mapped[Client]  = relationship(lazy="joined")
    service: Mapped[Service] = relationship(lazy="joined")


class MessageTracking(Base):
    __tablename__ = "message_tracking"

    message_id:           Mapped[str]  = mapped_column(primary_key=True)
    conversation_id:      Mapped[str | None] = mapped_column(ForeignKey("conversations.conversation_id"))
    booking_id:           Mapped[str]  = mapped_column(ForeignKey("bookings.booking_id"))
    message_type:         Mapped[str]
    status:               Mapped[str]  = mapped_column(default="sent")
    sent_at:              Mapped[datetime]
    delivered_at:         Mapped[datetime | None]
    read_at:              Mapped[datetime | None]
    follow_up_scheduled:  Mapped[bool] = mapped_column(default=False)
    follow_up_sent_count: Mapped[int]  = mapped_column(default=0)
    risk_score:           Mapped[int]  = mapped_column(default=0)
    escalation_triggered: Mapped[bool] = mapped_column(default=False)
    next_check_tier:      Mapped[str | None]
    next_check_at:        Mapped[datetime | None]
    created_at:           Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at:           Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_message_tracking_booking", "booking_id", "message_type"),
        Index("ix_message_tracking_next_check", "next_check_at"),
        CheckConstraint(
            "read_at IS NULL OR (delivered_at IS NOT NULL AND delivered_at <= read_at)",
            name="ck_message_tracking_read_after_delivered",
        ),
    )


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (tests and local dev; production goes through Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
