from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from genflow.db.base import Base


class CreditAccountRow(Base):
    __tablename__ = 'credit_accounts'

    actor_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    balance_credits: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal('0'))
    reserved_credits: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal('0'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    reservations: Mapped[list['CreditReservationRow']] = relationship(back_populates='account')
    ledger_entries: Mapped[list['CreditLedgerRow']] = relationship(back_populates='account')


class CreditReservationRow(Base):
    __tablename__ = 'credit_reservations'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor_id: Mapped[str] = mapped_column(ForeignKey('credit_accounts.actor_id'), index=True)
    amount_credits: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    spent_credits: Mapped[Decimal | None] = mapped_column(Numeric(12, 3), nullable=True)
    reason: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), index=True, default='held')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    account: Mapped['CreditAccountRow'] = relationship(back_populates='reservations')


class CreditLedgerRow(Base):
    __tablename__ = 'credit_ledger'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(ForeignKey('credit_accounts.actor_id'), index=True)
    delta_credits: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    reason: Mapped[str] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column(JSON, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    account: Mapped['CreditAccountRow'] = relationship(back_populates='ledger_entries')


class GenerationJobRow(Base):
    __tablename__ = 'generation_jobs'

    reservation_id: Mapped[str] = mapped_column(ForeignKey('credit_reservations.id'), primary_key=True)
    provider_job_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    actor_id: Mapped[str] = mapped_column(String(128), index=True)
    capability: Mapped[str] = mapped_column(String(64))
    state: Mapped[str] = mapped_column(String(16), index=True)
    credits_reserved: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    credits_settled: Mapped[Decimal | None] = mapped_column(Numeric(12, 3), nullable=True)
    params: Mapped[dict] = mapped_column(JSON, default=dict)
    quote: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result_urls: Mapped[list] = mapped_column(JSON, default=list)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    poll_attempt: Mapped[int] = mapped_column(Integer, default=0)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
