"""Record store: callers, provider configurations and the usage ledger.

Rows are mapped with SQLAlchemy's asyncio extension. Public methods return
plain dataclasses so nothing lazy-loads outside a session.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Float, ForeignKey, Integer, String, func, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

HEALTH_STATUSES = frozenset({"healthy", "degraded", "unhealthy", "unconfigured"})
MUTABLE_CONFIG_FIELDS = frozenset(
    {
        "name",
        "endpoint",
        "deployment_name",
        "api_version",
        "api_key",
        "is_primary",
        "is_active",
        "max_tokens",
        "temperature",
        "rate_limit_rpm",
        "rate_limit_tpd",
    }
)


class LastActiveConfig(Exception):
    """The configuration is the only active one and cannot be removed."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="user")
    subscription_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class ProviderConfigRow(Base):
    __tablename__ = "provider_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    endpoint: Mapped[str] = mapped_column(String(1024), nullable=False)
    deployment_name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_version: Mapped[str] = mapped_column(String(64), nullable=False)
    api_key: Mapped[str] = mapped_column(String(2048), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    max_tokens: Mapped[Optional[int]] = mapped_column(Integer)
    temperature: Mapped[Optional[float]] = mapped_column(Float)
    rate_limit_rpm: Mapped[Optional[int]] = mapped_column(Integer)
    rate_limit_tpd: Mapped[Optional[int]] = mapped_column(Integer)
    last_health_check: Mapped[Optional[datetime]] = mapped_column(DateTime)
    health_status: Mapped[str] = mapped_column(String(32), nullable=False, default="unconfigured")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class UsageRecordRow(Base):
    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_type: Mapped[str] = mapped_column(String(32), nullable=False, default="chat")
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_estimated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow, index=True)


@dataclass(frozen=True)
class CallerRecord:
    id: str
    email: str
    role: str
    subscription_tier: str


@dataclass(frozen=True)
class ProviderConfigRecord:
    id: str
    name: str
    endpoint: str
    deployment_name: str
    api_version: str
    encrypted_api_key: str
    is_primary: bool
    is_active: bool
    max_tokens: int | None
    temperature: float | None
    rate_limit_rpm: int | None
    rate_limit_tpd: int | None
    last_health_check: datetime | None
    health_status: str
    created_at: datetime
    updated_at: datetime

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "endpoint": self.endpoint,
            "deploymentName": self.deployment_name,
            "apiVersion": self.api_version,
            "isPrimary": self.is_primary,
            "isActive": self.is_active,
            "maxTokens": self.max_tokens,
            "temperature": self.temperature,
            "rateLimitRpm": self.rate_limit_rpm,
            "rateLimitTpd": self.rate_limit_tpd,
            "lastHealthCheck": self.last_health_check.isoformat() if self.last_health_check else None,
            "healthStatus": self.health_status,
            "hasApiKey": bool(self.encrypted_api_key),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class NewUsageRecord:
    user_id: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_units: int
    is_estimated: bool = False
    is_partial: bool = False
    feature_type: str = "chat"


@dataclass(frozen=True)
class UsageRecord:
    id: str
    user_id: str
    model: str
    feature_type: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_units: int
    is_estimated: bool
    is_partial: bool
    created_at: datetime


@dataclass(frozen=True)
class UsageTotals:
    requests: int
    tokens: int
    cost_units: int


def _caller_from_row(row: UserRow) -> CallerRecord:
    return CallerRecord(id=row.id, email=row.email, role=row.role, subscription_tier=row.subscription_tier)


def _config_from_row(row: ProviderConfigRow) -> ProviderConfigRecord:
    return ProviderConfigRecord(
        id=row.id,
        name=row.name,
        endpoint=row.endpoint,
        deployment_name=row.deployment_name,
        api_version=row.api_version,
        encrypted_api_key=row.api_key,
        is_primary=bool(row.is_primary),
        is_active=bool(row.is_active),
        max_tokens=row.max_tokens,
        temperature=row.temperature,
        rate_limit_rpm=row.rate_limit_rpm,
        rate_limit_tpd=row.rate_limit_tpd,
        last_health_check=_aware(row.last_health_check),
        health_status=row.health_status,
        created_at=_aware(row.created_at) or row.created_at,
        updated_at=_aware(row.updated_at) or row.updated_at,
    )


def _usage_from_row(row: UsageRecordRow) -> UsageRecord:
    return UsageRecord(
        id=row.id,
        user_id=row.user_id,
        model=row.model,
        feature_type=row.feature_type,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        total_tokens=row.total_tokens,
        cost_units=int(row.cost_units),
        is_estimated=bool(row.is_estimated),
        is_partial=bool(row.is_partial),
        created_at=_aware(row.created_at) or row.created_at,
    )


def _make_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url, pool_pre_ping=not database_url.startswith("sqlite"))


class RecordStore:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.engine = _make_engine(database_url)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # callers

    async def get_caller(self, caller_id: str) -> CallerRecord | None:
        async with self._sessions() as session:
            row = await session.get(UserRow, caller_id)
            return _caller_from_row(row) if row is not None else None

    async def create_caller(
        self,
        email: str,
        *,
        subscription_tier: str = "free",
        role: str = "user",
        caller_id: str | None = None,
    ) -> CallerRecord:
        async with self._sessions.begin() as session:
            row = UserRow(
                id=caller_id or _new_id(),
                email=email,
                role=role,
                subscription_tier=subscription_tier,
            )
            session.add(row)
        return _caller_from_row(row)

    # provider configurations

    async def primary_provider_configs(self) -> list[ProviderConfigRecord]:
        stmt = (
            select(ProviderConfigRow)
            .where(ProviderConfigRow.is_active.is_(True), ProviderConfigRow.is_primary.is_(True))
            .order_by(ProviderConfigRow.updated_at.desc(), ProviderConfigRow.id.desc())
        )
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [_config_from_row(row) for row in rows]

    async def get_provider_config(self, config_id: str) -> ProviderConfigRecord | None:
        async with self._sessions() as session:
            row = await session.get(ProviderConfigRow, config_id)
            return _config_from_row(row) if row is not None else None

    async def list_provider_configs(self) -> list[ProviderConfigRecord]:
        stmt = select(ProviderConfigRow).order_by(ProviderConfigRow.created_at.desc())
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [_config_from_row(row) for row in rows]

    async def create_provider_config(
        self,
        *,
        name: str,
        endpoint: str,
        deployment_name: str,
        api_version: str,
        encrypted_api_key: str,
        is_primary: bool = False,
        is_active: bool = True,
        max_tokens: int | None = None,
        temperature: float | None = None,
        rate_limit_rpm: int | None = None,
        rate_limit_tpd: int | None = None,
    ) -> ProviderConfigRecord:
        async with self._sessions.begin() as session:
            if is_primary:
                await session.execute(
                    update(ProviderConfigRow)
                    .where(ProviderConfigRow.is_primary.is_(True))
                    .values(is_primary=False, updated_at=_utcnow())
                )
            row = ProviderConfigRow(
                name=name,
                endpoint=endpoint,
                deployment_name=deployment_name,
                api_version=api_version,
                api_key=encrypted_api_key,
                is_primary=is_primary,
                is_active=is_active,
                max_tokens=max_tokens,
                temperature=temperature,
                rate_limit_rpm=rate_limit_rpm,
                rate_limit_tpd=rate_limit_tpd,
            )
            session.add(row)
            await session.flush()
            record = _config_from_row(row)
        logger.info(f"provider_config created id={record.id} name={record.name} primary={is_primary}")
        return record

    async def set_primary(self, config_id: str) -> ProviderConfigRecord | None:
        async with self._sessions.begin() as session:
            row = await session.get(ProviderConfigRow, config_id)
            if row is None:
                return None
            await session.execute(
                update(ProviderConfigRow)
                .where(ProviderConfigRow.is_primary.is_(True), ProviderConfigRow.id != config_id)
                .values(is_primary=False, updated_at=_utcnow())
            )
            row.is_primary = True
            row.is_active = True
            row.updated_at = _utcnow()
            await session.flush()
            record = _config_from_row(row)
        logger.info(f"provider_config primary id={record.id} name={record.name}")
        return record

    async def update_provider_config(self, config_id: str, **changes: Any) -> ProviderConfigRecord | None:
        unknown = set(changes) - MUTABLE_CONFIG_FIELDS
        if unknown:
            raise ValueError(f"unknown provider config fields: {', '.join(sorted(unknown))}")
        async with self._sessions.begin() as session:
            row = await session.get(ProviderConfigRow, config_id)
            if row is None:
                return None
            if changes.get("is_primary"):
                await session.execute(
                    update(ProviderConfigRow)
                    .where(ProviderConfigRow.is_primary.is_(True), ProviderConfigRow.id != config_id)
                    .values(is_primary=False, updated_at=_utcnow())
                )
            for field, value in changes.items():
                setattr(row, field, value)
            row.updated_at = _utcnow()
            await session.flush()
            record = _config_from_row(row)
        logger.info(f"provider_config updated id={record.id} fields={','.join(sorted(changes))}")
        return record

    async def delete_provider_config(self, config_id: str) -> ProviderConfigRecord | None:
        """Delete a configuration unless it is the last active one and primary.

        Raises ``LastActiveConfig`` in that case; returns None for unknown ids.
        """
        async with self._sessions.begin() as session:
            row = await session.get(ProviderConfigRow, config_id)
            if row is None:
                return None
            if row.is_primary and row.is_active:
                active = await session.scalar(
                    select(func.count()).select_from(ProviderConfigRow).where(ProviderConfigRow.is_active.is_(True))
                )
                if active == 1:
                    raise LastActiveConfig(f"provider config {config_id} is the only active configuration")
            record = _config_from_row(row)
            await session.delete(row)
        logger.info(f"provider_config deleted id={record.id} name={record.name}")
        return record

    async def record_health_check(
        self, config_id: str, status: str, *, checked_at: datetime | None = None
    ) -> ProviderConfigRecord | None:
        if status not in HEALTH_STATUSES:
            raise ValueError(f"unknown health status '{status}'")
        async with self._sessions.begin() as session:
            row = await session.get(ProviderConfigRow, config_id)
            if row is None:
                return None
            row.health_status = status
            row.last_health_check = _naive_utc(checked_at or datetime.now(timezone.utc))
            await session.flush()
            return _config_from_row(row)

    # usage ledger

    async def insert_usage(self, record: NewUsageRecord, *, created_at: datetime | None = None) -> UsageRecord:
        async with self._sessions.begin() as session:
            row = UsageRecordRow(
                user_id=record.user_id,
                model=record.model,
                feature_type=record.feature_type,
                input_tokens=record.input_tokens,
                output_tokens=record.output_tokens,
                total_tokens=record.total_tokens,
                cost_units=record.cost_units,
                is_estimated=record.is_estimated,
                is_partial=record.is_partial,
                created_at=_naive_utc(created_at) if created_at is not None else _utcnow(),
            )
            session.add(row)
            await session.flush()
            return _usage_from_row(row)

    async def usage_totals_since(self, caller_id: str, since: datetime) -> UsageTotals:
        stmt = select(
            func.count(UsageRecordRow.id),
            func.coalesce(func.sum(UsageRecordRow.total_tokens), 0),
            func.coalesce(func.sum(UsageRecordRow.cost_units), 0),
        ).where(UsageRecordRow.user_id == caller_id, UsageRecordRow.created_at >= _naive_utc(since))
        async with self._sessions() as session:
            count, tokens, cost_units = (await session.execute(stmt)).one()
        return UsageTotals(requests=int(count or 0), tokens=int(tokens or 0), cost_units=int(cost_units or 0))

    async def list_usage(self, caller_id: str) -> list[UsageRecord]:
        stmt = (
            select(UsageRecordRow)
            .where(UsageRecordRow.user_id == caller_id)
            .order_by(UsageRecordRow.created_at.asc())
        )
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [_usage_from_row(row) for row in rows]
