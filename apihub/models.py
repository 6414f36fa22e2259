from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
import uuid
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")


class RegisteredApi(Base):
    __tablename__ = 'apis'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    slug = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    base_url = Column(String, nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True)
    # sent to the upstream on every proxied call (upstream auth tokens etc.)
    custom_headers = Column(JSONB, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    endpoints = relationship(
        "Endpoint",
        back_populates="api",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="[Endpoint.created_at, Endpoint.id]",
    )

    @property
    def active_endpoints(self):
        return [endpoint for endpoint in self.endpoints if endpoint.is_active]


class Endpoint(Base):
    __tablename__ = 'api_endpoints'
    __table_args__ = (
        UniqueConstraint('api_id', 'method', 'path', name='api_method_path_idx'),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    api_id = Column(UUID(as_uuid=True), ForeignKey('apis.id', ondelete='CASCADE'), nullable=False, index=True)

    # may contain {param} placeholders, e.g. "/weather/{city}"
    path = Column(String, nullable=False)
    method = Column(String(10), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    parameters = Column(JSONB, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    api = relationship("RegisteredApi", back_populates="endpoints")


class APIKey(Base):
    __tablename__ = 'api_keys'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String, nullable=False, default="API Key")

    # anonymous temporary keys have no owner and are scoped by ip_address
    owner_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    ip_address = Column(String, nullable=True, index=True)

    is_active = Column(Boolean, nullable=False, default=True)
    # None means the key may be used on any route
    allowed_routes = Column(JSONB, nullable=True)
    rate_limit_per_hour = Column(Integer, nullable=False, default=100)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True)


class UsageRecord(Base):
    __tablename__ = 'api_requests'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    api_id = Column(UUID(as_uuid=True), ForeignKey('apis.id', ondelete='CASCADE'), nullable=False, index=True)
    api_key_id = Column(UUID(as_uuid=True), ForeignKey('api_keys.id', ondelete='SET NULL'), nullable=True)
    endpoint_id = Column(UUID(as_uuid=True), ForeignKey('api_endpoints.id', ondelete='SET NULL'), nullable=True)

    method = Column(String(10), nullable=False)
    path = Column(String, nullable=False)
    status_code = Column(Integer, nullable=False)
    response_time_ms = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
