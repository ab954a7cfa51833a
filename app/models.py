"""
Database models for the Product Builder backend
SQLAlchemy ORM model for the durable shop-data cache
"""
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class StoreCache(Base):
    """
    Cached artifact for one shop and one data type (vendors, productTypes, ...)
    One record per (shop, data_type); refreshes overwrite the row in place
    """
    __tablename__ = "store_cache"

    id = Column(String(36), primary_key=True, default=_new_id)
    shop = Column(String(255), nullable=False)
    data_type = Column(String(50), nullable=False)
    data = Column(Text, nullable=False)  # serialized envelope
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    # Constraints
    __table_args__ = (
        UniqueConstraint("shop", "data_type", name="uix_store_cache_shop_data_type"),
        Index("ix_store_cache_shop", "shop"),
        Index("ix_store_cache_expires_at", "expires_at"),
    )

    def __repr__(self):
        return f"<StoreCache(shop='{self.shop}', data_type='{self.data_type}', expires_at={self.expires_at})>"
