"""
Brand + ApiSetting models.

Brand carries the monthly usage counters the quota gate reads. ApiSetting maps
an upstream email-account id (embedded in the webhook URL) to its brand and
stored SmartLead credential.
"""
from sqlalchemy import Column, Integer, Text, DateTime, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class Brand(Base):
    __tablename__ = 'brands'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, default='')
    subscription_plan = Column(Text, nullable=False, default='trial')
    leads_used_this_month = Column(Integer, nullable=False, default=0)
    max_leads_per_month = Column(Integer, nullable=False, default=100)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ApiSetting(Base):
    __tablename__ = 'api_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Text, nullable=False)
    brand_id = Column(Integer, nullable=False)
    esp_provider = Column(Text, nullable=False, default='smartlead')
    encrypted_api_key = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('account_id', name='uq_api_settings_account_id'),
    )
