"""
Lead model — one row per inbound lead reply (the inbox record).

`intent` stays null until an ai_intent task succeeds; `processed` flips to
true once AI processing has finished for good (scored or terminally failed).
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, Text, Boolean, DateTime, JSON, Enum, Index

from app.database import Base


class LeadStatus(str, enum.Enum):
    INBOX = 'INBOX'
    FOLLOW_UP = 'FOLLOW_UP'
    ARCHIVED = 'ARCHIVED'


class LeadRecord(Base):
    __tablename__ = 'leads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Integer, nullable=False)
    email_account_id = Column(Text, nullable=True)
    lead_email = Column(Text, nullable=False)
    first_name = Column(Text, default='')
    last_name = Column(Text, default='')
    website = Column(Text, default='')
    phone = Column(Text, nullable=True)
    subject = Column(Text, default='')
    lead_category = Column(Text, default='1')
    campaign_id = Column(Text, nullable=True)
    campaign_name = Column(Text, nullable=True)
    external_lead_id = Column(Text, nullable=True)   # SmartLead email lead id
    conversation = Column(JSON, default=list)         # raw message history
    parsed_conversation = Column(JSON, nullable=True) # ConversationSummary.to_dict()
    intent = Column(Integer, nullable=True)           # 1-10
    processed = Column(Boolean, nullable=False, default=False)
    status = Column(
        Enum(LeadStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False, default=LeadStatus.INBOX,
    )
    last_reply_time = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        Index('ix_leads_brand_email', 'brand_id', 'lead_email'),
        Index('ix_leads_unprocessed', 'processed', 'created_at'),
    )
