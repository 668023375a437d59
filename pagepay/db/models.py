from sqlalchemy import Column, String, Integer, DateTime, JSON, Text
from sqlalchemy.orm import declarative_base

from pagepay.models.order import utcnow

Base = declarative_base()


class OrderRecord(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    out_trade_no = Column(String(64), unique=True, nullable=False, index=True)
    subject = Column(String(256), nullable=False)
    body = Column(Text, nullable=False, default="")
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    trade_no = Column(String, index=True)
    buyer_logon_id = Column(String)
    payment_time = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, index=True)
    type = Column(String, nullable=False)
    payload_json = Column(JSON)
    ts = Column(DateTime, default=utcnow)


class ProcessedNotification(Base):
    __tablename__ = "processed_notifications"

    notify_id = Column(String, primary_key=True)
    out_trade_no = Column(String(64))
    processed_at = Column(DateTime, default=utcnow)
