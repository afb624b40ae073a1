from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String

from app.database import Base


class TokenDuration(str, Enum):
    three_months = "3month"
    six_months = "6month"
    one_year = "1year"


class TokenStatus(str, Enum):
    active = "Active"
    in_use = "InUse"


class TokenGenerate(Base):
    __tablename__ = "tokengenerate"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(16), unique=True, index=True, nullable=False)
    duration = Column(String, nullable=False)
    status = Column(String, default=TokenStatus.active.value, nullable=False)
    createdat = Column(DateTime, default=datetime.utcnow, nullable=False)
    expiresat = Column(DateTime, nullable=False)
    # Plain integer reference; user deletion does not cascade here
    userid = Column(Integer, nullable=True, index=True)
