from sqlalchemy import Column, DateTime, Integer, String

from app.database import Base


class Admin(Base):
    __tablename__ = "admin"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)
    active_session_id = Column(String, nullable=True)
    session_expires_at = Column(DateTime, nullable=True)
