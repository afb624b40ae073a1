from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from app.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    password = Column(String, nullable=False)  # bcrypt hash

    # Live session pair; both null when signed out
    session_token = Column(String, nullable=True)
    active_session_id = Column(String, nullable=True)
    login_count = Column(Integer, default=0, nullable=False)
    last_login = Column(DateTime, nullable=True)
    last_logout = Column(DateTime, nullable=True)

    # Deployment record
    deploy_timestamp = Column(DateTime, nullable=True)
    active_form_number = Column(Integer, nullable=True)
    active_run_id = Column(String, nullable=True)

    # Denormalized copy of the invitation token string
    token = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
