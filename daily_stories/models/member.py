import enum

from sqlalchemy import Column, DateTime, Enum, Integer, String

from ..database import Base
from ..utils.time_buckets import utcnow


class MemberStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    # Credentials are issued and checked by the auth service
    password = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    avatar = Column(String(512), nullable=True)
    status = Column(
        Enum(MemberStatus, values_callable=lambda statuses: [s.value for s in statuses]),
        nullable=False,
        default=MemberStatus.ACTIVE,
    )
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
