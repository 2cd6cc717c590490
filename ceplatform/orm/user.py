"""
ceplatform/orm/user.py
Identity mirror for learners and administrators

Credentials live with the identity provider; this table only records who a
token subject is and which role they hold.
"""
from sqlalchemy import Column, Integer, String, Boolean, Enum as SQLEnum
from enum import Enum

from ceplatform.orm.base import Base


class UserRole(str, Enum):
    """Learners take courses; admins may perform audited overrides."""
    learner = "learner"
    admin = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(200), nullable=False)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.learner, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
