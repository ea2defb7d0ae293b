"""Database utilities for the Living Library service."""

from . import models
from .database import get_session, init_db
from .repositories import UserRepo, FragmentRepo, LinkRepo, AuditRepo

__all__ = [
    "models",
    "get_session",
    "init_db",
    "UserRepo",
    "FragmentRepo",
    "LinkRepo",
    "AuditRepo",
]
