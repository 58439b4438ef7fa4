"""
Security Gates - RLS

Row-level security, cross-user access control and migration safety.
"""

from .database import DatabaseConnection, is_access_denied
from .gate import MigrationValidation, RLSGate, SecurityImpact
from .testers import AccessControlTester, PrivilegeTester, RLSTester

__all__ = [
    "AccessControlTester",
    "DatabaseConnection",
    "MigrationValidation",
    "PrivilegeTester",
    "RLSGate",
    "RLSTester",
    "SecurityImpact",
    "is_access_denied",
]
