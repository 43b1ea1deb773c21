"""Pipeline steps: each class moves one component from source to target."""

from .auth import AuthSync
from .data import DataSync
from .dump import PgDumpRunner
from .roles import RolesSync, filter_role_statements
from .schema import SchemaSync, sanitize_schema_statements
from .sequences import SequenceInfo, SequenceSync
from .storage import StorageSync
from .verify import RowCountVerifier, VerificationReport, VerificationResult

__all__ = [
    'AuthSync',
    'DataSync',
    'PgDumpRunner',
    'RolesSync',
    'filter_role_statements',
    'SchemaSync',
    'sanitize_schema_statements',
    'SequenceInfo',
    'SequenceSync',
    'StorageSync',
    'RowCountVerifier',
    'VerificationReport',
    'VerificationResult',
]
