"""Clients for the two endpoints of a sync: PostgreSQL and the storage API."""

from .postgres import (
    PostgresConnector,
    SslPreferenceCache,
    classify_connection_error,
    count_rows,
    is_loopback_host,
    is_ssl_error,
    list_tables,
    suspended_enforcement,
    check_connection,
)
from .storage import BucketDescriptor, ObjectDescriptor, StorageClient

__all__ = [
    'PostgresConnector',
    'SslPreferenceCache',
    'classify_connection_error',
    'count_rows',
    'is_loopback_host',
    'is_ssl_error',
    'list_tables',
    'suspended_enforcement',
    'check_connection',
    'BucketDescriptor',
    'ObjectDescriptor',
    'StorageClient',
]
