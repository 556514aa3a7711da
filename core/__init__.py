# Policy Decision Point - Core Modules
# Normalizer, RBAC/ABAC stages, decision assembly, cache and audit

from .audit import AuditLogger, AuditSink, DatabaseAuditSink, LoggingAuditSink
from .cache import DecisionCache
from .catalog import CatalogSnapshot, RoleCatalogProvider, load_catalog_from_session, seed_catalog
from .config import PolicyConfig
from .engine import PolicyEngine
from .errors import (
    AuthzError,
    CacheError,
    CatalogUnavailableError,
    PolicyConfigurationError,
    RequestValidationError,
)
from .mfa import InMemorySessionStore, MFASession, SessionStore

__all__ = [
    'AuditLogger',
    'AuditSink',
    'DatabaseAuditSink',
    'LoggingAuditSink',
    'DecisionCache',
    'CatalogSnapshot',
    'RoleCatalogProvider',
    'load_catalog_from_session',
    'seed_catalog',
    'PolicyConfig',
    'PolicyEngine',
    'AuthzError',
    'CacheError',
    'CatalogUnavailableError',
    'PolicyConfigurationError',
    'RequestValidationError',
    'InMemorySessionStore',
    'MFASession',
    'SessionStore',
]
