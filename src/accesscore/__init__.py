from .config import PortalConfig, PortalSecurityConfig, LogLevel, load_config_from_env
from .models import (
    AccessRequest,
    Collections,
    Contact,
    Profile,
    RequestStatus,
    RoleClaims,
    Service,
    Team,
)
from .tokens import IdentityToken, IdentityTokenIssuer
from .claims import ClaimsIssuer, DocumentIdentityProvider, IdentityProvider
from .permissions import Actions, RoleSnapshot, can
from .store import DocumentStore, MemoryDocumentStore, create_store
from .roles import RoleChange, RoleConsistencyEngine
from .requests import AccessRequestLifecycle
from .directory import Directory, resolve_caller
from .events import error_emitter
from .logging import (
    safe_preview,
    redact_secrets,
    safe_log_value,
    PortalLogFormatter,
    ActorLoggerAdapter,
    setup_logging,
    get_actor_logger,
)

__version__ = "0.1.0"

__all__ = [
    'AccessRequest',
    'AccessRequestLifecycle',
    'Actions',
    'ClaimsIssuer',
    'Collections',
    'Contact',
    'Directory',
    'DocumentIdentityProvider',
    'DocumentStore',
    'IdentityProvider',
    'IdentityToken',
    'IdentityTokenIssuer',
    'LogLevel',
    'MemoryDocumentStore',
    'PortalConfig',
    'PortalSecurityConfig',
    'Profile',
    'RequestStatus',
    'RoleChange',
    'RoleClaims',
    'RoleConsistencyEngine',
    'RoleSnapshot',
    'Service',
    'Team',
    'can',
    'create_store',
    'error_emitter',
    'load_config_from_env',
    'resolve_caller',
    'safe_preview',
    'redact_secrets',
    'safe_log_value',
    'PortalLogFormatter',
    'ActorLoggerAdapter',
    'setup_logging',
    'get_actor_logger',
]
