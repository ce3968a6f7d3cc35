"""OAuth2 PKCE sign-in and token lifecycle for the Ansible Wisdom service.

Provides the authentication provider, PKCE helpers, secret and token
storage, and the event primitives a host uses to deliver redirects.
"""

from __future__ import annotations

from .callback_server import RedirectCallbackServer
from .client import WisdomServiceClient
from .config import WisdomSettings, get_settings
from .events import (
    CancellationToken,
    CancellationTokenSource,
    Disposable,
    EventEmitter,
    UriEventHandler,
)
from .exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    InconsistencyError,
    StorageError,
    TokenRefreshError,
    TransportError,
    ValidationError,
    WisdomAuthException,
)
from .host import LoggingNotifier, Notifier, build_redirect_uri
from .pkce import PKCEChallenge
from .provider import WisdomAuthenticationProvider
from .redirect import EventWaiter, wait_for_event
from .secret_store import (
    KeyringSecretStorage,
    MemorySecretStorage,
    SecretStorage,
    get_secret_storage,
    reset_secret_storage,
)
from .token_store import TokenStore
from .types import (
    AuthenticationSession,
    AuthFlowState,
    OAuthAccount,
    SessionAccount,
    SessionChangeEvent,
)


__version__ = "0.1.0"

__all__ = [
    "AuthFlowCancelled",
    "AuthFlowState",
    "AuthFlowTimeout",
    "AuthenticationError",
    "AuthenticationSession",
    "CancellationToken",
    "CancellationTokenSource",
    "Disposable",
    "EventEmitter",
    "EventWaiter",
    "InconsistencyError",
    "KeyringSecretStorage",
    "LoggingNotifier",
    "MemorySecretStorage",
    "Notifier",
    "OAuthAccount",
    "PKCEChallenge",
    "RedirectCallbackServer",
    "SecretStorage",
    "SessionAccount",
    "SessionChangeEvent",
    "StorageError",
    "TokenRefreshError",
    "TokenStore",
    "TransportError",
    "UriEventHandler",
    "ValidationError",
    "WisdomAuthException",
    "WisdomAuthenticationProvider",
    "WisdomServiceClient",
    "WisdomSettings",
    "build_redirect_uri",
    "get_secret_storage",
    "get_settings",
    "reset_secret_storage",
    "wait_for_event",
]
