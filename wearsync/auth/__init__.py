"""Auth module - secure credential storage and token refresh."""

from .keychain import KeychainManager, StoredCredentials, user_key_for
from .token_refresh import TokenRefreshCoordinator

__all__ = ["KeychainManager", "StoredCredentials", "TokenRefreshCoordinator", "user_key_for"]
