"""
Accounts — credentials, access tokens и сериализация операций над аккаунтами.
"""

from quota_waker.accounts.credentials import Credential, CredentialStore, StoredCredentials
from quota_waker.accounts.lock import AccountLock
from quota_waker.accounts.manager import AccountManager
from quota_waker.accounts.tokens import OAuthTokenProvider, TokenProvider, TokenStatus

__all__ = [
    "AccountLock",
    "AccountManager",
    "Credential",
    "CredentialStore",
    "OAuthTokenProvider",
    "StoredCredentials",
    "TokenProvider",
    "TokenStatus",
]
