"""
Gmail API integration package
"""
from .auth import CredentialStore, get_user_email
from .client import GmailProvider

__all__ = ['CredentialStore', 'GmailProvider', 'get_user_email']
