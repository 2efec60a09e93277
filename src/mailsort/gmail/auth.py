"""
Gmail API authentication, one stored token per account
"""
import logging
import os
from pathlib import Path
from typing import List, Optional

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from mailsort.errors import ProviderError

logger = logging.getLogger(__name__)

# If modifying these scopes, delete the stored account tokens.
SCOPES = [
    'https://www.googleapis.com/auth/gmail.modify',  # Read, modify and send but not delete
    'https://www.googleapis.com/auth/gmail.labels',  # Manage labels
]


def get_client_config():
    """Get OAuth client configuration from environment variables"""
    return {
        "installed": {
            "client_id": os.getenv("GMAIL_CLIENT_ID"),
            "project_id": os.getenv("GMAIL_PROJECT_ID"),
            "auth_uri": os.getenv("GMAIL_AUTH_URI", "https://accounts.google.com/o/oauth2/auth"),
            "token_uri": os.getenv("GMAIL_TOKEN_URI", "https://oauth2.googleapis.com/token"),
            "auth_provider_x509_cert_url": os.getenv("GMAIL_AUTH_PROVIDER_CERT_URL"),
            "client_secret": os.getenv("GMAIL_CLIENT_SECRET"),
            "redirect_uris": ["http://localhost"]
        }
    }


def get_user_email(service) -> Optional[str]:
    """Get the email address of the authenticated user"""
    try:
        profile = service.users().getProfile(userId='me').execute()
        return profile.get('emailAddress')
    except Exception as e:
        logger.error(f"Error getting user email: {e}")
        return None


class CredentialStore:
    """Authorized-user tokens kept as `<account>.json` files in one directory"""

    def __init__(self, token_dir: str):
        self.token_dir = Path(token_dir)

    def token_path(self, account_id: str) -> Path:
        return self.token_dir / f"{account_id}.json"

    def list_accounts(self) -> List[str]:
        """Accounts that have a stored token"""
        if not self.token_dir.is_dir():
            return []
        return sorted(path.stem for path in self.token_dir.glob('*.json'))

    def load_credentials(self, account_id: str) -> Credentials:
        """Load an account's credentials, refreshing and re-saving them if expired"""
        path = self.token_path(account_id)
        if not path.exists():
            raise ProviderError(f"No stored credentials for account {account_id}")

        creds = Credentials.from_authorized_user_file(str(path), SCOPES)
        if not creds.valid:
            if creds.expired and creds.refresh_token:
                creds.refresh(Request())
                self.save_credentials(account_id, creds)
            else:
                raise ProviderError(f"Credentials for account {account_id} are no longer valid, log in again")
        return creds

    def save_credentials(self, account_id: str, creds: Credentials) -> None:
        self.token_dir.mkdir(parents=True, exist_ok=True)
        self.token_path(account_id).write_text(creds.to_json())

    def get_service(self, account_id: str):
        """Get an authorized Gmail API service instance for an account"""
        return build('gmail', 'v1', credentials=self.load_credentials(account_id), cache_discovery=False)

    def authorize(self) -> str:
        """Run the installed-app OAuth flow and store the token of the new account"""
        flow = InstalledAppFlow.from_client_config(get_client_config(), SCOPES)
        creds = flow.run_local_server(port=0)

        service = build('gmail', 'v1', credentials=creds, cache_discovery=False)
        account_id = get_user_email(service)
        if not account_id:
            raise ProviderError("Failed to get user email")

        self.save_credentials(account_id, creds)
        logger.info(f"Stored credentials for {account_id}")
        return account_id
