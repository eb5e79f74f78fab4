from supabase import Client
from cryptography.fernet import Fernet, InvalidToken
from fastapi import HTTPException
from typing import Optional
from app.config import settings
from app.core.exceptions import CredentialError
from app.modules.credentials.schemas import AWSAccountResponse, AWSCredentials
import logging

logger = logging.getLogger(__name__)


class CredentialService:
    """Reads AWS account rows and decrypts their keys on demand."""

    def __init__(self, supabase: Client, encryption_key: Optional[str] = None):
        self.supabase = supabase
        self.encryption_key = encryption_key or settings.credentials_encryption_key

    def _fernet(self) -> Fernet:
        if not self.encryption_key:
            raise CredentialError("CREDENTIALS_ENCRYPTION_KEY is not configured")
        try:
            return Fernet(self.encryption_key.encode() if isinstance(self.encryption_key, str) else self.encryption_key)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid credentials encryption key: {str(e)}")

    def _get_account_row(self, account_id: str) -> dict:
        try:
            result = self.supabase.table("aws_accounts")\
                .select("*")\
                .eq("id", account_id)\
                .maybe_single()\
                .execute()
        except Exception as e:
            logger.error(f"Error getting AWS account: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
        if not result or not result.data:
            raise HTTPException(status_code=404, detail="AWS account not found")
        return result.data

    def get_account(self, account_id: str, user_id: str) -> AWSAccountResponse:
        """Get an AWS account owned by user_id"""
        row = self._get_account_row(account_id)
        if row.get("user_id") != user_id:
            raise HTTPException(status_code=404, detail="AWS account not found")
        return AWSAccountResponse(**row)

    def decrypt(self, token: str) -> str:
        if not token:
            raise CredentialError("Stored credential is empty")
        try:
            return self._fernet().decrypt(token.encode()).decode()
        except InvalidToken:
            raise CredentialError("Failed to decrypt AWS credentials")

    def get_credentials(self, account_id: str, region: Optional[str] = None) -> AWSCredentials:
        """Decrypt the access key pair for account_id. Raises CredentialError on failure."""
        row = self._get_account_row(account_id)
        credentials = AWSCredentials(
            access_key_id=self.decrypt(row.get("access_key", "")),
            secret_access_key=self.decrypt(row.get("secret_key", "")),
            region=row.get("region") or settings.aws_region
        )
        return credentials.with_region(region)
