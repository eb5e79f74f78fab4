from pydantic import BaseModel, Field
from typing import Optional, Dict
from datetime import datetime
import boto3


class AWSAccountResponse(BaseModel):
    id: str
    user_id: str
    account_name: str
    region: str = "us-east-1"
    is_active: bool = True
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AWSCredentials(BaseModel):
    """Decrypted AWS keys for a single operation. Never persisted."""
    access_key_id: str = Field(repr=False)
    secret_access_key: str = Field(repr=False)
    region: str = "us-east-1"

    def with_region(self, region: Optional[str]) -> "AWSCredentials":
        if not region or region == self.region:
            return self
        return self.model_copy(update={"region": region})

    def as_env(self) -> Dict[str, str]:
        """Environment variables for Terraform / AWS CLI subprocesses"""
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_DEFAULT_REGION": self.region,
            "AWS_REGION": self.region,
        }

    def client(self, service_name: str, region: Optional[str] = None):
        return boto3.client(
            service_name,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            region_name=region or self.region
        )
