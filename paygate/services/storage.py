"""
Object Storage - Signed URL issuance for protected resources.

Objects stay private in an S3-compatible bucket (Cloudflare R2 in production);
clients only ever receive short-lived presigned GET URLs.
"""

from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from paygate.exceptions import UpstreamError
from paygate.observability.logging import get_logger

logger = get_logger(__name__)


class SignedUrlIssuer(Protocol):
    """Issues time-limited URLs for private objects."""

    def issue_signed_url(self, resource_key: str, ttl_seconds: int) -> str:
        """
        Return a URL granting read access to resource_key for ttl_seconds.

        Raises:
            ValueError: If ttl_seconds is not positive
            UpstreamError: If the URL cannot be signed
        """
        ...


class S3SignedUrlIssuer:
    """Presigned GET URLs via boto3 (implements SignedUrlIssuer)."""

    def __init__(self, bucket: str, client: Any) -> None:
        """
        Args:
            bucket: Bucket holding the protected objects
            client: boto3 S3 client
        """
        if not bucket:
            raise ValueError("storage bucket is required")
        self.bucket = bucket
        self.client = client

    @classmethod
    def from_credentials(
        cls,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: str | None = None,
        region: str = "auto",
    ) -> "S3SignedUrlIssuer":
        """Build an issuer with its own S3 client."""
        client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            config=Config(signature_version="s3v4"),
        )
        return cls(bucket=bucket, client=client)

    def issue_signed_url(self, resource_key: str, ttl_seconds: int) -> str:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive: {ttl_seconds}")
        if not resource_key:
            raise ValueError("resource_key cannot be empty")

        try:
            url: str = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": resource_key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("signed_url_failed", resource_key=resource_key, error=str(e))
            raise UpstreamError("could not sign storage URL") from e

        logger.debug("signed_url_issued", resource_key=resource_key, ttl_seconds=ttl_seconds)
        return url
