"""
S3 object store client for backup snapshots.

Keys are ``/``-delimited. Snapshots live under ``{snapshot_id}/{filename}``
and the delimiter grouping of ``list_objects_v2`` yields one common prefix
per snapshot.
"""

import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import BackupCancelled, ListingError, TransportError

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


@dataclass
class ListResult:
    """Result of a prefix listing: grouped sub-prefixes and plain keys."""
    common_prefixes: List[str] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Thin wrapper around an S3 bucket exposing put, list and delete.

    botocore retries are disabled: a failed call fails the operation.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        connect_timeout: int = 10,
        read_timeout: int = 60
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default credential chain when omitted)
            secret_key: AWS secret access key
            endpoint_url: Endpoint of an S3-compatible service
            connect_timeout: Seconds to wait for a connection
            read_timeout: Seconds to wait for a response
        """
        self.bucket_name = bucket_name
        self.region = region

        client_config = BotoConfig(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={'total_max_attempts': 1, 'mode': 'standard'}
        )

        client_kwargs = {
            'region_name': region,
            'config': client_config,
        }
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise TransportError(f"Failed to initialize S3 client: {e}", operation='init') from e

    def url(self, key: str = '') -> str:
        return f"s3://{self.bucket_name}/{key}"

    def put(
        self,
        key: str,
        body: BinaryIO,
        size: Optional[int] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Stream a binary file object to ``key``.

        Args:
            key: S3 object key
            body: Readable binary file object
            size: Body size in bytes, used to choose multipart upload
            cancellation_check: Called before a single put and between multipart parts,
                raises to abort. A single put already in flight runs to completion.

        Raises:
            TransportError: If the upload fails
            BackupCancelled: If cancellation_check aborts the upload
        """
        try:
            if size is not None and size > MULTIPART_THRESHOLD:
                self._multipart_upload(key, body, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=body)
        except ClientError as e:
            raise TransportError(
                f"S3 upload of {key} failed ({_error_code(e)}): {e}", operation='put', key=key
            ) from e
        except (BotoCoreError, OSError) as e:
            raise TransportError(f"S3 upload of {key} failed: {e}", operation='put', key=key) from e

    def _multipart_upload(
        self,
        key: str,
        body: BinaryIO,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """Upload a large body in chunks, aborting the upload on any error."""
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            part_number = 1
            while True:
                if cancellation_check:
                    cancellation_check()

                data = body.read(MULTIPART_CHUNK_SIZE)
                if not data:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )
                parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except (ClientError, BotoCoreError, OSError, BackupCancelled):
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def list(self, prefix: str = '', delimiter: Optional[str] = '/') -> ListResult:
        """
        List keys and common prefixes under ``prefix``.

        Args:
            prefix: Key prefix to filter by ('' for the bucket root)
            delimiter: Grouping delimiter, or None to list recursively

        Returns:
            ListResult with common prefixes and keys in store order

        Raises:
            ListingError: If listing fails
        """
        params = {'Bucket': self.bucket_name, 'Prefix': prefix}
        if delimiter:
            params['Delimiter'] = delimiter

        result = ListResult()
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(**params):
                for common_prefix in page.get('CommonPrefixes', []):
                    result.common_prefixes.append(common_prefix['Prefix'])
                for obj in page.get('Contents', []):
                    result.keys.append(obj['Key'])
        except ClientError as e:
            raise ListingError(
                f"S3 list of {self.url(prefix)} failed ({_error_code(e)}): {e}", prefix=prefix
            ) from e
        except BotoCoreError as e:
            raise ListingError(f"S3 list of {self.url(prefix)} failed: {e}", prefix=prefix) from e

        return result

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            TransportError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            raise TransportError(
                f"S3 delete of {key} failed ({_error_code(e)}): {e}", operation='delete', key=key
            ) from e
        except BotoCoreError as e:
            raise TransportError(f"S3 delete of {key} failed: {e}", operation='delete', key=key) from e

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            TransportError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                message = f"Bucket does not exist: {self.bucket_name}"
            elif error_code in ('403', 'AccessDenied'):
                message = f"Access denied to bucket: {self.bucket_name}"
            else:
                message = f"S3 connection test failed ({error_code}): {e}"
            raise TransportError(message, operation='head_bucket') from e
        except BotoCoreError as e:
            raise TransportError(f"Failed to connect to S3: {e}", operation='head_bucket') from e
