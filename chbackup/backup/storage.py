"""
S3 storage client for backup data.

Keys are always placed under the configured ``s3.path`` prefix. Every
mutating request honours dry-run; listings are still performed so that a
dry run reports what would change.
"""

import os
import hashlib
import logging
import posixpath
from typing import Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from ..config import S3Config
from ..models import BackupObject


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
CHUNK_SIZE = 10 * 1024 * 1024  # 10MB
DELETE_BATCH_SIZE = 1000


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


def _file_md5(path: str) -> str:
    digest = hashlib.md5()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


class S3Storage:
    """
    Handler for backup objects in an S3 compatible bucket.
    """

    def __init__(self, config: S3Config, dry_run: bool = False):
        """
        Initialize S3 storage handler.

        Args:
            config: S3 section of the configuration
            dry_run: Skip every mutating request
        """
        self.config = config
        self.bucket_name = config.bucket
        self.prefix = config.path.strip('/')
        self.dry_run = dry_run

        client_kwargs = {
            'region_name': config.region or None,
            'use_ssl': not config.disable_ssl,
            'config': BotoConfig(
                s3={'addressing_style': 'path' if config.force_path_style else 'auto'}
            ),
        }
        if config.endpoint:
            client_kwargs['endpoint_url'] = config.endpoint
        if config.access_key:
            client_kwargs['aws_access_key_id'] = config.access_key
            client_kwargs['aws_secret_access_key'] = config.secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def key(self, remote: str) -> str:
        """Full object key for a path relative to the backup prefix."""
        remote = remote.strip('/')
        if not self.prefix:
            return remote
        if not remote:
            return self.prefix
        return f"{self.prefix}/{remote}"

    def connect(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageError(f"Bucket does not exist: {self.bucket_name}") from e
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}") from e
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}") from e

    def upload_file(self, local_path: str, remote: str) -> str:
        """
        Upload one file.

        Args:
            local_path: Path to local file
            remote: Destination relative to the backup prefix

        Returns:
            Object key of the uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.isfile(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        s3_key = self.key(remote)
        if self.dry_run:
            logger.info(f"[dry-run] upload {local_path} -> s3://{self.bucket_name}/{s3_key}")
            return s3_key

        try:
            file_size = os.path.getsize(local_path)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)
            logger.debug(f"Uploaded {local_path} -> {s3_key} ({file_size} bytes)")
            return s3_key

        except ClientError as e:
            raise StorageError(f"S3 upload of {s3_key} failed ({_error_code(e)}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload of {s3_key} failed: {e}") from e

    def _acl_args(self) -> Dict[str, str]:
        return {'ACL': self.config.acl} if self.config.acl else {}

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                **self._acl_args()
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload large file in CHUNK_SIZE parts.

        The multipart upload is aborted if any part fails.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            **self._acl_args()
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {s3_key}: {abort_error}")
            raise

    def _list_raw(self, prefix: str, delimiter: Optional[str] = None) -> List[Dict]:
        objects = []
        paginator = self.s3_client.get_paginator('list_objects_v2')
        kwargs = {'Bucket': self.bucket_name, 'Prefix': prefix}
        if delimiter:
            kwargs['Delimiter'] = delimiter

        try:
            for page in paginator.paginate(**kwargs):
                objects.extend(page.get('Contents', []))
        except ClientError as e:
            raise StorageError(f"S3 list of {prefix} failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects under {prefix}: {e}") from e

        return objects

    def list_objects(self, prefix: str = '', recursive: bool = True) -> List[BackupObject]:
        """
        List objects under a path relative to the backup prefix.

        Args:
            prefix: Path relative to the backup prefix
            recursive: If False, only objects directly under the prefix

        Returns:
            List of BackupObject

        Raises:
            StorageError: If listing fails
        """
        key_prefix = self.key(prefix)
        if key_prefix:
            key_prefix += '/'
        delimiter = None if recursive else '/'

        return [
            BackupObject(
                key=obj['Key'],
                last_modified=obj['LastModified'],
                size=obj['Size'],
                etag=obj.get('ETag', '').strip('"')
            )
            for obj in self._list_raw(key_prefix, delimiter)
        ]

    def delete_objects(self, objects: List[BackupObject]):
        """
        Delete objects in batches.

        Raises:
            StorageError: If any object could not be deleted
        """
        keys = [obj.key for obj in objects]
        if not keys:
            return

        if self.dry_run:
            for key in keys:
                logger.info(f"[dry-run] delete s3://{self.bucket_name}/{key}")
            return

        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            try:
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True}
                )
            except ClientError as e:
                raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}") from e
            except BotoCoreError as e:
                raise StorageError(f"Failed to delete from S3: {e}") from e

            errors = response.get('Errors', [])
            if errors:
                failed = ', '.join(f"{err['Key']} ({err.get('Code', 'Unknown')})" for err in errors)
                raise StorageError(f"S3 delete failed for: {failed}")

            logger.debug(f"Deleted {len(batch)} objects from s3://{self.bucket_name}")

    def upload_directory(self, local_dir: str, remote: str) -> Dict[str, int]:
        """
        Mirror a local directory to a remote path.

        Objects with the same size and MD5 ETag are skipped; remote objects
        without a local counterpart are deleted.

        Returns:
            Dict with 'uploaded', 'skipped' and 'deleted' counts

        Raises:
            StorageError: If the directory is missing or any request fails
        """
        if not os.path.isdir(local_dir):
            raise StorageError(f"Local directory not found: {local_dir}")

        remote_objects = {obj.key: obj for obj in self.list_objects(remote)}

        result = {'uploaded': 0, 'skipped': 0, 'deleted': 0}
        local_keys = set()

        for dirpath, dirnames, filenames in os.walk(local_dir):
            dirnames.sort()
            for filename in sorted(filenames):
                local_path = os.path.join(dirpath, filename)
                if not os.path.isfile(local_path):
                    continue
                relative = os.path.relpath(local_path, local_dir).replace(os.sep, '/')
                remote_path = posixpath.join(remote, relative)
                s3_key = self.key(remote_path)
                local_keys.add(s3_key)

                existing = remote_objects.get(s3_key)
                if existing is not None and self._is_unchanged(local_path, existing):
                    result['skipped'] += 1
                    continue

                self.upload_file(local_path, remote_path)
                result['uploaded'] += 1

        stale = [obj for key, obj in remote_objects.items() if key not in local_keys]
        if stale:
            logger.info(f"Deleting {len(stale)} remote objects missing from {local_dir}")
            self.delete_objects(stale)
            result['deleted'] = len(stale)

        logger.info(
            f"Synced {local_dir} -> {self.key(remote)}: {result['uploaded']} uploaded, "
            f"{result['skipped']} unchanged, {result['deleted']} deleted"
        )
        return result

    @staticmethod
    def _is_unchanged(local_path: str, remote: BackupObject) -> bool:
        if os.path.getsize(local_path) != remote.size:
            return False
        # Multipart ETags are not content hashes
        if not remote.etag or '-' in remote.etag:
            return False
        return _file_md5(local_path) == remote.etag

    def download_file(self, s3_key: str, local_path: str):
        """Download one object by its full key."""
        if self.dry_run:
            logger.info(f"[dry-run] download s3://{self.bucket_name}/{s3_key} -> {local_path}")
            return

        try:
            os.makedirs(os.path.dirname(local_path) or '.', exist_ok=True)
            self.s3_client.download_file(self.bucket_name, s3_key, local_path)
        except ClientError as e:
            raise StorageError(f"S3 download of {s3_key} failed ({_error_code(e)}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 download of {s3_key} failed: {e}") from e

    def download_tree(self, remote: str, local_dir: str) -> int:
        """
        Download every object under a remote path into local_dir.

        Returns:
            Number of objects downloaded

        Raises:
            StorageError: If any request fails
        """
        base = self.key(remote) + '/' if self.key(remote) else ''
        count = 0
        for obj in self.list_objects(remote):
            relative = obj.key[len(base):]
            if not relative or relative.endswith('/'):
                continue
            self.download_file(obj.key, os.path.join(local_dir, *relative.split('/')))
            count += 1

        logger.info(f"Downloaded {count} objects from {base or '/'} to {local_dir}")
        return count

    def download_archive(self, name: str, local_dir: str) -> str:
        """
        Download one archive object into local_dir.

        Returns:
            Local path of the downloaded archive
        """
        local_path = os.path.join(local_dir, posixpath.basename(name))
        self.download_file(self.key(name), local_path)
        return local_path
