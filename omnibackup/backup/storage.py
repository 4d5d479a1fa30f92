"""
Target providers for backup archives.

Supports:
- DirectoryTarget: copy into a local (or mounted) directory
- S3Target: upload to an S3 compatible object store
- FtpTarget: upload to an FTP server
- SftpTarget: upload over SSH/SFTP

Archives are grouped into buckets, one folder (or key prefix) per bucket
name. Retention strategies decide which buckets to create and delete.
"""

import ftplib
import os
import shutil
import stat
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from omnibackup.utils.connection import ConnectionString
from omnibackup.utils.logsink import RunLogger, plural
from .definitions import TargetConfig
from .models import BackupError, ProviderConfigError


class StorageError(BackupError):
    """Raised when storage operation fails."""
    pass


class TargetProvider(ABC):
    """
    Base class for all target providers.

    ``save`` never raises for a single file: failures are logged and the
    file is left out of the result, so siblings are still attempted.
    """

    def __init__(self, config: TargetConfig, logger: RunLogger):
        self.config = config
        self.logger = logger
        self._disposed = False

        self.logger.verbose(config.name, 'Initializing')

    @property
    def name(self) -> str:
        return self.config.name

    def save(self, bucket: str, files: Iterable[str]) -> List[str]:
        """
        Store files under a bucket.

        Args:
            bucket: Bucket name (e.g. ``2024-01-15``)
            files: Local archive paths

        Returns:
            Paths of the files that were stored successfully
        """
        files = list(files)
        self.logger.info(self.name, 'Saving %d backup%s.', len(files), plural(len(files)))

        try:
            self.prepare_bucket(bucket)
        except StorageError as e:
            self.logger.error(self.name, 'Can not create backup. Could not create bucket %s. Error: %s', bucket, e)
            return []

        saved = []
        for path in files:
            self.logger.verbose(self.name, 'Uploading file: %s', os.path.basename(path))
            try:
                self.store(bucket, path)
                saved.append(path)
            except StorageError as e:
                self.logger.error(self.name, 'Could not save %s. Error: %s', os.path.basename(path), e)

        self.logger.info(self.name, 'Saved %d backup%s.', len(saved), plural(len(saved)))
        return saved

    def prepare_bucket(self, bucket: str):
        """Create the bucket if the target needs it. Raises StorageError."""
        pass

    @abstractmethod
    def store(self, bucket: str, path: str):
        """Store one file in a bucket, overwriting an existing one. Raises StorageError."""

    @abstractmethod
    def delete_bucket(self, bucket: str):
        """Delete a bucket and its content. Missing buckets are ignored."""

    @abstractmethod
    def list_buckets(self) -> List[str]:
        """Names of existing buckets, sorted."""

    def dispose(self):
        """Release held clients. Further calls are no-ops."""
        if self._disposed:
            return
        self._disposed = True
        self.close()

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.dispose()


class DirectoryTarget(TargetProvider):
    """
    Stores archives in a local directory.

    Layout: {target}/{bucket}/{filename}
    """

    def __init__(self, config: TargetConfig, logger: RunLogger):
        super().__init__(config, logger)

        if not config.target:
            raise ProviderConfigError(f"No target directory specified for {config.name!r}")

        self.base_path = Path(config.target).expanduser()

    def bucket_path(self, bucket: str) -> Path:
        return self.base_path / bucket

    def prepare_bucket(self, bucket: str):
        try:
            self.bucket_path(bucket).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create directory {self.bucket_path(bucket)}: {e}")

    def store(self, bucket: str, path: str):
        dest_path = self.bucket_path(bucket) / os.path.basename(path)

        try:
            shutil.copyfile(path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to store locally: {e}")

    def delete_bucket(self, bucket: str):
        bucket_path = self.bucket_path(bucket)

        if not bucket_path.is_dir():
            return

        try:
            shutil.rmtree(bucket_path)
        except OSError as e:
            raise StorageError(f"Failed to delete {bucket_path}: {e}")

        self.logger.info(self.name, 'Deleted bucket %s.', bucket)

    def list_buckets(self) -> List[str]:
        if not self.base_path.is_dir():
            return []
        return sorted(item.name for item in self.base_path.iterdir() if item.is_dir())


class S3Target(TargetProvider):
    """
    Uploads archives to S3.

    Target connection string keys: bucket (mandatory), path, region,
    accesskey, secretkey, token, endpoint.

    Layout: {path}/{bucket}/{filename}
    """

    multipart_threshold = 100 * 1024 * 1024
    chunk_size = 10 * 1024 * 1024

    def __init__(self, config: TargetConfig, logger: RunLogger):
        super().__init__(config, logger)

        connection = ConnectionString(config.target)
        self.bucket_name = connection.get('bucket')
        if not self.bucket_name:
            raise ProviderConfigError(f"No bucket specified for {config.name!r}")

        self.region = connection.get('region') or 'us-east-1'
        self.prefix = (connection.get('path') or '').strip('/')
        if self.prefix:
            self.prefix += '/'

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=connection.get('accesskey'),
                aws_secret_access_key=connection.get('secretkey'),
                aws_session_token=connection.get('token'),
                region_name=self.region,
                endpoint_url=connection.get('endpoint')
            )
        except Exception as e:
            raise ProviderConfigError(f"Failed to initialize S3 client: {e}")

    def object_key(self, bucket: str, filename: str) -> str:
        return f"{self.prefix}{bucket}/{filename}"

    def store(self, bucket: str, path: str):
        if not os.path.exists(path):
            raise StorageError(f"Local file not found: {path}")

        s3_key = self.object_key(bucket, os.path.basename(path))

        try:
            file_size = os.path.getsize(path)
            self.logger.verbose(self.name, 'Uploading %s (%.2f kb) to %s.', path, file_size / 1024, s3_key)

            if file_size > self.multipart_threshold:
                self._multipart_upload(path, s3_key)
            else:
                self._simple_upload(path, s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def _simple_upload(self, path: str, s3_key: str):
        with open(path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, path: str, s3_key: str):
        """Upload a large file in chunks; the upload is aborted on any error."""
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.chunk_size)
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
            except (ClientError, BotoCoreError) as e:
                self.logger.error(self.name, 'Could not abort multipart upload of %s. Error: %s', s3_key, e)
            raise

    def list_keys(self, prefix: str) -> List[str]:
        keys = []
        paginator = self.s3_client.get_paginator('list_objects_v2')

        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for obj in page.get('Contents', []):
                keys.append(obj['Key'])

        return keys

    def delete_bucket(self, bucket: str):
        prefix = f"{self.prefix}{bucket}/"

        try:
            keys = self.list_keys(prefix)

            # delete_objects accepts up to 1000 keys per call
            for start in range(0, len(keys), 1000):
                batch = keys[start:start + 1000]
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True}
                )
                for error in response.get('Errors', []):
                    self.logger.error(
                        self.name,
                        'Could not delete %s. Error: %s',
                        error.get('Key'), error.get('Message')
                    )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

        if keys:
            self.logger.info(self.name, 'Deleted bucket %s.', bucket)

    def list_buckets(self) -> List[str]:
        try:
            buckets = set()
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix, Delimiter='/'):
                for common_prefix in page.get('CommonPrefixes', []):
                    buckets.add(common_prefix['Prefix'][len(self.prefix):].rstrip('/'))

            return sorted(buckets)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def close(self):
        self.s3_client.close()


class FtpTarget(TargetProvider):
    """
    Uploads archives to an FTP server.

    Target connection string keys: host (mandatory), port, user, password,
    path, tls.

    Layout: {path}/{bucket}/{filename}
    """

    def __init__(self, config: TargetConfig, logger: RunLogger):
        super().__init__(config, logger)

        connection = ConnectionString(config.target)
        self.host = connection.get('host')
        if not self.host:
            raise ProviderConfigError(f"No host specified for {config.name!r}")

        self.port = connection.get_int('port', 21)
        self.user = connection.get('user')
        self.password = connection.get('password')
        self.tls = connection.get_bool('tls')
        self.path = (connection.get('path') or '').rstrip('/')

        self.ftp: Optional[ftplib.FTP] = None

    def _connect(self) -> ftplib.FTP:
        if self.ftp is not None:
            return self.ftp

        ftp = ftplib.FTP_TLS() if self.tls else ftplib.FTP()
        try:
            ftp.connect(self.host, self.port, timeout=30)
            ftp.login(self.user or 'anonymous', self.password or '')
            if self.tls:
                ftp.prot_p()
        except ftplib.all_errors as e:
            ftp.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

        self.ftp = ftp
        return ftp

    def remote_dir(self, bucket: str) -> str:
        return f"{self.path}/{bucket}" if self.path else bucket

    def prepare_bucket(self, bucket: str):
        ftp = self._connect()
        try:
            ftp.mkd(self.remote_dir(bucket))
        except ftplib.error_perm:
            # Already exists; other problems surface on upload
            pass
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to create {self.remote_dir(bucket)}: {e}")

    def store(self, bucket: str, path: str):
        remote_path = f"{self.remote_dir(bucket)}/{os.path.basename(path)}"

        try:
            ftp = self._connect()
            with open(path, 'rb') as f:
                ftp.storbinary(f"STOR {remote_path}", f)
        except StorageError:
            raise
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to upload via ftp: {e}")

    def _list(self, directory: str) -> Optional[List[str]]:
        """File names in a remote directory, or None if it does not exist."""
        ftp = self._connect()
        try:
            names = ftp.nlst(directory)
        except ftplib.error_perm:
            return None

        # Some servers answer with full paths
        names = [name.rstrip('/').rsplit('/', 1)[-1] for name in names]
        return [name for name in names if name not in ('.', '..')]

    def delete_bucket(self, bucket: str):
        directory = self.remote_dir(bucket)

        try:
            files = self._list(directory)
        except (StorageError, *ftplib.all_errors) as e:
            self.logger.error(self.name, 'Could not list directory %s. Error: %s', directory, e)
            return

        if files is None:
            return

        # Only files are expected, buckets never contain directories
        for name in files:
            try:
                self.ftp.delete(f"{directory}/{name}")
            except ftplib.all_errors as e:
                self.logger.error(self.name, 'Could not delete file %s/%s. Error: %s', directory, name, e)

        try:
            self.ftp.rmd(directory)
        except ftplib.all_errors as e:
            self.logger.info(self.name, 'Could not delete directory %s. Error: %s', directory, e)
            return

        self.logger.info(self.name, 'Deleted bucket %s.', bucket)

    def list_buckets(self) -> List[str]:
        try:
            names = self._list(self.path or '')
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to list {self.path or '/'}: {e}")
        return sorted(names or [])

    def close(self):
        if self.ftp is None:
            return

        try:
            self.ftp.quit()
        except ftplib.all_errors:
            self.ftp.close()
        self.ftp = None


class SftpTarget(TargetProvider):
    """
    Uploads archives over SFTP.

    Target connection string keys: host (mandatory), port, user, password,
    key (private key file), path.

    Layout: {path}/{bucket}/{filename}
    """

    def __init__(self, config: TargetConfig, logger: RunLogger):
        super().__init__(config, logger)

        connection = ConnectionString(config.target)
        self.host = connection.get('host') or connection.get('hostname')
        if not self.host:
            raise ProviderConfigError(f"No host specified for {config.name!r}")

        self.port = connection.get_int('port', 22)
        self.username = connection.get('user')
        self.password = connection.get('password')
        self.private_key_path = connection.get('key')
        self.path = (connection.get('path') or '').rstrip('/')

        if not self.password and not self.private_key_path:
            raise ProviderConfigError("Either password or key must be provided")

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        if self.sftp_client is not None:
            return self.sftp_client

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            if self.password:
                connect_kwargs['password'] = self.password
            else:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise StorageError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except StorageError:
            raise
        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise StorageError(f"SSH connection failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to connect to {self.host}: {e}")

        return self.sftp_client

    def remote_dir(self, bucket: str) -> str:
        return f"{self.path}/{bucket}" if self.path else bucket

    def prepare_bucket(self, bucket: str):
        sftp = self._connect()
        directory = self.remote_dir(bucket)

        try:
            sftp.stat(directory)
            return
        except FileNotFoundError:
            pass
        except IOError as e:
            raise StorageError(f"Failed to access {directory}: {e}")

        try:
            sftp.mkdir(directory)
        except IOError as e:
            raise StorageError(f"Failed to create {directory}: {e}")

    def store(self, bucket: str, path: str):
        remote_path = f"{self.remote_dir(bucket)}/{os.path.basename(path)}"

        try:
            self._connect().put(path, remote_path)
        except StorageError:
            raise
        except PermissionError:
            raise StorageError(f"Permission denied writing remote file: {remote_path}")
        except Exception as e:
            raise StorageError(f"Failed to upload {path}: {e}")

    def delete_bucket(self, bucket: str):
        directory = self.remote_dir(bucket)

        try:
            sftp = self._connect()
            entries = sftp.listdir(directory)
        except FileNotFoundError:
            return
        except (StorageError, IOError) as e:
            self.logger.error(self.name, 'Could not list directory %s. Error: %s', directory, e)
            return

        for name in entries:
            try:
                sftp.remove(f"{directory}/{name}")
            except IOError as e:
                self.logger.error(self.name, 'Could not delete file %s/%s. Error: %s', directory, name, e)

        try:
            sftp.rmdir(directory)
        except IOError as e:
            self.logger.info(self.name, 'Could not delete directory %s. Error: %s', directory, e)
            return

        self.logger.info(self.name, 'Deleted bucket %s.', bucket)

    def list_buckets(self) -> List[str]:
        try:
            attrs = self._connect().listdir_attr(self.path or '.')
        except FileNotFoundError:
            return []
        except IOError as e:
            raise StorageError(f"Failed to list {self.path or '.'}: {e}")

        return sorted(attr.filename for attr in attrs if stat.S_ISDIR(attr.st_mode or 0))

    def close(self):
        """Close SSH/SFTP connections."""
        for client in (self.sftp_client, self.ssh_client):
            if client is None:
                continue
            try:
                client.close()
            except Exception as e:
                self.logger.verbose(self.name, 'Error while closing connection: %s', e)

        self.sftp_client = None
        self.ssh_client = None
