"""
Storage Migration Module

Copies Supabase Storage buckets and their files from the source project to
the target through the Storage REST API:

- GET  /storage/v1/bucket                      list buckets
- POST /storage/v1/bucket                      create bucket
- POST /storage/v1/object/list/{bucket}        list one folder level
- GET  /storage/v1/object/{bucket}/{path}      download
- POST /storage/v1/object/{bucket}/{path}      upload (x-upsert: true)

Both projects need a URL and a service role key. Without them the stage is
skipped and reports zeroed statistics.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from supabase_pg_migration.config import DatabaseSettings
from supabase_pg_migration.descriptors import StorageStatistics
from supabase_pg_migration.errors import MissingCredentialsError, is_duplicate_error
from supabase_pg_migration.utils import format_bytes

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 100
REQUEST_TIMEOUT_SECONDS = 60


@dataclass
class BucketInfo:
    id: str
    name: str
    public: bool = False
    file_size_limit: Optional[int] = None
    allowed_mime_types: Optional[List[str]] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'BucketInfo':
        return cls(
            id=data['id'],
            name=data.get('name') or data['id'],
            public=bool(data.get('public')),
            file_size_limit=data.get('file_size_limit'),
            allowed_mime_types=data.get('allowed_mime_types'),
        )


@dataclass
class StorageFile:
    name: str
    bucket_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return self.metadata.get('mimetype') or 'application/octet-stream'


class StorageAPIError(Exception):
    """A Storage API call returned an error response."""


def create_session(max_retries: int = 3, backoff_factor: float = 1.0) -> requests.Session:
    """Create a requests session with retry logic."""
    session = requests.Session()

    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=None,
    )

    adapter = HTTPAdapter(max_retries=retries)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


class StorageClient:
    """Minimal Supabase Storage API client for one project."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        session: Optional[requests.Session] = None,
        timeout: int = REQUEST_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip('/')
        self.service_key = service_key
        self.timeout = timeout
        self._session = session or create_session()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'Authorization': f'Bearer {self.service_key}',
            'apikey': self.service_key,
        }
        if extra:
            headers.update(extra)
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/{path}"

    def _object_url(self, bucket_id: str, file_path: str) -> str:
        return self._url(f"object/{quote(bucket_id, safe='')}/{quote(file_path, safe='/')}")

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.ok:
            return
        try:
            payload = response.json()
            message = payload.get('message') or payload.get('error') or response.text
        except ValueError:
            message = response.text
        raise StorageAPIError(f"{response.status_code}: {message}")

    def list_buckets(self) -> List[BucketInfo]:
        response = self._session.get(self._url('bucket'), headers=self._headers(), timeout=self.timeout)
        self._raise_for_status(response)
        return [BucketInfo.from_api(item) for item in response.json()]

    def create_bucket(self, bucket: BucketInfo) -> None:
        payload: Dict[str, Any] = {'id': bucket.id, 'name': bucket.name, 'public': bucket.public}
        if bucket.file_size_limit:
            payload['file_size_limit'] = bucket.file_size_limit
        if bucket.allowed_mime_types:
            payload['allowed_mime_types'] = bucket.allowed_mime_types
        response = self._session.post(
            self._url('bucket'), json=payload, headers=self._headers(), timeout=self.timeout
        )
        self._raise_for_status(response)

    def list_folder(self, bucket_id: str, prefix: str = '', offset: int = 0,
                    limit: int = LIST_PAGE_SIZE) -> List[Dict[str, Any]]:
        payload = {
            'prefix': prefix,
            'limit': limit,
            'offset': offset,
            'sortBy': {'column': 'name', 'order': 'asc'},
        }
        response = self._session.post(
            self._url(f"object/list/{quote(bucket_id, safe='')}"),
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        self._raise_for_status(response)
        return response.json() or []

    def list_files(self, bucket_id: str, path: str = '') -> List[StorageFile]:
        """
        List every file under ``path``, descending into folders.

        Folders are the entries without an ``id``.
        """
        files: List[StorageFile] = []
        offset = 0
        while True:
            try:
                items = self.list_folder(bucket_id, path, offset)
            except (requests.RequestException, StorageAPIError) as e:
                logger.warning(f"Error listing files in {bucket_id}/{path}: {e}")
                break

            if not items:
                break

            for item in items:
                full_name = f"{path}/{item['name']}" if path else item['name']
                if item.get('id') is None:
                    files.extend(self.list_files(bucket_id, full_name))
                else:
                    files.append(StorageFile(full_name, bucket_id, item.get('metadata') or {}))

            if len(items) < LIST_PAGE_SIZE:
                break
            offset += LIST_PAGE_SIZE

        return files

    def download(self, bucket_id: str, file_path: str) -> bytes:
        response = self._session.get(
            self._object_url(bucket_id, file_path), headers=self._headers(), timeout=self.timeout
        )
        self._raise_for_status(response)
        return response.content

    def upload(self, bucket_id: str, file_path: str, data: bytes,
               content_type: str = 'application/octet-stream') -> None:
        response = self._session.post(
            self._object_url(bucket_id, file_path),
            data=data,
            headers=self._headers({'Content-Type': content_type, 'x-upsert': 'true'}),
            timeout=self.timeout,
        )
        self._raise_for_status(response)


def create_storage_clients(
    source: DatabaseSettings,
    target: DatabaseSettings,
    session: Optional[requests.Session] = None,
) -> Tuple[StorageClient, StorageClient]:
    """
    Build source and target Storage clients.

    Raises:
        MissingCredentialsError: If either side lacks a URL or service key
    """
    if not source.has_api_credentials:
        raise MissingCredentialsError(
            "SOURCE_SUPABASE_URL and SOURCE_SUPABASE_SERVICE_KEY required for storage migration"
        )
    if not target.has_api_credentials:
        raise MissingCredentialsError(
            "TARGET_SUPABASE_URL and TARGET_SUPABASE_SERVICE_KEY required for storage migration"
        )
    return (
        StorageClient(source.supabase_url, source.service_key, session=session),
        StorageClient(target.supabase_url, target.service_key, session=session),
    )


class StorageMigrator:
    """Copy buckets and files from one Storage API to another."""

    def __init__(self, source: StorageClient, target: StorageClient):
        self.source = source
        self.target = target

    def _ensure_bucket(self, bucket: BucketInfo) -> bool:
        try:
            self.target.create_bucket(bucket)
        except (requests.RequestException, StorageAPIError) as e:
            if is_duplicate_error(e):
                logger.info(f"Bucket {bucket.name}: already exists")
                return True
            logger.error(f"Failed to create bucket {bucket.name}: {e}")
            return False
        return True

    def _copy_file(self, storage_file: StorageFile, stats: StorageStatistics) -> None:
        try:
            data = self.source.download(storage_file.bucket_id, storage_file.name)
        except (requests.RequestException, StorageAPIError) as e:
            logger.error(f"Failed to download {storage_file.bucket_id}/{storage_file.name}: {e}")
            stats.files_failed += 1
            return

        try:
            self.target.upload(storage_file.bucket_id, storage_file.name, data, storage_file.content_type)
        except (requests.RequestException, StorageAPIError) as e:
            logger.error(f"Failed to upload {storage_file.bucket_id}/{storage_file.name}: {e}")
            stats.files_failed += 1
            return

        stats.files_uploaded += 1
        stats.total_bytes += len(data)
        logger.info(f"{storage_file.bucket_id}/{storage_file.name} ({format_bytes(len(data))})")

    def migrate(self) -> StorageStatistics:
        stats = StorageStatistics()

        try:
            buckets = self.source.list_buckets()
        except (requests.RequestException, StorageAPIError) as e:
            logger.error(f"Failed to list buckets: {e}")
            return stats

        if not buckets:
            logger.info("No buckets to migrate")
            return stats

        logger.info(f"Found {len(buckets)} buckets")
        for bucket in buckets:
            logger.info(f"Bucket: {bucket.name} ({'public' if bucket.public else 'private'})")
            if not self._ensure_bucket(bucket):
                stats.buckets_failed += 1
                continue
            stats.buckets_created += 1

            files = self.source.list_files(bucket.id)
            logger.info(f"Found {len(files)} files in {bucket.name}")
            for storage_file in files:
                self._copy_file(storage_file, stats)

        logger.info(
            f"Storage migration summary: buckets {stats.buckets_created} created, "
            f"{stats.buckets_failed} failed; files {stats.files_uploaded} uploaded, "
            f"{stats.files_failed} failed; total size {format_bytes(stats.total_bytes)}"
        )
        return stats

    def verify(self) -> Dict[str, Dict[str, Any]]:
        """
        Compare file counts per bucket between source and target.

        Returns:
            Mapping of bucket id to {'source': n, 'target': n or None, 'match': bool}
        """
        results: Dict[str, Dict[str, Any]] = {}
        target_ids = {bucket.id for bucket in self.target.list_buckets()}

        for bucket in self.source.list_buckets():
            source_count = len(self.source.list_files(bucket.id))
            if bucket.id not in target_ids:
                logger.error(f"{bucket.name}: bucket missing in target")
                results[bucket.id] = {'source': source_count, 'target': None, 'match': False}
                continue

            target_count = len(self.target.list_files(bucket.id))
            match = source_count == target_count
            if match:
                logger.info(f"✓ {bucket.name}: {source_count} files (match)")
            else:
                logger.error(f"✗ {bucket.name}: {target_count}/{source_count} files (mismatch)")
            results[bucket.id] = {'source': source_count, 'target': target_count, 'match': match}

        return results


def migrate_storage(
    source: DatabaseSettings,
    target: DatabaseSettings,
    session: Optional[requests.Session] = None,
) -> StorageStatistics:
    """Run the storage stage; returns zeroed, skipped statistics without credentials."""
    try:
        source_client, target_client = create_storage_clients(source, target, session)
    except MissingCredentialsError as e:
        logger.warning(f"Storage migration skipped (missing credentials): {e}")
        return StorageStatistics(skipped=True)
    return StorageMigrator(source_client, target_client).migrate()


def verify_storage(
    source: DatabaseSettings,
    target: DatabaseSettings,
    session: Optional[requests.Session] = None,
) -> Optional[Dict[str, Dict[str, Any]]]:
    try:
        source_client, target_client = create_storage_clients(source, target, session)
    except MissingCredentialsError as e:
        logger.warning(f"Storage verification skipped (missing credentials): {e}")
        return None
    try:
        return StorageMigrator(source_client, target_client).verify()
    except (requests.RequestException, StorageAPIError) as e:
        logger.error(f"Storage verification failed: {e}")
        return None
