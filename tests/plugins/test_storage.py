"""
Tests for Storage Migration Module

These tests validate bucket and file copying through the Storage API with
the HTTP session mocked.
"""

import pytest
import requests
from unittest.mock import Mock, NonCallableMock

from supabase_pg_migration.config import DatabaseSettings
from supabase_pg_migration.errors import MissingCredentialsError
from supabase_pg_migration.storage import (
    BucketInfo,
    StorageAPIError,
    StorageClient,
    StorageMigrator,
    create_storage_clients,
    migrate_storage,
    verify_storage,
)

SOURCE_URL = 'https://src.supabase.co'
TARGET_URL = 'https://dst.supabase.co'


def response(status=200, payload=None, content=b''):
    # Non-callable so FakeSession can tell a canned response from a route handler
    resp = NonCallableMock(spec=requests.Response)
    resp.ok = status < 400
    resp.status_code = status
    resp.json.return_value = payload
    resp.text = str(payload)
    resp.content = content
    return resp


class FakeSession:
    """Routes requests to canned responses by (method, url)."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def _dispatch(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        handler = self.routes.get((method, url))
        if handler is None:
            return response(404, {'message': 'not found'})
        return handler(**kwargs) if callable(handler) else handler

    def get(self, url, **kwargs):
        return self._dispatch('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch('POST', url, **kwargs)


def list_route(entries_by_prefix):
    def handler(json=None, **kwargs):
        if json['offset'] > 0:
            return response(200, [])
        return response(200, entries_by_prefix.get(json['prefix'], []))
    return handler


@pytest.fixture
def source_routes():
    return {
        ('GET', f'{SOURCE_URL}/storage/v1/bucket'): response(200, [
            {'id': 'avatars', 'name': 'avatars', 'public': True},
        ]),
        ('POST', f'{SOURCE_URL}/storage/v1/object/list/avatars'): list_route({
            '': [
                {'name': 'users', 'id': None},
                {'name': 'logo.png', 'id': 'f1', 'metadata': {'mimetype': 'image/png'}},
            ],
            'users': [{'name': 'a.jpg', 'id': 'f2', 'metadata': {'mimetype': 'image/jpeg'}}],
        }),
        ('GET', f'{SOURCE_URL}/storage/v1/object/avatars/logo.png'): response(200, content=b'PNG!'),
        ('GET', f'{SOURCE_URL}/storage/v1/object/avatars/users/a.jpg'): response(200, content=b'JPEG'),
    }


class TestStorageClient:
    """Test StorageClient class."""

    def test_auth_headers(self):
        session = FakeSession({('GET', f'{SOURCE_URL}/storage/v1/bucket'): response(200, [])})
        StorageClient(SOURCE_URL + '/', 'service-key', session=session).list_buckets()

        _, url, kwargs = session.calls[0]
        assert url == f'{SOURCE_URL}/storage/v1/bucket'
        assert kwargs['headers']['Authorization'] == 'Bearer service-key'
        assert kwargs['headers']['apikey'] == 'service-key'

    def test_list_files_recurses_into_folders(self, source_routes):
        client = StorageClient(SOURCE_URL, 'k', session=FakeSession(source_routes))

        files = client.list_files('avatars')

        assert sorted(f.name for f in files) == ['logo.png', 'users/a.jpg']
        assert {f.name: f.content_type for f in files}['logo.png'] == 'image/png'

    def test_list_files_pages(self):
        page = [{'name': f'f{i}', 'id': str(i)} for i in range(100)]

        def handler(json=None, **kwargs):
            return response(200, page if json['offset'] == 0 else [{'name': 'last', 'id': 'x'}])

        client = StorageClient(SOURCE_URL, 'k', session=FakeSession({
            ('POST', f'{SOURCE_URL}/storage/v1/object/list/b'): handler,
        }))

        assert len(client.list_files('b')) == 101

    def test_error_response_raises(self):
        session = FakeSession({('GET', f'{SOURCE_URL}/storage/v1/bucket'): response(401, {'message': 'Invalid JWT'})})
        with pytest.raises(StorageAPIError, match='401: Invalid JWT'):
            StorageClient(SOURCE_URL, 'bad', session=session).list_buckets()

    def test_upload_upserts(self):
        session = FakeSession({('POST', f'{TARGET_URL}/storage/v1/object/b/dir/x.txt'): response(200, {})})
        StorageClient(TARGET_URL, 'k', session=session).upload('b', 'dir/x.txt', b'data', 'text/plain')

        _, _, kwargs = session.calls[0]
        assert kwargs['headers']['x-upsert'] == 'true'
        assert kwargs['headers']['Content-Type'] == 'text/plain'
        assert kwargs['data'] == b'data'


class TestStorageMigrator:
    """Test StorageMigrator class."""

    def test_migrate_copies_every_file(self, source_routes):
        uploads = []

        def upload_handler(**kwargs):
            uploads.append(kwargs['data'])
            return response(200, {})

        target_session = FakeSession({
            ('POST', f'{TARGET_URL}/storage/v1/bucket'): response(200, {'name': 'avatars'}),
            ('POST', f'{TARGET_URL}/storage/v1/object/avatars/logo.png'): upload_handler,
            ('POST', f'{TARGET_URL}/storage/v1/object/avatars/users/a.jpg'): upload_handler,
        })
        migrator = StorageMigrator(
            StorageClient(SOURCE_URL, 'k', session=FakeSession(source_routes)),
            StorageClient(TARGET_URL, 'k', session=target_session),
        )

        stats = migrator.migrate()

        assert stats.buckets_created == 1
        assert stats.files_uploaded == 2
        assert stats.files_failed == 0
        assert stats.total_bytes == 8
        assert sorted(uploads) == [b'JPEG', b'PNG!']

    def test_existing_bucket_counts_as_created(self, source_routes):
        target_session = FakeSession({
            ('POST', f'{TARGET_URL}/storage/v1/bucket'): response(409, {'message': 'The resource already exists'}),
            ('POST', f'{TARGET_URL}/storage/v1/object/avatars/logo.png'): response(200, {}),
            ('POST', f'{TARGET_URL}/storage/v1/object/avatars/users/a.jpg'): response(500, {'message': 'boom'}),
        })
        migrator = StorageMigrator(
            StorageClient(SOURCE_URL, 'k', session=FakeSession(source_routes)),
            StorageClient(TARGET_URL, 'k', session=target_session),
        )

        stats = migrator.migrate()

        assert stats.buckets_created == 1
        assert stats.buckets_failed == 0
        assert stats.files_uploaded == 1
        assert stats.files_failed == 1

    def test_verify_counts(self, source_routes):
        target_routes = {
            ('GET', f'{TARGET_URL}/storage/v1/bucket'): response(200, [{'id': 'avatars', 'name': 'avatars'}]),
            ('POST', f'{TARGET_URL}/storage/v1/object/list/avatars'): list_route({
                '': [{'name': 'logo.png', 'id': 'f1'}],
            }),
        }
        migrator = StorageMigrator(
            StorageClient(SOURCE_URL, 'k', session=FakeSession(source_routes)),
            StorageClient(TARGET_URL, 'k', session=FakeSession(target_routes)),
        )

        results = migrator.verify()

        assert results == {'avatars': {'source': 2, 'target': 1, 'match': False}}


class TestStorageEntryPoints:
    """Test migrate_storage and verify_storage functions."""

    def test_missing_credentials_skip(self):
        """Test the stage is skipped with zeroed statistics and no HTTP calls."""
        session = Mock()
        stats = migrate_storage(DatabaseSettings(), DatabaseSettings(), session=session)

        assert stats.skipped is True
        assert stats.files_uploaded == 0
        assert stats.buckets_created == 0
        session.get.assert_not_called()
        session.post.assert_not_called()

    def test_verify_without_credentials(self):
        assert verify_storage(DatabaseSettings(supabase_url=SOURCE_URL, service_key='k'), DatabaseSettings()) is None

    def test_create_clients_requires_target_credentials(self):
        with pytest.raises(MissingCredentialsError, match='TARGET_SUPABASE_URL'):
            create_storage_clients(
                DatabaseSettings(supabase_url=SOURCE_URL, service_key='k'),
                DatabaseSettings(supabase_url=TARGET_URL),
            )

    def test_bucket_from_api(self):
        bucket = BucketInfo.from_api({'id': 'docs', 'public': None, 'file_size_limit': 1024})
        assert bucket.name == 'docs'
        assert bucket.public is False
        assert bucket.file_size_limit == 1024
