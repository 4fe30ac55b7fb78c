"""Shared fixtures: in-memory stand-ins for the provider APIs.

Nothing here talks to the network. Each fake keeps just enough state to
behave like the real service for the calls the drivers make.
"""

import re
from urllib.parse import unquote

import httplib2
import pytest
from googleapiclient.errors import HttpError
from storage3.utils import StorageException

from storage_adapters import StorageError, StorageNotFoundError
from storage_adapters.onedrive import GraphError
from utils.crypto import encrypt


ENCRYPTION_KEY = "test-encryption-key"
FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'


@pytest.fixture
def encryption_key():
    return ENCRYPTION_KEY


@pytest.fixture
def no_sleep(monkeypatch):
    """Make retry backoff instantaneous, recording requested delays."""
    delays = []
    monkeypatch.setattr("utils.retry.time.sleep", delays.append)
    return delays


# =============================================================================
# Google Drive
# =============================================================================

def http_error(status: int, message: str = "error") -> HttpError:
    body = f'{{"error": {{"code": {status}, "message": "{message}"}}}}'
    return HttpError(httplib2.Response({'status': status}), body.encode('utf-8'))


class FakeRequest:
    """A Drive API request; the call happens on execute(), like the real one."""

    def __init__(self, func):
        self.func = func

    def execute(self):
        return self.func()


class FakeDownloader:
    """Replacement for MediaIoBaseDownload that reads the whole file at once."""

    def __init__(self, fd, request):
        self.fd = fd
        self.request = request

    def next_chunk(self):
        self.fd.write(self.request.execute())
        return None, True


class FakeDriveFiles:
    def __init__(self, drive):
        self.drive = drive

    def list(self, q, fields=None, pageSize=100, pageToken=None, **kwargs):
        return FakeRequest(lambda: self.drive.query(q, pageSize, pageToken))

    def create(self, body, media_body=None, fields=None, **kwargs):
        return FakeRequest(lambda: self.drive.create(body, media_body))

    def update(self, fileId, body=None, media_body=None, fields=None, **kwargs):
        return FakeRequest(lambda: self.drive.update(fileId, body or {}, media_body))

    def get(self, fileId, fields=None, **kwargs):
        return FakeRequest(lambda: self.drive.public(self.drive.lookup(fileId)))

    def delete(self, fileId, **kwargs):
        return FakeRequest(lambda: self.drive.delete(fileId))

    def get_media(self, fileId, **kwargs):
        return FakeRequest(lambda: self.drive.lookup(fileId)['content'])


class FakeDriveAbout:
    def __init__(self, drive):
        self.drive = drive

    def get(self, fields=None):
        return FakeRequest(lambda: {'user': dict(self.drive.user)})


class FakeDriveService:
    """In-memory Drive v3 service understanding the queries the driver sends."""

    NAME_CLAUSE = re.compile(r"name='((?:[^'\\]|\\.)*)'")
    PARENT_CLAUSE = re.compile(r"'([^']+)' in parents")
    MIME_CLAUSE = re.compile(r"mimeType(!?=)'([^']+)'")

    def __init__(self):
        self.items = {
            'root': {'id': 'root', 'name': 'My Drive', 'mimeType': FOLDER_MIME_TYPE,
                     'parents': [], 'trashed': False},
        }
        self.user = {'emailAddress': 'ada@example.com', 'displayName': 'Ada Lovelace'}
        self.failures = []
        self._next_id = 0

    def files(self):
        return FakeDriveFiles(self)

    def about(self):
        return FakeDriveAbout(self)

    # -- helpers used by tests ------------------------------------------------

    def add_folder(self, name, parent='root'):
        return self._insert(name, parent, FOLDER_MIME_TYPE)

    def add_file(self, name, content=b'', parent='root', mime_type='application/pdf'):
        return self._insert(name, parent, mime_type, content)

    def children(self, parent='root'):
        return [i for i in self.items.values() if parent in i['parents'] and not i['trashed']]

    # -- API behaviour --------------------------------------------------------

    def _insert(self, name, parent, mime_type, content=None):
        self._next_id += 1
        item_id = f"file{self._next_id}"
        item = {'id': item_id, 'name': name, 'mimeType': mime_type, 'parents': [parent],
                'trashed': False, 'modifiedTime': '2024-05-01T12:00:00.000Z'}
        if mime_type != FOLDER_MIME_TYPE:
            item['content'] = content or b''
            item['size'] = str(len(item['content']))
            item['webViewLink'] = f"https://drive.google.com/file/d/{item_id}/view"
        self.items[item_id] = item
        return item_id

    def _check_failure(self):
        if self.failures:
            raise self.failures.pop(0)

    def lookup(self, file_id):
        self._check_failure()
        if file_id not in self.items:
            raise http_error(404, f"File not found: {file_id}")
        return self.items[file_id]

    @staticmethod
    def public(item):
        return {k: v for k, v in item.items() if k not in ('content', 'parents')}

    def query(self, q, page_size, page_token):
        self._check_failure()
        matches = [i for i in self.items.values() if not i['trashed']]

        name = self.NAME_CLAUSE.search(q)
        if name:
            wanted = name.group(1).replace("\\'", "'").replace("\\\\", "\\")
            matches = [i for i in matches if i['name'] == wanted]
        parent = self.PARENT_CLAUSE.search(q)
        if parent:
            matches = [i for i in matches if parent.group(1) in i['parents']]
        mime = self.MIME_CLAUSE.search(q)
        if mime:
            op, value = mime.groups()
            if op == '=':
                matches = [i for i in matches if i['mimeType'] == value]
            else:
                matches = [i for i in matches if i['mimeType'] != value]

        offset = int(page_token or 0)
        page = matches[offset:offset + page_size]
        response = {'files': [self.public(i) for i in page]}
        if offset + page_size < len(matches):
            response['nextPageToken'] = str(offset + page_size)
        return response

    def create(self, body, media_body):
        self._check_failure()
        parent = (body.get('parents') or ['root'])[0]
        if media_body is None:
            item_id = self._insert(body['name'], parent, body.get('mimeType', FOLDER_MIME_TYPE))
        else:
            content = media_body.getbytes(0, media_body.size())
            item_id = self._insert(body['name'], parent, media_body.mimetype(), content)
        if 'description' in body:
            self.items[item_id]['description'] = body['description']
        return self.public(self.items[item_id])

    def update(self, file_id, body, media_body):
        item = self.lookup(file_id)
        item.update({k: v for k, v in body.items() if k != 'parents'})
        if media_body is not None:
            item['content'] = media_body.getbytes(0, media_body.size())
            item['size'] = str(len(item['content']))
        return self.public(item)

    def delete(self, file_id):
        self.lookup(file_id)
        del self.items[file_id]
        return ''


@pytest.fixture
def drive_service(monkeypatch):
    monkeypatch.setattr("storage_adapters.gdrive.MediaIoBaseDownload", FakeDownloader)
    return FakeDriveService()


@pytest.fixture
def no_discovery(monkeypatch):
    """Skip building a real Drive service; record what it was built with."""
    built = {}

    def fake_build(service_name, version, http=None, cache_discovery=True):
        built.update(service=service_name, version=version, http=http)
        return object()

    monkeypatch.setattr("storage_adapters.gdrive.build", fake_build)
    return built


@pytest.fixture
def make_http_error():
    return http_error


# =============================================================================
# Microsoft Graph
# =============================================================================

NEXT_LINK_PREFIX = "https://graph.example/next/"


class FakeGraphClient:
    """In-memory OneDrive addressed the way GraphClient callers address it."""

    ROOT_PATH = re.compile(r"^/me/drive/root:/(?P<path>[^:]+)(?::/(?P<suffix>\w+))?$")
    ITEM = re.compile(r"^/me/drive/items/(?P<id>[^/]+)(?:/(?P<suffix>\w+))?$")

    def __init__(self):
        self.items = {}
        self.calls = []
        self.page_size = None
        self.omit_upload_web_url = False
        self.error = None
        self.profile = {'mail': 'grace@example.com', 'displayName': 'Grace Hopper'}
        self._next_id = 0

    # -- helpers used by tests ------------------------------------------------

    def add_folder(self, path):
        return self._insert(path, {'folder': {'childCount': 0}})

    def add_file(self, path, content=b''):
        return self._insert(path, {'file': {'mimeType': 'application/pdf'}}, content)

    def by_path(self, path):
        return self.items.get(path)

    def calls_to(self, method):
        return [c for c in self.calls if c[0] == method]

    # -- API behaviour --------------------------------------------------------

    def _insert(self, path, facet, content=None):
        self._next_id += 1
        parent, _, name = path.rpartition('/')
        item = {
            'id': f"item{self._next_id}",
            'name': name,
            'webUrl': f"https://onedrive.example/{path}",
            'lastModifiedDateTime': '2024-05-01T12:00:00Z',
            'parentReference': {'path': '/drive/root:' + (f"/{parent}" if parent else '')},
            **facet,
        }
        if content is not None:
            item['content'] = content
            item['size'] = len(content)
        self.items[path] = item
        return item['id']

    def _by_id(self, item_id):
        for item in self.items.values():
            if item['id'] == item_id:
                return item
        raise StorageNotFoundError("File not found in OneDrive")

    def _path_of(self, item_id):
        for path, item in self.items.items():
            if item['id'] == item_id:
                return path
        raise StorageNotFoundError("File not found in OneDrive")

    @staticmethod
    def _public(item):
        return {k: v for k, v in item.items() if k != 'content'}

    def _list(self, parent, skip=0):
        if parent and 'folder' not in self.items.get(parent, {}):
            raise StorageNotFoundError("File not found in OneDrive")
        children = [
            self._public(item) for path, item in sorted(self.items.items())
            if path.rpartition('/')[0] == parent
        ]
        if self.page_size is None:
            return {'value': children}
        page = children[skip:skip + self.page_size]
        response = {'value': page}
        if skip + self.page_size < len(children):
            response['@odata.nextLink'] = f"{NEXT_LINK_PREFIX}{parent}?skip={skip + self.page_size}"
        return response

    def _record(self, method, path, **extra):
        self.calls.append((method, path, extra))
        if self.error is not None:
            raise self.error

    def get(self, path, params=None):
        self._record('GET', path, params=params)
        if path == '/me':
            return dict(self.profile)
        if path == '/me/drive/root':
            return {'id': 'root', 'name': 'root', 'folder': {}, 'root': {}}
        if path == '/me/drive/root/children':
            return self._list('')
        if path.startswith(NEXT_LINK_PREFIX):
            parent, _, skip = path[len(NEXT_LINK_PREFIX):].partition('?skip=')
            return self._list(parent, int(skip))

        match = self.ROOT_PATH.match(path)
        if match:
            abs_path = unquote(match['path'])
            if match['suffix'] == 'children':
                return self._list(abs_path)
            if abs_path not in self.items:
                raise StorageNotFoundError("File not found in OneDrive")
            return self._public(self.items[abs_path])

        match = self.ITEM.match(path)
        if match:
            return self._public(self._by_id(match['id']))
        raise AssertionError(f"unexpected GET {path}")

    def post(self, path, body):
        self._record('POST', path, body=body)
        match = self.ITEM.match(path)
        if match and match['suffix'] == 'createLink':
            item = self._by_id(match['id'])
            return {'link': {'type': 'view', 'webUrl': f"https://1drv.ms/share/{item['id']}"}}

        if path == '/me/drive/root/children':
            parent = ''
        else:
            parent = unquote(self.ROOT_PATH.match(path)['path'])
        name = body['name']
        target = f"{parent}/{name}" if parent else name
        if target in self.items:
            target = f"{target} 1"
        self.add_folder(target)
        return self._public(self.items[target])

    def put(self, path, data, params=None, content_type='application/octet-stream'):
        self._record('PUT', path, params=params, content_type=content_type)
        match = self.ROOT_PATH.match(path)
        abs_path = unquote(match['path'])
        behaviour = (params or {}).get('@microsoft.graph.conflictBehavior')

        existing = self.items.get(abs_path)
        if existing is not None:
            if behaviour == 'fail':
                raise GraphError("OneDrive API error (409): nameAlreadyExists", status_code=409)
            existing['content'] = data
            existing['size'] = len(data)
            item = existing
        else:
            self._insert(abs_path, {'file': {'mimeType': content_type}}, data)
            item = self.items[abs_path]

        response = self._public(item)
        if self.omit_upload_web_url:
            response.pop('webUrl', None)
        return response

    def delete(self, path):
        self._record('DELETE', path)
        del self.items[self._path_of(self.ITEM.match(path)['id'])]

    def get_content(self, path):
        self._record('GET_CONTENT', path)
        content = self._by_id(self.ITEM.match(path)['id'])['content']
        return iter([content[:3], content[3:]])


@pytest.fixture
def graph():
    return FakeGraphClient()


# =============================================================================
# Supabase (storage buckets and tables)
# =============================================================================

def storage_exception(status: int, message: str) -> StorageException:
    return StorageException({'statusCode': status, 'error': message, 'message': message})


class FakeBucket:
    """One Supabase Storage bucket holding objects in a flat dict."""

    def __init__(self, name):
        self.name = name
        self.objects = {}
        self.uploads = []
        self.failures = {}

    def fail_next(self, operation, exc):
        self.failures.setdefault(operation, []).append(exc)

    def _check_failure(self, operation):
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def list(self, path='', options=None):
        self._check_failure("list")
        options = options or {}
        prefix = path.strip('/')
        entries = {}
        for key, (content, mime_type) in self.objects.items():
            if prefix:
                if not key.startswith(prefix + '/'):
                    continue
                rest = key[len(prefix) + 1:]
            else:
                rest = key
            if '/' in rest:
                folder = rest.split('/')[0]
                entries[folder] = {'name': folder, 'id': None, 'metadata': None}
            else:
                entries[rest] = {
                    'name': rest,
                    'id': f"obj-{key}",
                    'updated_at': '2024-05-01T12:00:00.000Z',
                    'metadata': {'size': len(content), 'mimetype': mime_type},
                }

        names = sorted(entries)
        if options.get('search'):
            names = [n for n in names if n.startswith(options['search'])]
        offset = options.get('offset', 0)
        limit = options.get('limit', 100)
        return [entries[n] for n in names[offset:offset + limit]]

    def upload(self, path, file, file_options=None):
        self._check_failure("upload")
        file_options = file_options or {}
        self.uploads.append((path, file_options))
        if path in self.objects and file_options.get('upsert') != 'true':
            raise storage_exception(409, 'The resource already exists')
        self.objects[path] = (bytes(file), file_options.get('content-type', 'text/plain'))
        return {'Key': f"{self.name}/{path}"}

    def download(self, path):
        self._check_failure("download")
        if path not in self.objects:
            raise storage_exception(404, 'Object not found')
        return self.objects[path][0]

    def remove(self, paths):
        self._check_failure("remove")
        removed = [p for p in paths if self.objects.pop(p, None) is not None]
        return [{'name': p} for p in removed]

    def get_public_url(self, path):
        return f"https://project.supabase.co/storage/v1/object/public/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.buckets = {}

    def from_(self, bucket):
        return self.buckets.setdefault(bucket, FakeBucket(bucket))


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Chainable table query supporting the filters DocumentStore uses."""

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.columns = '*'
        self.filters = []
        self.values = None
        self.row_limit = None
        self.deleting = False
        self.ordering = None
        self._negate = False

    def select(self, columns='*'):
        self.columns = columns
        return self

    def update(self, values):
        self.values = dict(values)
        return self

    def delete(self):
        self.deleting = True
        return self

    @property
    def not_(self):
        self._negate = True
        return self

    def is_(self, column, value):
        negate, self._negate = self._negate, False
        assert value == 'null'
        if negate:
            self.filters.append(lambda row: row.get(column) is not None)
        else:
            self.filters.append(lambda row: row.get(column) is None)
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def _project(self, row):
        row = dict(row)
        if 'storage_configs:storage_config_id' in self.columns:
            configs = {c['id']: c for c in self.client.tables.get('storage_configs', [])}
            row['storage_configs'] = configs.get(row.get('storage_config_id'))
        return row

    def execute(self):
        rows = [r for r in self.client.tables.setdefault(self.table, [])
                if all(f(r) for f in self.filters)]

        if self.deleting:
            table = self.client.tables[self.table]
            table[:] = [r for r in table if r not in rows]
            return FakeResponse([dict(r) for r in rows])

        if self.values is not None:
            for row in rows:
                row.update(self.values)
                self.client.updates.append((self.table, row['id'], dict(self.values)))
            return FakeResponse([dict(r) for r in rows])

        if self.ordering:
            column, desc = self.ordering
            rows.sort(key=lambda r: r.get(column) or '', reverse=desc)
        if self.row_limit is not None:
            rows = rows[:self.row_limit]
        return FakeResponse([self._project(r) for r in rows])


class FakeSupabaseClient:
    """Stand-in for supabase.Client: table queries plus storage buckets."""

    def __init__(self):
        self.tables = {'documents': [], 'storage_configs': []}
        self.updates = []
        self.storage = FakeStorage()

    def table(self, name):
        return FakeQuery(self, name)

    def bucket(self, name='documents'):
        return self.storage.from_(name)

    def add_config(self, config_id, provider, config, organization_id='org1'):
        row = {'id': config_id, 'provider': provider, 'config': config,
               'organization_id': organization_id}
        self.tables['storage_configs'].append(row)
        return row

    def add_document(self, document_id, config_id, storage_path,
                     created_at='2024-05-01T00:00:00Z', organization_id='org1'):
        row = {
            'id': document_id,
            'storage_config_id': config_id,
            'storage_path': storage_path,
            'original_filename': f"{document_id}.pdf",
            'organization_id': organization_id,
            'created_at': created_at,
            'upload_verification_status': 'pending',
            'upload_error': None,
        }
        self.tables['documents'].append(row)
        return row

    def document(self, document_id):
        return next(d for d in self.tables['documents'] if d['id'] == document_id)


@pytest.fixture
def supabase_client():
    return FakeSupabaseClient()


@pytest.fixture
def make_storage_exception():
    return storage_exception


@pytest.fixture
def onedrive_config(encryption_key):
    """Stored OneDrive config with an encrypted access token."""
    return {
        'encrypted_access_token': encrypt('onedrive-token', encryption_key),
        'rootFolderPath': 'Docuflow',
    }


@pytest.fixture
def transport_error():
    return StorageError("OneDrive request failed: connection reset")
