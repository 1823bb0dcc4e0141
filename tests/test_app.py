import io

import pytest

import app as panel
import host
from conftest import FakeRunner, NET_LIST_ACTIVE
from hypervisor import VMManager


@pytest.fixture
def fake(monkeypatch, config):
    runner = FakeRunner()
    monkeypatch.setattr(panel, 'runner', runner)
    monkeypatch.setattr(panel, 'vm_manager', VMManager(runner, config))
    return runner


@pytest.fixture
def client():
    panel.app.config['TESTING'] = True
    panel.app.config['WTF_CSRF_ENABLED'] = False
    panel._login_attempts.clear()
    host.invalidate_cache()
    with panel.app.test_client() as c:
        yield c
    panel._login_attempts.clear()


@pytest.fixture
def auth_client(client):
    resp = client.post('/api/login', json={'username': 'admin', 'password': 'secret'})
    assert resp.status_code == 200
    return client


@pytest.fixture
def browse_root(monkeypatch, tmp_path):
    root = tmp_path / 'srv'
    root.mkdir()
    monkeypatch.setitem(panel.CONFIG, 'file_browser', {
        'default_path': str(root),
        'allowed_paths': [str(root)],
        'protected_paths': ['/'],
    })
    return root


def url_for_path(path):
    return '/api/files/' + str(path).lstrip('/')


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def test_health_needs_no_login(client):
    resp = client.get('/api/health')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'


@pytest.mark.parametrize('url', ['/api/vms', '/api/services', '/api/system', '/api/vm-templates',
                                 '/api/files/', '/vnc/web1'])
def test_protected_routes_need_login(client, url):
    resp = client.get(url)
    assert resp.status_code == 401
    assert resp.get_json() == {'status': 'error', 'message': 'Authentication required'}


def test_login_logout_session(client):
    assert client.get('/api/session').get_json()['logged_in'] is False

    resp = client.post('/api/login', json={'username': 'admin', 'password': 'secret'})
    body = resp.get_json()
    assert body['status'] == 'ok'
    assert body['csrf_token']
    assert client.get('/api/session').get_json()['username'] == 'admin'

    client.post('/api/logout')
    assert client.get('/api/session').get_json()['logged_in'] is False


def test_wrong_password(client):
    resp = client.post('/api/login', json={'username': 'admin', 'password': 'nope'})
    assert resp.status_code == 401
    assert resp.get_json()['status'] == 'error'


def test_login_rate_limit(client):
    for _ in range(5):
        client.post('/api/login', json={'username': 'admin', 'password': 'nope'})
    resp = client.post('/api/login', json={'username': 'admin', 'password': 'secret'})
    assert resp.status_code == 429


# ---------------------------------------------------------------------------
# Virtual machines
# ---------------------------------------------------------------------------

def test_create_vm(auth_client, fake, cloud_image):
    fake.on('virsh', 'net-list', stdout=NET_LIST_ACTIVE)

    resp = auth_client.post('/api/vms/create', json={'name': 'web1', 'memory': 1024, 'cpus': 1, 'diskSize': 20})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body['status'] == 'ok'
    assert body['message'] == 'VM web1 created successfully'
    assert body['strategy'] == 'cloud-image'
    assert body['warnings'] == []
    assert len(fake.commands('virt-install')) == 1


def test_create_vm_fallback_reports_warning(auth_client, fake):
    fake.on('virsh', 'net-list', stdout=NET_LIST_ACTIVE)
    fake.on('wget', returncode=4, stderr='Network failure')

    body = auth_client.post('/api/vms/create', json={'name': 'web1', 'template': 'ubuntu-22.04'}).get_json()

    assert body['strategy'] == 'bare-disk'
    assert 'no operating system' in body['warnings'][0]
    assert body['attempts'][0]['error'] == 'Network failure'


@pytest.mark.parametrize('payload', [
    {'name': 'bad name', 'memory': 1024, 'cpus': 1, 'diskSize': 20},
    {'name': 'web1', 'memory': 'lots', 'cpus': 1, 'diskSize': 20},
    {'memory': 1024, 'cpus': 1, 'diskSize': 20},
])
def test_create_vm_invalid_request(auth_client, fake, payload):
    resp = auth_client.post('/api/vms/create', json=payload)
    assert resp.status_code == 400
    assert resp.get_json()['status'] == 'error'
    assert fake.calls == []


def test_create_vm_all_strategies_fail(auth_client, fake):
    fake.on('virsh', 'net-list', returncode=1, stderr='error: failed to connect to the hypervisor')

    resp = auth_client.post('/api/vms/create', json={'name': 'web1', 'memory': 1024, 'cpus': 1, 'diskSize': 20})

    assert resp.status_code == 500
    body = resp.get_json()
    assert body['details'] == 'error: failed to connect to the hypervisor'
    assert [a['strategy'] for a in body['attempts']] == ['cloud-image', 'bare-disk']


def test_list_vms_without_libvirt(auth_client, fake):
    fake.on('virsh', returncode=127, stderr='virsh: command not found')
    assert auth_client.get('/api/vms').get_json() == {'vms': [], 'virtualization': 'none'}


def test_vm_action(auth_client, fake):
    resp = auth_client.post('/api/vms/web1/stop')
    assert resp.get_json() == {'status': 'ok', 'message': 'VM web1 stop successful'}
    assert fake.calls == [['virsh', 'destroy', 'web1']]


def test_vm_invalid_action(auth_client, fake):
    resp = auth_client.post('/api/vms/web1/explode')
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Invalid action'
    assert fake.calls == []


def test_vm_action_failure_surfaces_stderr(auth_client, fake):
    fake.on('virsh', 'start', returncode=1, stderr='error: Domain is already active')
    resp = auth_client.post('/api/vms/web1/start')
    assert resp.status_code == 500
    assert resp.get_json()['message'] == 'error: Domain is already active'


def test_delete_ghost_vm(auth_client, fake):
    error = "error: failed to get domain 'ghost'"
    fake.on('virsh', 'destroy', returncode=1, stderr=error)
    fake.on('virsh', 'undefine', returncode=1, stderr=error)

    resp = auth_client.delete('/api/vms/ghost')

    assert resp.status_code == 500
    assert resp.get_json()['message'] == error
    assert fake.commands('rm') == []


def test_delete_vm(auth_client, fake):
    resp = auth_client.delete('/api/vms/web1')
    assert resp.get_json()['message'] == 'VM web1 deleted successfully'
    assert [c[:2] for c in fake.calls] == [['virsh', 'destroy'], ['virsh', 'undefine'], ['rm', '-rf']]


def test_console_info(auth_client, fake):
    fake.on('virsh', 'vncdisplay', stdout=':2\n')
    fake.on('hostname', stdout='203.0.113.7\n')

    body = auth_client.get('/api/vms/web1/console').get_json()

    assert body['vncPort'] == 5902
    assert body['consoleUrl'] == 'vnc://203.0.113.7:5902'
    assert body['webConsoleUrl'] is None


def test_console_info_failure(auth_client, fake):
    fake.on('virsh', 'vncdisplay', returncode=1, stderr="error: failed to get domain 'x'")
    resp = auth_client.get('/api/vms/x/console')
    assert resp.status_code == 500
    assert resp.get_json()['message'] == 'Failed to get console info'


def test_vnc_page(auth_client, fake):
    fake.on('virsh', 'vncdisplay', stdout=':0\n')
    fake.on('hostname', stdout='203.0.113.7\n')

    resp = auth_client.get('/vnc/web1')

    assert resp.status_code == 200
    assert b'vnc://203.0.113.7:5900' in resp.data
    assert b'No web console bridge is configured' in resp.data


def test_vnc_page_unknown_vm(auth_client, fake):
    fake.on('virsh', 'vncdisplay', returncode=1, stderr="error: failed to get domain 'nope'")
    resp = auth_client.get('/vnc/nope')
    assert resp.status_code == 404
    assert b'Console not available' in resp.data


def test_templates(auth_client):
    templates = auth_client.get('/api/vm-templates').get_json()
    assert [t['id'] for t in templates] == ['ubuntu-20.04', 'ubuntu-22.04', 'centos-8', 'debian-11']


def test_debug_vm_setup(auth_client, fake):
    body = auth_client.get('/api/debug/vm-setup').get_json()
    assert set(body) >= {'timestamp', 'system', 'virtualization', 'permissions', 'services', 'libvirt', 'issues'}


# ---------------------------------------------------------------------------
# Services, databases, backups
# ---------------------------------------------------------------------------

def test_services(auth_client, fake):
    fake.on('systemctl', 'list-units', stdout='nginx.service loaded active running nginx web server\n')
    body = auth_client.get('/api/services').get_json()
    assert body[0]['name'] == 'nginx.service'


def test_service_action(auth_client, fake):
    resp = auth_client.post('/api/services/nginx/restart')
    assert resp.get_json()['status'] == 'ok'
    assert fake.calls == [['systemctl', 'restart', 'nginx']]


def test_service_action_invalid(auth_client, fake):
    resp = auth_client.post('/api/services/nginx/mask')
    assert resp.status_code == 400
    assert fake.calls == []


def test_databases(auth_client, fake):
    fake.on('mysql', returncode=127)
    fake.on('psql', returncode=127)
    assert auth_client.get('/api/databases').get_json() == []


def test_backup(auth_client, fake, browse_root):
    resp = auth_client.post('/api/backup', json={'type': 'database', 'path': str(browse_root)})
    body = resp.get_json()
    assert body['status'] == 'ok'
    assert body['file'].startswith(str(browse_root))
    assert fake.commands('mysqldump')


def test_files_backup_inside_whitelist(auth_client, fake, browse_root):
    (browse_root / 'site').mkdir()
    resp = auth_client.post('/api/backup', json={'type': 'files', 'path': str(browse_root),
                                                 'source': str(browse_root / 'site')})
    assert resp.get_json()['status'] == 'ok'
    assert fake.commands('tar')[0][-1] == str(browse_root / 'site')


@pytest.mark.parametrize('backup_type,path,source', [
    ('files', None, '/root'),
    ('database', '/etc', None),
])
def test_backup_outside_whitelist_is_denied(auth_client, fake, browse_root, backup_type, path, source):
    payload = {'type': backup_type, 'path': path or str(browse_root)}
    if source:
        payload['source'] = source
    resp = auth_client.post('/api/backup', json=payload)
    assert resp.status_code == 403
    assert fake.calls == []


def test_backup_invalid_type(auth_client, fake, browse_root):
    resp = auth_client.post('/api/backup', json={'type': 'everything', 'path': str(browse_root)})
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def test_list_directory(auth_client, browse_root):
    (browse_root / 'site').mkdir()
    (browse_root / 'notes.txt').write_text('hello')

    body = auth_client.get(url_for_path(browse_root)).get_json()

    assert body['path'] == str(browse_root)
    assert body['parent'] is None
    assert [(i['name'], i['isDirectory']) for i in body['items']] == [('site', True), ('notes.txt', False)]
    assert body['items'][1]['sizeHuman'] == '5 B'


def test_default_directory(auth_client, browse_root):
    assert auth_client.get('/api/files/').get_json()['path'] == str(browse_root)


def test_download_file(auth_client, browse_root):
    (browse_root / 'notes.txt').write_text('hello')
    resp = auth_client.get(url_for_path(browse_root / 'notes.txt'))
    assert resp.status_code == 200
    assert resp.data == b'hello'


def test_outside_whitelist_is_denied(auth_client, browse_root):
    assert auth_client.get('/api/files/etc').status_code == 403
    assert auth_client.delete('/api/files/etc/hostname').status_code == 403


def test_missing_path(auth_client, browse_root):
    assert auth_client.get(url_for_path(browse_root / 'missing')).status_code == 404


def test_delete_file_and_folder(auth_client, browse_root):
    (browse_root / 'old.log').write_text('x')
    (browse_root / 'cache' / 'sub').mkdir(parents=True)

    assert auth_client.delete(url_for_path(browse_root / 'old.log')).get_json()['message'] == 'File deleted'
    assert auth_client.delete(url_for_path(browse_root / 'cache')).get_json()['message'] == 'Folder deleted'
    assert list(browse_root.iterdir()) == []


def test_cannot_delete_allowed_root(auth_client, browse_root):
    resp = auth_client.delete(url_for_path(browse_root))
    assert resp.status_code == 403
    assert browse_root.exists()


def test_upload_sanitizes_filename(auth_client, browse_root):
    resp = auth_client.post('/api/files/upload', data={
        'path': str(browse_root),
        'file': (io.BytesIO(b'data'), '../evil name.txt'),
    }, content_type='multipart/form-data')

    assert resp.get_json()['path'] == str(browse_root / 'evil_name.txt')
    assert (browse_root / 'evil_name.txt').read_bytes() == b'data'


def test_upload_without_file(auth_client, browse_root):
    resp = auth_client.post('/api/files/upload', data={'path': str(browse_root)},
                            content_type='multipart/form-data')
    assert resp.status_code == 400


def test_mkdir(auth_client, browse_root):
    resp = auth_client.post('/api/files/mkdir', json={'path': str(browse_root), 'name': 'new'})
    assert resp.get_json()['status'] == 'ok'
    assert (browse_root / 'new').is_dir()

    again = auth_client.post('/api/files/mkdir', json={'path': str(browse_root), 'name': 'new'})
    assert again.status_code == 400


@pytest.mark.parametrize('name', ['', '..', 'a/b'])
def test_mkdir_rejects_bad_names(auth_client, browse_root, name):
    resp = auth_client.post('/api/files/mkdir', json={'path': str(browse_root), 'name': name})
    assert resp.status_code == 400
