#!/usr/bin/env python3
"""
VPS Panel - Web Interface
Flask + Socket.IO server exposing monitoring, files, services, databases,
backups and KVM virtual machines of the host it runs on.
"""

import os
import grp
import pwd
import shutil
import stat as stat_module
import time
import logging
from datetime import datetime, timedelta
from functools import wraps

from flask import (
    Flask, render_template, request, session, jsonify, send_file
)
from flask_socketio import SocketIO
from flask_wtf.csrf import CSRFProtect, generate_csrf
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename

import diagnostics
import host
import sysinfo
from commands import CommandRunner, CommandError, InvalidRequest
from config import DATA_DIR, load_config, server_port
from hypervisor import VMManager, VM_TEMPLATES, VMCreationError
from realtime import MetricsPusher

APP_NAME = 'vps-panel'
APP_VERSION = '1.0.0'

logger = logging.getLogger('vps-panel')

app = Flask(__name__)

DATA_DIR.mkdir(parents=True, exist_ok=True)

# Secret key: env var > persisted file > generate and persist
_secret_key_file = DATA_DIR / '.secret_key'
_env_secret = os.environ.get('VPS_PANEL_SECRET')
if _env_secret:
    app.secret_key = _env_secret
elif _secret_key_file.exists():
    app.secret_key = _secret_key_file.read_bytes()
else:
    _generated = os.urandom(32)
    _secret_key_file.write_bytes(_generated)
    os.chmod(_secret_key_file, 0o600)
    app.secret_key = _generated

app.config['MAX_CONTENT_LENGTH'] = 100 * 1024 * 1024  # 100MB upload limit
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['WTF_CSRF_HEADERS'] = ['X-CSRFToken', 'X-CSRF-Token']
csrf = CSRFProtect(app)

# Load configuration
CONFIG = load_config()
app.permanent_session_lifetime = timedelta(hours=CONFIG['auth'].get('session_lifetime_hours', 24))

# Auth configuration - env vars take precedence, then config, then defaults
USERNAME = os.environ.get('VPS_PANEL_USER') or CONFIG['auth'].get('username') or 'admin'
_env_pass = os.environ.get('VPS_PANEL_PASS', '')
if _env_pass:
    PASSWORD_HASH = generate_password_hash(_env_pass)
elif CONFIG['auth'].get('password_hash'):
    PASSWORD_HASH = CONFIG['auth']['password_hash']
else:
    import secrets as _secrets
    _generated_pass = _secrets.token_urlsafe(16)
    PASSWORD_HASH = generate_password_hash(_generated_pass)
    logging.warning(
        'WARNING: No password configured. Generated temporary password: %s  '
        'Set VPS_PANEL_PASS env var or auth.password_hash in config.json.',
        _generated_pass
    )

runner = CommandRunner(
    timeout=CONFIG['commands']['timeout'],
    long_timeout=CONFIG['commands']['long_timeout'],
    sudo=CONFIG['hypervisor'].get('sudo', False),
)
vm_manager = VMManager(runner, CONFIG)

socketio = SocketIO(app, async_mode='threading')
metrics_pusher = MetricsPusher(socketio, sysinfo.metrics_snapshot,
                               interval=CONFIG.get('metrics_interval', 5))

START_TIME = time.time()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def error_response(message, code=500, details=None, **extra):
    body = {'status': 'error', 'message': message}
    if details:
        body['details'] = details
    body.update(extra)
    return jsonify(body), code


def command_error_response(e, code=500):
    """Surface a failed command's own error text"""
    return error_response(str(e), code, details=e.details)


# Login rate limiting: max 5 attempts per IP per 5 minutes
_login_attempts = {}  # {ip: [timestamp, ...]}
_LOGIN_MAX_ATTEMPTS = 5
_LOGIN_WINDOW = 300  # seconds
_LOGIN_MAX_IPS = 1000  # max tracked IPs to prevent memory growth
_login_last_cleanup = 0


def _cleanup_login_attempts():
    """Remove all expired entries and enforce max IP limit"""
    global _login_last_cleanup
    now = time.time()
    # Only run full cleanup every 60 seconds
    if now - _login_last_cleanup < 60:
        return
    _login_last_cleanup = now
    expired = [ip for ip, attempts in _login_attempts.items()
               if not any(t > now - _LOGIN_WINDOW for t in attempts)]
    for ip in expired:
        del _login_attempts[ip]
    if len(_login_attempts) > _LOGIN_MAX_IPS:
        sorted_ips = sorted(_login_attempts.items(), key=lambda x: max(x[1]) if x[1] else 0)
        for ip, _ in sorted_ips[:len(_login_attempts) - _LOGIN_MAX_IPS]:
            del _login_attempts[ip]


def _is_rate_limited(ip):
    """Check if an IP has exceeded login attempt limits"""
    now = time.time()
    attempts = [t for t in _login_attempts.get(ip, []) if now - t < _LOGIN_WINDOW]
    _login_attempts[ip] = attempts
    _cleanup_login_attempts()
    return len(attempts) >= _LOGIN_MAX_ATTEMPTS


def _record_attempt(ip):
    """Record a failed login attempt"""
    _login_attempts.setdefault(ip, []).append(time.time())


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not session.get('logged_in'):
            return error_response('Authentication required', 401)
        return f(*args, **kwargs)
    return decorated


def is_path_allowed(path):
    """Check if path is within allowed directories (whitelist approach)"""
    allowed = CONFIG.get('file_browser', {}).get('allowed_paths', [])
    norm = os.path.realpath(path)
    for a in allowed:
        a = os.path.realpath(a)
        if norm == a or norm.startswith(a.rstrip('/') + '/'):
            return True
    return False


def format_file_size(size_bytes):
    """Format bytes to human readable"""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def _owner_name(uid):
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid):
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _json_body():
    return request.get_json(silent=True) or {}


# ---------------------------------------------------------------------------
# Auth routes
# ---------------------------------------------------------------------------

@app.route('/api/login', methods=['POST'])
@csrf.exempt
def login():
    client_ip = request.remote_addr or '-'
    if _is_rate_limited(client_ip):
        return error_response('Too many login attempts. Try again later.', 429)

    data = _json_body()
    username = data.get('username', '')
    password = data.get('password', '')
    if username == USERNAME and check_password_hash(PASSWORD_HASH, password):
        session.permanent = True
        session['logged_in'] = True
        session['username'] = username
        logger.info("Login by %s from %s", username, client_ip)
        return jsonify({'status': 'ok', 'message': 'Logged in', 'csrf_token': generate_csrf()})

    _record_attempt(client_ip)
    logger.warning("Failed login for %r from %s", username, client_ip)
    return error_response('Invalid username or password', 401)


@app.route('/api/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'status': 'ok', 'message': 'Logged out'})


@app.route('/api/session')
def session_info():
    return jsonify({
        'logged_in': bool(session.get('logged_in')),
        'username': session.get('username'),
        'csrf_token': generate_csrf(),
    })


@app.route('/api/health')
def health():
    return jsonify({
        'status': 'ok',
        'service': APP_NAME,
        'version': APP_VERSION,
        'uptime_seconds': int(time.time() - START_TIME),
    })


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------

@app.route('/api/system')
@login_required
def system_info():
    return jsonify(sysinfo.get_system_info())


@app.route('/api/system/resources')
@login_required
def system_resources():
    return jsonify(sysinfo.get_resources())


@app.route('/api/processes')
@login_required
def processes():
    sort = request.args.get('sort', 'mem')
    try:
        return jsonify(sysinfo.get_processes(runner, sort=sort))
    except CommandError as e:
        return command_error_response(e)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def _list_directory(norm_path):
    items = []
    for name in sorted(os.listdir(norm_path)):
        full = os.path.join(norm_path, name)
        try:
            st = os.stat(full)
        except OSError:
            # Broken symlink or no permission
            items.append({'name': name, 'isDirectory': False, 'type': 'unknown',
                          'size': 0, 'sizeHuman': '-', 'modified': None,
                          'owner': '?', 'mode': '?'})
            continue
        is_dir = stat_module.S_ISDIR(st.st_mode)
        items.append({
            'name': name,
            'isDirectory': is_dir,
            'type': 'dir' if is_dir else 'file',
            'size': st.st_size,
            'sizeHuman': '-' if is_dir else format_file_size(st.st_size),
            'modified': datetime.fromtimestamp(st.st_mtime).isoformat(timespec='seconds'),
            'owner': _owner_name(st.st_uid),
            'mode': oct(stat_module.S_IMODE(st.st_mode)),
        })
    # Sort: dirs first, then files
    items.sort(key=lambda x: (0 if x['isDirectory'] else 1, x['name'].lower()))
    return items


@app.route('/api/files/', defaults={'subpath': ''})
@app.route('/api/files/<path:subpath>')
@login_required
def files_get(subpath):
    default_path = CONFIG.get('file_browser', {}).get('default_path', '/home')
    norm_path = os.path.abspath('/' + subpath) if subpath else default_path

    if not is_path_allowed(norm_path):
        return error_response('Access denied', 403)
    if not os.path.exists(norm_path):
        return error_response('Not found', 404)

    if os.path.isfile(norm_path):
        return send_file(norm_path, as_attachment=True)

    try:
        items = _list_directory(norm_path)
        dir_stat = os.stat(norm_path)
    except PermissionError:
        return error_response('No read permissions on this directory', 403)
    except OSError as e:
        return error_response(str(e), 500)

    parent_path = os.path.dirname(norm_path)
    parent = parent_path if (norm_path != '/' and is_path_allowed(parent_path)) else None
    return jsonify({
        'path': norm_path,
        'parent': parent,
        'items': items,
        'dir_info': {
            'owner': _owner_name(dir_stat.st_uid),
            'group': _group_name(dir_stat.st_gid),
            'mode': oct(stat_module.S_IMODE(dir_stat.st_mode)),
            'writable': os.access(norm_path, os.W_OK),
        },
    })


@app.route('/api/files/<path:subpath>', methods=['DELETE'])
@login_required
def files_delete(subpath):
    norm_path = os.path.abspath('/' + subpath)

    if not is_path_allowed(norm_path):
        return error_response('Access denied', 403)

    protected = CONFIG.get('file_browser', {}).get('protected_paths', [])
    protected = set(protected) | set(CONFIG.get('file_browser', {}).get('allowed_paths', []))
    if norm_path in {os.path.abspath(p) for p in protected}:
        return error_response('Cannot delete system directory', 403)

    try:
        if os.path.isdir(norm_path) and not os.path.islink(norm_path):
            shutil.rmtree(norm_path)
            logger.info("Deleted folder %s", norm_path)
            return jsonify({'status': 'ok', 'message': 'Folder deleted'})
        elif os.path.lexists(norm_path):
            os.remove(norm_path)
            logger.info("Deleted file %s", norm_path)
            return jsonify({'status': 'ok', 'message': 'File deleted'})
        return error_response('Path not found', 404)
    except OSError as e:
        return error_response(str(e), 500)


@app.route('/api/files/upload', methods=['POST'])
@login_required
def files_upload():
    path = request.form.get('path') or CONFIG.get('file_browser', {}).get('default_path', '/home')
    norm_path = os.path.abspath(path)

    if not is_path_allowed(norm_path):
        return error_response('Access denied', 403)

    if not os.path.isdir(norm_path):
        return error_response('Directory not found', 404)

    if 'file' not in request.files:
        return error_response('No file received', 400)

    file = request.files['file']
    if file.filename == '':
        return error_response('No file selected', 400)

    filename = secure_filename(file.filename)
    if not filename:
        return error_response('Invalid filename', 400)
    dest = os.path.join(norm_path, filename)

    try:
        file.save(dest)
        logger.info("Uploaded %s", dest)
        return jsonify({'status': 'ok', 'message': f"'{filename}' uploaded", 'path': dest})
    except OSError as e:
        return error_response(str(e), 500)


@app.route('/api/files/mkdir', methods=['POST'])
@login_required
def files_mkdir():
    data = _json_body()
    path = data.get('path', '')
    name = (data.get('name') or '').strip()

    if not name or '/' in name or name in ('.', '..'):
        return error_response('Invalid folder name', 400)

    norm_path = os.path.abspath(os.path.join(path or '/', name))
    if not is_path_allowed(norm_path):
        return error_response('Access denied', 403)

    try:
        os.makedirs(norm_path, exist_ok=False)
        logger.info("Created folder %s", norm_path)
        return jsonify({'status': 'ok', 'message': f"Folder '{name}' created"})
    except FileExistsError:
        return error_response('Folder already exists', 400)
    except OSError as e:
        return error_response(str(e), 500)


# ---------------------------------------------------------------------------
# Services, databases, backups
# ---------------------------------------------------------------------------

@app.route('/api/services')
@login_required
def services():
    try:
        return jsonify(host.get_services(runner))
    except CommandError as e:
        return command_error_response(e)


@app.route('/api/services/<service>/<action>', methods=['POST'])
@login_required
def service_action(service, action):
    try:
        message = host.service_action(runner, service, action)
    except InvalidRequest as e:
        return error_response(str(e), 400)
    except CommandError as e:
        return command_error_response(e)
    return jsonify({'status': 'ok', 'message': message})


@app.route('/api/databases')
@login_required
def databases():
    return jsonify(host.get_databases(runner))


@app.route('/api/backup', methods=['POST'])
@login_required
def backup():
    data = _json_body()
    backup_cfg = CONFIG.get('backup', {})
    target_dir = data.get('path') or backup_cfg.get('default_dir')
    source = data.get('source') or backup_cfg.get('default_source')
    if target_dir and not is_path_allowed(target_dir):
        return error_response('Access denied', 403)
    if data.get('type') == 'files' and source and not is_path_allowed(source):
        return error_response('Access denied', 403)
    try:
        dest = host.run_backup(runner, data.get('type'), target_dir, source=source)
    except InvalidRequest as e:
        return error_response(str(e), 400)
    except CommandError as e:
        return command_error_response(e)
    return jsonify({'status': 'ok', 'message': 'Backup completed successfully', 'file': dest})


# ---------------------------------------------------------------------------
# Virtual machines
# ---------------------------------------------------------------------------

@app.route('/api/vms')
@login_required
def vms():
    return jsonify(vm_manager.list_vms())


@app.route('/api/vms/create', methods=['POST'])
@login_required
def vm_create():
    try:
        params = vm_manager.resolve_create_params(_json_body())
    except InvalidRequest as e:
        return error_response(str(e), 400)

    logger.info("VM create requested: %s", params)
    try:
        result = vm_manager.create(params)
    except VMCreationError as e:
        logger.error("VM creation error: %s", e)
        return error_response(str(e), 500, details=e.details, attempts=e.attempts)

    result.update({'status': 'ok', 'message': f"VM {params['name']} created successfully"})
    return jsonify(result)


@app.route('/api/vms/<name>/<action>', methods=['POST'])
@login_required
def vm_action(name, action):
    try:
        message = vm_manager.action(name, action)
    except InvalidRequest as e:
        return error_response(str(e), 400)
    except CommandError as e:
        return command_error_response(e)
    return jsonify({'status': 'ok', 'message': message})


@app.route('/api/vms/<name>', methods=['DELETE'])
@login_required
def vm_delete(name):
    try:
        message = vm_manager.delete(name)
    except InvalidRequest as e:
        return error_response(str(e), 400)
    except CommandError as e:
        return command_error_response(e)
    return jsonify({'status': 'ok', 'message': message})


@app.route('/api/vms/<name>/console')
@login_required
def vm_console(name):
    try:
        return jsonify(vm_manager.console(name))
    except InvalidRequest as e:
        return error_response(str(e), 400)
    except CommandError as e:
        return error_response('Failed to get console info', 500, details=e.details)
    except ValueError as e:
        return error_response(str(e), 500)


@app.route('/api/vm-templates')
@login_required
def vm_templates():
    return jsonify(list(VM_TEMPLATES))


@app.route('/api/debug/vm-setup')
@login_required
def debug_vm_setup():
    return jsonify(diagnostics.probe(runner, CONFIG['hypervisor']['images_dir'],
                                     network_name=CONFIG['hypervisor']['network']['name']))


@app.route('/vnc/<name>')
@login_required
def vnc_viewer(name):
    try:
        console = vm_manager.console(name)
        error = None
    except (InvalidRequest, CommandError, ValueError) as e:
        console = None
        error = str(e)
    return render_template('vnc.html', name=name, console=console, error=error), 200 if console else 404


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

@socketio.on('connect')
def ws_connect(auth=None):
    if not session.get('logged_in'):
        return False
    metrics_pusher.start(request.sid)


@socketio.on('disconnect')
def ws_disconnect(*args):
    metrics_pusher.stop(request.sid)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def serve():
    port = server_port(CONFIG)
    host_addr = CONFIG.get('server', {}).get('host', '0.0.0.0')
    logger.info("VPS Panel running on http://%s:%s", host_addr, port)
    socketio.run(app, host=host_addr, port=port, debug=False, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    serve()
