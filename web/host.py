"""
VPS Panel - Host services, databases and backups
Thin wrappers that run systemctl, mysql/psql, tar and mysqldump and turn
their text output into JSON-friendly structures.
"""

import logging
import os
import threading
import time
from datetime import datetime
from functools import wraps

from commands import is_safe_name, InvalidRequest

logger = logging.getLogger('vps-panel.host')

SERVICE_ACTIONS = ('start', 'stop', 'restart', 'reload')
BACKUP_TYPES = ('files', 'database')

# ---------------------------------------------------------------------------
# TTL Cache for expensive system queries
# ---------------------------------------------------------------------------
_cache_store = {}
_cache_lock = threading.Lock()


def _ttl_cache(seconds):
    """Simple TTL cache decorator for expensive functions"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            key = func.__name__
            now = time.time()
            with _cache_lock:
                if key in _cache_store:
                    result, ts = _cache_store[key]
                    if now - ts < seconds:
                        return result
            result = func(*args, **kwargs)
            with _cache_lock:
                _cache_store[key] = (result, now)
            return result
        return wrapper
    return decorator


def invalidate_cache(*func_names):
    """Invalidate cached results for given function names"""
    with _cache_lock:
        if not func_names:
            _cache_store.clear()
        for name in func_names:
            _cache_store.pop(name, None)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def parse_service_units(text):
    """Parse `systemctl list-units --type=service` output"""
    services = []
    for line in text.split('\n'):
        if '.service' not in line:
            continue
        parts = line.replace('●', ' ').split()
        if len(parts) < 4:
            continue
        services.append({
            'name': parts[0],
            'load': parts[1],
            'active': parts[2],
            'sub': parts[3],
            'description': ' '.join(parts[4:]),
        })
    return services


@_ttl_cache(10)
def get_services(runner):
    """Running service units"""
    result = runner.check(['systemctl', 'list-units', '--type=service', '--state=running',
                           '--no-pager', '--no-legend', '--plain'])
    return parse_service_units(result.stdout)


def service_action(runner, name, action):
    if action not in SERVICE_ACTIONS:
        raise InvalidRequest('Invalid action')
    if not is_safe_name(name):
        raise InvalidRequest('Invalid service name')
    runner.check(['systemctl', action, name])
    invalidate_cache('get_services')
    logger.info("Service %s: %s", name, action)
    return f"Service {name} {action} successful"


# ---------------------------------------------------------------------------
# Databases
# ---------------------------------------------------------------------------

_MYSQL_SYSTEM_DBS = {'information_schema', 'performance_schema'}


def parse_mysql_databases(text):
    databases = []
    for line in text.split('\n'):
        name = line.strip()
        if not name or name == 'Database' or name in _MYSQL_SYSTEM_DBS:
            continue
        databases.append({'name': name, 'type': 'MySQL'})
    return databases


def parse_psql_databases(text):
    """`psql -l -A -t` prints one `name|owner|encoding|...` row per database"""
    databases = []
    for line in text.split('\n'):
        if '|' not in line:
            continue
        name = line.split('|')[0].strip()
        if not name or '=' in name:
            continue
        databases.append({'name': name, 'type': 'PostgreSQL'})
    return databases


def get_databases(runner):
    """MySQL/MariaDB databases, else PostgreSQL databases, else nothing"""
    result = runner.run(['mysql', '-e', 'SHOW DATABASES;'])
    if result.returncode == 0:
        return parse_mysql_databases(result.stdout)

    result = runner.run(['psql', '-l', '-A', '-t'])
    if result.returncode == 0:
        return parse_psql_databases(result.stdout)

    logger.info("No MySQL or PostgreSQL server reachable")
    return []


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------

def run_backup(runner, backup_type, target_dir, source=None, now=None):
    """Archive `source` or dump all MySQL databases into `target_dir`. Returns the file path."""
    if backup_type not in BACKUP_TYPES:
        raise InvalidRequest('Invalid backup type')
    if not target_dir or not os.path.isabs(target_dir):
        raise InvalidRequest('Backup path must be an absolute path')
    if not os.path.isdir(target_dir):
        raise InvalidRequest('Backup directory not found')

    stamp = (now or datetime.now()).strftime('%Y%m%d_%H%M%S')
    if backup_type == 'files':
        if not source or not os.path.isabs(source):
            raise InvalidRequest('Backup source must be an absolute path')
        dest = os.path.join(target_dir, f"backup_{stamp}.tar.gz")
        runner.check(['tar', '-czf', dest, source], long=True)
    else:
        dest = os.path.join(target_dir, f"db_backup_{stamp}.sql")
        runner.check(['mysqldump', '--all-databases', f"--result-file={dest}"], long=True)

    logger.info("Backup (%s) written to %s", backup_type, dest)
    return dest
