"""
VPS Panel - Configuration Module
Loads, saves and provides defaults for all configurable values.
"""

import json
import os
import threading
from pathlib import Path

DATA_DIR = Path(os.environ.get('VPS_PANEL_DATA_DIR') or Path(__file__).parent / 'data')

CONFIG_FILENAME = 'config.json'

_config_lock = threading.Lock()


def get_default_config():
    """Return all default configuration values"""
    return {
        "server": {
            "host": "0.0.0.0",
            "port": 8080,
        },
        "auth": {
            "username": "admin",
            "password_hash": None,
            "session_lifetime_hours": 24,
        },
        "commands": {
            "timeout": 60,
            "long_timeout": 3600,
        },
        "metrics_interval": 5,
        "file_browser": {
            "default_path": "/home",
            "allowed_paths": ["/home", "/srv", "/tmp", "/var/www", "/var/backups"],
            "protected_paths": ["/", "/etc", "/home", "/root", "/var", "/var/www", "/usr"],
        },
        "backup": {
            "default_dir": "/var/backups",
            "default_source": "/home",
        },
        "hypervisor": {
            "images_dir": "/var/lib/libvirt/images",
            "cloud_images_subdir": "cloud-images",
            "cloud_image_name": "ubuntu-22.04-server-cloudimg-amd64.img",
            "cloud_image_url": (
                "https://cloud-images.ubuntu.com/releases/22.04/release/"
                "ubuntu-22.04-server-cloudimg-amd64.img"
            ),
            "os_variant": "ubuntu22.04",
            "cloud_user": "ubuntu",
            "cloud_password": "ubuntu",
            "install_iso": None,
            "web_console_url": None,
            "sudo": False,
            "network": {
                "name": "default",
                "bridge": "virbr0",
                "mac": "52:54:00:00:00:00",
                "address": "192.168.122.1",
                "netmask": "255.255.255.0",
                "dhcp_start": "192.168.122.2",
                "dhcp_end": "192.168.122.254",
            },
        },
    }


def _deep_merge(base, override):
    """Recursively merge override into base, returning merged dict"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def config_path(data_dir=None):
    return Path(data_dir or DATA_DIR) / CONFIG_FILENAME


def load_config(data_dir=None):
    """Load config from disk, merged with defaults for any missing keys"""
    defaults = get_default_config()
    path = config_path(data_dir)
    if path.exists():
        try:
            with open(path, 'r') as f:
                user_config = json.load(f)
            if isinstance(user_config, dict):
                return _deep_merge(defaults, user_config)
        except (json.JSONDecodeError, OSError):
            pass
    return defaults


def save_config(config, data_dir=None):
    """Save config to disk with thread safety"""
    path = config_path(data_dir)
    with _config_lock:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config, indent=2))


def server_port(config):
    """Listening port: PORT env var > config > 8080"""
    env_port = os.environ.get('PORT', '').strip()
    if env_port.isdigit():
        return int(env_port)
    try:
        return int(config.get('server', {}).get('port', 8080))
    except (TypeError, ValueError):
        return 8080
