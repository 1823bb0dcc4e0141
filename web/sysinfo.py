"""
VPS Panel - Host metrics
CPU, memory, disk and network figures for the dashboard and the
WebSocket push.
"""

import logging
import platform
import socket

import psutil

logger = logging.getLogger('vps-panel.sysinfo')

# First non-blocking call always returns 0.0; take the baseline now
psutil.cpu_percent(interval=None)


def _percentage(used, total):
    return round(used / total * 100, 1) if total else 0


def _disk_partitions():
    """Mounted filesystems with their usage, skipping ones we cannot stat"""
    disks = []
    seen = set()
    for part in psutil.disk_partitions(all=False):
        if part.mountpoint in seen:
            continue
        seen.add(part.mountpoint)
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except (PermissionError, OSError):
            continue
        disks.append({
            'fs': part.device,
            'mount': part.mountpoint,
            'type': part.fstype,
            'used': usage.used,
            'total': usage.total,
            'available': usage.free,
            'percentage': _percentage(usage.used, usage.total),
        })
    return disks


def metrics_snapshot():
    """Single data point pushed to connected dashboards"""
    memory = psutil.virtual_memory()
    return {
        'cpu': psutil.cpu_percent(interval=None),
        'memory': {
            'used': memory.used,
            'total': memory.total,
            'percentage': _percentage(memory.used, memory.total),
        },
        'disk': [
            {'fs': d['fs'], 'used': d['used'], 'total': d['total'], 'percentage': d['percentage']}
            for d in _disk_partitions()
        ],
    }


def _network_interfaces():
    interfaces = []
    stats = psutil.net_if_stats()
    for name, addrs in psutil.net_if_addrs().items():
        entry = {'iface': name, 'ip4': None, 'ip6': None, 'mac': None,
                 'up': stats[name].isup if name in stats else False}
        for addr in addrs:
            if addr.family == socket.AF_INET and not entry['ip4']:
                entry['ip4'] = addr.address
            elif addr.family == socket.AF_INET6 and not entry['ip6']:
                entry['ip6'] = addr.address.split('%')[0]
            elif addr.family == psutil.AF_LINK:
                entry['mac'] = addr.address
        interfaces.append(entry)
    return interfaces


def get_system_info():
    freq = psutil.cpu_freq()
    memory = psutil.virtual_memory()
    swap = psutil.swap_memory()
    uname = platform.uname()
    return {
        'cpu': {
            'model': uname.processor or uname.machine,
            'cores': psutil.cpu_count(logical=True),
            'physicalCores': psutil.cpu_count(logical=False),
            'speed': round(freq.current) if freq else None,
            'load': psutil.cpu_percent(interval=None),
            'loadavg': list(psutil.getloadavg()),
        },
        'memory': {
            'total': memory.total,
            'available': memory.available,
            'used': memory.used,
            'free': memory.free,
            'percentage': memory.percent,
            'swapTotal': swap.total,
            'swapUsed': swap.used,
        },
        'disk': _disk_partitions(),
        'network': _network_interfaces(),
        'os': {
            'platform': uname.system.lower(),
            'hostname': uname.node,
            'release': uname.release,
            'arch': uname.machine,
            'python': platform.python_version(),
            'bootTime': int(psutil.boot_time()),
        },
    }


def get_resources():
    """Totals used to size new VMs"""
    memory = psutil.virtual_memory()
    disks = _disk_partitions()
    total_disk = sum(d['total'] for d in disks)
    available_disk = sum(d['available'] for d in disks)
    return {
        'memory': {
            'total': memory.total,
            'available': memory.available,
            'used': memory.total - memory.available,
        },
        'cpu': {
            'cores': psutil.cpu_count(logical=False) or psutil.cpu_count(logical=True),
            'threads': psutil.cpu_count(logical=True),
        },
        'disk': {
            'total': total_disk,
            'available': available_disk,
            'used': total_disk - available_disk,
        },
    }


def parse_ps_aux(text, limit=25):
    processes = []
    lines = text.strip().split('\n')
    for line in lines[1:]:  # skip header
        parts = line.split(None, 10)
        if len(parts) < 11:
            continue
        try:
            processes.append({
                'user': parts[0],
                'pid': int(parts[1]),
                'cpu': float(parts[2]),
                'mem': float(parts[3]),
                'rss': int(parts[5]),
                'stat': parts[7],
                'start': parts[8],
                'time': parts[9],
                'command': parts[10],
            })
        except ValueError:
            continue
    total = len(processes)
    return {'processes': processes[:limit], 'total': total}


def get_processes(runner, sort='mem', limit=25):
    """Top processes sorted by memory or CPU usage"""
    if sort not in ('mem', 'cpu'):
        sort = 'mem'
    result = runner.check(['ps', 'aux', f'--sort=-%{sort}'])
    return parse_ps_aux(result.stdout, limit=limit)
