"""
VPS Panel - Virtual machine lifecycle
Drives libvirt through virsh, virt-install, qemu-img and genisoimage.
The hypervisor is the source of truth: nothing here is cached between calls.
"""

import logging
import os
import shutil
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path

from commands import CommandError, InvalidRequest, is_safe_name
from vm_documents import (
    allocate_mac, parse_domain_xml, render_domain_xml, render_meta_data,
    render_network_xml, render_user_data, vnc_port_from_display,
)

logger = logging.getLogger('vps-panel.hypervisor')

# Panel action -> virsh verb
LIFECYCLE_ACTIONS = {
    'start': 'start',
    'stop': 'destroy',
    'shutdown': 'shutdown',
    'reboot': 'reboot',
    'suspend': 'suspend',
    'resume': 'resume',
}

VM_TEMPLATES = (
    {'id': 'ubuntu-20.04', 'name': 'Ubuntu 20.04 LTS', 'description': 'Ubuntu 20.04 LTS Server',
     'memory': 1024, 'cpus': 1, 'diskSize': 20, 'osType': 'linux'},
    {'id': 'ubuntu-22.04', 'name': 'Ubuntu 22.04 LTS', 'description': 'Ubuntu 22.04 LTS Server',
     'memory': 1024, 'cpus': 1, 'diskSize': 20, 'osType': 'linux'},
    {'id': 'centos-8', 'name': 'CentOS 8', 'description': 'CentOS 8 Stream',
     'memory': 1024, 'cpus': 1, 'diskSize': 20, 'osType': 'linux'},
    {'id': 'debian-11', 'name': 'Debian 11', 'description': 'Debian 11 Bullseye',
     'memory': 1024, 'cpus': 1, 'diskSize': 20, 'osType': 'linux'},
)

NO_OS_WARNING = ("VM was defined with an empty disk and no installation media; "
                 "it has no operating system to boot")


class VMCreationError(Exception):
    """Every creation strategy failed"""

    def __init__(self, name, attempts):
        self.name = name
        self.attempts = attempts
        last = attempts[-1] if attempts else {}
        self.details = last.get('details') or last.get('error') or ''
        super().__init__(f"Failed to create VM '{name}': {last.get('error', 'no strategy ran')}")


def _positive_int(data, key):
    value = data.get(key)
    if isinstance(value, bool):
        raise InvalidRequest(f"'{key}' must be a positive integer")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidRequest(f"'{key}' must be a positive integer")
    if number <= 0:
        raise InvalidRequest(f"'{key}' must be a positive integer")
    return number


def get_template(template_id):
    for template in VM_TEMPLATES:
        if template['id'] == template_id:
            return template
    return None


class VMManager:
    """Create, control, inspect and delete libvirt domains"""

    def __init__(self, runner, config):
        self.runner = runner
        self.cfg = config['hypervisor']
        self._host_ip = None
        # Evaluated in order until one succeeds
        self.strategies = [
            ('cloud-image', self._create_from_cloud_image),
            ('bare-disk', self._create_bare_disk),
        ]

    # -- paths ---------------------------------------------------------------

    @property
    def images_dir(self):
        return Path(self.cfg['images_dir'])

    @property
    def network_name(self):
        return self.cfg['network']['name']

    def disk_path(self, name):
        return self.images_dir / f"{name}.qcow2"

    def cloud_init_iso(self, name):
        return self.images_dir / f"{name}-cloud-init.iso"

    def cloud_image_path(self):
        return self.images_dir / self.cfg['cloud_images_subdir'] / self.cfg['cloud_image_name']

    # -- queries -------------------------------------------------------------

    def list_names(self):
        result = self.runner.check(['virsh', 'list', '--all', '--name'])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def describe(self, name):
        state = self.runner.check(['virsh', 'domstate', name]).stdout.strip()
        xml = self.runner.check(['virsh', 'dumpxml', name]).stdout
        vm = {'name': name, 'state': state}
        vm.update(parse_domain_xml(xml))
        return vm

    def list_vms(self):
        """All domains with their current state; virtualization 'none' without libvirt"""
        try:
            names = self.list_names()
        except CommandError as e:
            logger.info("Virtualization not available: %s", e)
            return {'vms': [], 'virtualization': 'none'}

        vms = []
        for name in names:
            try:
                vms.append(self.describe(name))
            except (CommandError, ET.ParseError, ValueError) as e:
                logger.warning("Error getting info for VM %s: %s", name, e)
        return {'vms': vms, 'virtualization': 'kvm'}

    def existing_macs(self):
        macs = set()
        try:
            names = self.list_names()
        except CommandError:
            return macs
        for name in names:
            result = self.runner.run(['virsh', 'dumpxml', name])
            if result.returncode != 0:
                continue
            try:
                info = parse_domain_xml(result.stdout)
            except ET.ParseError:
                continue
            macs.update(i['mac'].lower() for i in info['interfaces'] if i['mac'])
        return macs

    # -- network -------------------------------------------------------------

    def _network_state(self, listing, name):
        """State column of `virsh net-list --all` for `name`, or None"""
        for line in listing.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == name:
                return parts[1]
        return None

    def _start_network(self, name):
        result = self.runner.run(['virsh', 'net-start', name])
        if result.returncode == 0:
            return
        # Another request may have started it in the meantime
        listing = self.runner.check(['virsh', 'net-list', '--all']).stdout
        if self._network_state(listing, name) != 'active':
            raise CommandError(['virsh', 'net-start', name], result.returncode,
                               result.stdout, result.stderr)

    def ensure_default_network(self):
        """Make sure the NAT network exists and is active. Returns what was done."""
        net = self.cfg['network']
        name = net['name']
        listing = self.runner.check(['virsh', 'net-list', '--all']).stdout

        if name not in listing:
            logger.info("Network '%s' not found, defining it", name)
            fd, xml_file = tempfile.mkstemp(prefix=f"{name}-network-", suffix='.xml')
            try:
                with os.fdopen(fd, 'w') as f:
                    f.write(render_network_xml(net))
                self.runner.check(['virsh', 'net-define', xml_file])
            except CommandError as e:
                # Concurrent creation may have defined it first
                logger.warning("net-define for '%s' failed, trying start only: %s", name, e)
            finally:
                try:
                    os.unlink(xml_file)
                except OSError:
                    pass
            self._start_network(name)
            autostart = self.runner.run(['virsh', 'net-autostart', name])
            if autostart.returncode != 0:
                logger.warning("Could not enable autostart for network '%s': %s",
                               name, autostart.stderr.strip())
            return 'created'

        if self._network_state(listing, name) != 'active':
            logger.info("Network '%s' is inactive, starting it", name)
            self._start_network(name)
            return 'started'
        return 'active'

    # -- creation ------------------------------------------------------------

    def resolve_create_params(self, data):
        """Validate a creation request; template values fill omitted fields"""
        data = dict(data or {})
        template = None
        if data.get('template'):
            template = get_template(data['template'])
            if template is None:
                raise InvalidRequest(f"Unknown template '{data['template']}'")
            for key in ('memory', 'cpus', 'diskSize', 'osType'):
                if data.get(key) in (None, ''):
                    data[key] = template[key]

        name = (data.get('name') or '').strip() if isinstance(data.get('name'), str) else ''
        if not name:
            raise InvalidRequest('VM name is required')
        if not is_safe_name(name):
            raise InvalidRequest('Invalid VM name')

        network = data.get('network') or self.network_name
        if not is_safe_name(network):
            raise InvalidRequest('Invalid network name')

        return {
            'name': name,
            'memory': _positive_int(data, 'memory'),
            'cpus': _positive_int(data, 'cpus'),
            'disk_gb': _positive_int(data, 'diskSize'),
            'os_type': data.get('osType') or 'linux',
            'network': network,
            'template': template['id'] if template else None,
        }

    def create(self, params):
        """Try each creation strategy in order; the first success wins"""
        name = params['name']
        attempts = []
        for strategy_name, strategy in self.strategies:
            logger.info("Creating VM %s using %s strategy", name, strategy_name)
            try:
                warnings = strategy(params) or []
            except (CommandError, OSError, RuntimeError) as e:
                logger.warning("%s strategy failed for VM %s: %s", strategy_name, name, e)
                attempts.append({
                    'strategy': strategy_name,
                    'ok': False,
                    'error': str(e),
                    'details': getattr(e, 'details', '') or str(e),
                })
                continue
            attempts.append({'strategy': strategy_name, 'ok': True, 'error': None, 'details': ''})
            logger.info("VM %s created using %s strategy", name, strategy_name)
            return {
                'name': name,
                'strategy': strategy_name,
                'attempts': attempts,
                'warnings': warnings,
            }
        raise VMCreationError(name, attempts)

    def _ensure_cloud_image(self):
        image = self.cloud_image_path()
        if image.exists():
            return image
        self.runner.check(['mkdir', '-p', image.parent])
        # Only a completed download ever takes the final name
        partial = image.with_name(image.name + '.part')
        logger.info("Downloading cloud image %s", self.cfg['cloud_image_url'])
        try:
            self.runner.check(['wget', '-q', '-O', partial, self.cfg['cloud_image_url']], long=True)
            self.runner.check(['mv', partial, image])
        except CommandError:
            self.runner.run(['rm', '-f', partial])
            raise
        return image

    def _build_seed_iso(self, name):
        """Seed files are staged in a private temp dir; only the ISO lands in the images dir"""
        seed_dir = tempfile.mkdtemp(prefix=f"{name}-cloud-init-")
        try:
            user_data = os.path.join(seed_dir, 'user-data')
            meta_data = os.path.join(seed_dir, 'meta-data')
            with open(user_data, 'w') as f:
                f.write(render_user_data(self.cfg['cloud_user'], self.cfg['cloud_password']))
            with open(meta_data, 'w') as f:
                f.write(render_meta_data(name))
            iso = self.cloud_init_iso(name)
            self.runner.check(['genisoimage', '-output', iso, '-volid', 'cidata',
                               '-joliet', '-rock', user_data, meta_data])
        finally:
            shutil.rmtree(seed_dir, ignore_errors=True)
        return iso

    def _create_from_cloud_image(self, params):
        name = params['name']
        self.ensure_default_network()
        base = self._ensure_cloud_image()
        disk = self.disk_path(name)
        self.runner.check(['cp', base, disk], long=True)
        self.runner.check(['qemu-img', 'resize', disk, f"{params['disk_gb']}G"])
        iso = self._build_seed_iso(name)
        self.runner.check([
            'virt-install',
            '--name', name,
            '--memory', str(params['memory']),
            '--vcpus', str(params['cpus']),
            '--disk', f"path={disk},format=qcow2",
            '--disk', f"path={iso},device=cdrom",
            '--network', f"network={params['network']}",
            '--graphics', 'vnc,listen=0.0.0.0',
            '--noautoconsole',
            '--import',
            '--os-variant', self.cfg['os_variant'],
        ], long=True)
        return []

    def _create_bare_disk(self, params):
        name = params['name']
        self.ensure_default_network()
        disk = self.disk_path(name)
        self.runner.check(['qemu-img', 'create', '-f', 'qcow2', disk, f"{params['disk_gb']}G"])

        install_iso = self.cfg.get('install_iso')
        xml = render_domain_xml(
            name, params['memory'], params['cpus'], str(disk),
            allocate_mac(self.existing_macs()),
            network=params['network'], install_iso=install_iso,
        )
        fd, xml_file = tempfile.mkstemp(prefix=f"{name}-", suffix='.xml')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(xml)
            self.runner.check(['virsh', 'define', xml_file])
        finally:
            try:
                os.unlink(xml_file)
            except OSError:
                pass

        if install_iso:
            return [f"VM boots from installation media {install_iso}"]
        return [NO_OS_WARNING]

    # -- lifecycle -----------------------------------------------------------

    def action(self, name, action):
        if action not in LIFECYCLE_ACTIONS:
            raise InvalidRequest('Invalid action')
        if not is_safe_name(name):
            raise InvalidRequest('Invalid VM name')
        self.runner.check(['virsh', LIFECYCLE_ACTIONS[action], name])
        logger.info("VM %s: %s", name, action)
        return f"VM {name} {action} successful"

    def delete(self, name):
        """Force-stop (ignored), undefine (raises), then remove disk files (ignored)"""
        if not is_safe_name(name):
            raise InvalidRequest('Invalid VM name')

        result = self.runner.run(['virsh', 'destroy', name])
        if result.returncode != 0:
            logger.info("Force-stop of %s failed (ignored): %s", name, result.stderr.strip())

        self.runner.check(['virsh', 'undefine', name])

        result = self.runner.run(['rm', '-rf', self.disk_path(name),
                                  self.cloud_init_iso(name)])
        if result.returncode != 0:
            logger.warning("Could not remove disk files of %s: %s", name, result.stderr.strip())
        logger.info("VM %s deleted", name)
        return f"VM {name} deleted successfully"

    # -- console -------------------------------------------------------------

    def host_ip(self):
        """Primary IP of this host (cached)"""
        if self._host_ip is None:
            result = self.runner.run(['hostname', '-I'])
            parts = result.stdout.split() if result.returncode == 0 else []
            self._host_ip = parts[0] if parts else '127.0.0.1'
        return self._host_ip

    def console(self, name):
        if not is_safe_name(name):
            raise InvalidRequest('Invalid VM name')
        display = self.runner.check(['virsh', 'vncdisplay', name]).stdout.strip()
        port = vnc_port_from_display(display)
        ip = self.host_ip()
        web_url = None
        template = self.cfg.get('web_console_url')
        if template:
            web_url = template.format(host=ip, port=port, name=name)
        return {
            'name': name,
            'vncDisplay': display,
            'vncPort': port,
            'serverIP': ip,
            'consoleUrl': f"vnc://{ip}:{port}",
            'webConsoleUrl': web_url,
            'message': 'Console information retrieved',
        }
