"""
VPS Panel - libvirt and cloud-init documents
Renders the network/domain XML and cloud-init seed files the hypervisor
consumes, and reads back the parts of a domain definition the panel shows.
"""

import random
import xml.etree.ElementTree as ET
from xml.sax.saxutils import quoteattr, escape

QEMU_MAC_PREFIX = (0x52, 0x54, 0x00)


def render_network_xml(net):
    """NAT network definition for the default network"""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<network>
  <name>{escape(net['name'])}</name>
  <forward mode='nat'/>
  <bridge name={quoteattr(net['bridge'])} stp='on' delay='0'/>
  <mac address={quoteattr(net['mac'])}/>
  <ip address={quoteattr(net['address'])} netmask={quoteattr(net['netmask'])}>
    <dhcp>
      <range start={quoteattr(net['dhcp_start'])} end={quoteattr(net['dhcp_end'])}/>
    </dhcp>
  </ip>
</network>
"""


def render_domain_xml(name, memory_mb, vcpus, disk_path, mac, network='default', install_iso=None):
    """Domain definition for a VM backed by a plain qcow2 disk"""
    memory_kib = int(memory_mb) * 1024
    boot = "<boot dev='hd'/>"
    cdrom = ''
    if install_iso:
        boot = "<boot dev='cdrom'/>\n    <boot dev='hd'/>"
        cdrom = f"""
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file={quoteattr(install_iso)}/>
      <target dev='sda' bus='sata'/>
      <readonly/>
    </disk>"""
    return f"""<?xml version='1.0' encoding='utf-8'?>
<domain type='kvm'>
  <name>{escape(name)}</name>
  <memory unit='KiB'>{memory_kib}</memory>
  <currentMemory unit='KiB'>{memory_kib}</currentMemory>
  <vcpu placement='static'>{int(vcpus)}</vcpu>
  <os>
    <type arch='x86_64' machine='q35'>hvm</type>
    {boot}
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
  <cpu mode='host-passthrough' check='none'/>
  <clock offset='utc'/>
  <on_poweroff>destroy</on_poweroff>
  <on_reboot>restart</on_reboot>
  <on_crash>destroy</on_crash>
  <devices>
    <emulator>/usr/bin/qemu-system-x86_64</emulator>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file={quoteattr(disk_path)}/>
      <target dev='vda' bus='virtio'/>
    </disk>{cdrom}
    <interface type='network'>
      <mac address={quoteattr(mac)}/>
      <source network={quoteattr(network)}/>
      <model type='virtio'/>
    </interface>
    <serial type='pty'>
      <target type='isa-serial' port='0'>
        <model name='isa-serial'/>
      </target>
    </serial>
    <console type='pty'>
      <target type='serial' port='0'/>
    </console>
    <graphics type='vnc' port='-1' autoport='yes' listen='0.0.0.0'>
      <listen type='address' address='0.0.0.0'/>
    </graphics>
    <video>
      <model type='qxl' ram='65536' vram='65536' vgamem='16384' heads='1' primary='yes'/>
    </video>
  </devices>
</domain>
"""


def render_user_data(user, password):
    """cloud-config granting a passworded sudo account"""
    return f"""#cloud-config
users:
  - name: {user}
    sudo: ALL=(ALL) NOPASSWD:ALL
    groups: users, admin
    home: /home/{user}
    shell: /bin/bash
    lock_passwd: false
chpasswd:
  list: |
    {user}:{password}
  expire: false
ssh_pwauth: true
package_update: true
packages:
  - qemu-guest-agent
runcmd:
  - systemctl enable qemu-guest-agent
  - systemctl start qemu-guest-agent
"""


def render_meta_data(name):
    return f"instance-id: {name}\nlocal-hostname: {name}\n"


# ---------------------------------------------------------------------------
# MAC addresses
# ---------------------------------------------------------------------------

def random_mac(rng=random):
    """Random address under the QEMU/KVM prefix 52:54:00"""
    octets = list(QEMU_MAC_PREFIX) + [rng.randint(0x00, 0xFF) for _ in range(3)]
    return ':'.join(f"{octet:02x}" for octet in octets)


def allocate_mac(existing, rng=random, attempts=64):
    """Pick a MAC not present in `existing` (case-insensitive)"""
    taken = {m.lower() for m in existing}
    for _ in range(attempts):
        mac = random_mac(rng)
        if mac not in taken:
            return mac
    raise RuntimeError(f"No free MAC address found after {attempts} attempts")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _memory_mb(elem):
    if elem is None or not (elem.text or '').strip():
        return None
    value = int(elem.text.strip())
    unit = (elem.get('unit') or 'KiB').lower()
    factors = {'b': 1 / (1024 * 1024), 'bytes': 1 / (1024 * 1024), 'k': 1 / 1024,
               'kib': 1 / 1024, 'kb': 1 / 1024, 'm': 1, 'mib': 1, 'mb': 1,
               'g': 1024, 'gib': 1024, 'gb': 1024}
    return int(value * factors.get(unit, 1 / 1024))


def parse_domain_xml(text):
    """Extract memory, vCPUs, disks, interfaces and VNC port from `virsh dumpxml`"""
    root = ET.fromstring(text)
    info = {
        'memory_mb': _memory_mb(root.find('memory')),
        'vcpus': None,
        'disks': [],
        'interfaces': [],
        'vnc_port': None,
    }
    vcpu = root.find('vcpu')
    if vcpu is not None and (vcpu.text or '').strip().isdigit():
        info['vcpus'] = int(vcpu.text.strip())

    for disk in root.findall('./devices/disk'):
        source = disk.find('source')
        target = disk.find('target')
        info['disks'].append({
            'device': disk.get('device', 'disk'),
            'path': source.get('file') if source is not None else None,
            'target': target.get('dev') if target is not None else None,
        })

    for iface in root.findall('./devices/interface'):
        mac = iface.find('mac')
        source = iface.find('source')
        info['interfaces'].append({
            'type': iface.get('type'),
            'mac': mac.get('address') if mac is not None else None,
            'network': (source.get('network') or source.get('bridge')) if source is not None else None,
        })

    for graphics in root.findall('./devices/graphics'):
        if graphics.get('type') == 'vnc':
            port = graphics.get('port', '')
            if port.lstrip('-').isdigit() and int(port) > 0:
                info['vnc_port'] = int(port)
            break

    return info


def vnc_port_from_display(display):
    """`virsh vncdisplay` prints e.g. ':1' or '127.0.0.1:1' -> 5901"""
    display = (display or '').strip()
    if ':' not in display:
        raise ValueError(f"Unexpected VNC display '{display}'")
    number = display.rsplit(':', 1)[1]
    if not number.isdigit():
        raise ValueError(f"Unexpected VNC display '{display}'")
    return 5900 + int(number)
