"""
DNSMasq host and DHCP option files in the Ironic directory layout.

    <root>/hosts/ironic-<mac>.conf      <mac>,set:<tag>,set:ironic
                                        <mac>,ignore
    <root>/opts/ironic-<node-id>.conf   tag:<tag>[,tag:<conditional>],<code>,<value>

In memory every option is indexed by the MAC of the host it belongs to,
whatever tag the file on disk uses.
"""

import glob
import os
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
)

from netboot_backend.data import normalize_mac
from netboot_backend.dnsmasq.files import TMP_SUFFIX, atomic_write, ensure_dir, read_lines
from netboot_backend.dnsmasq.watcher import FileWatcher, event_paths, reload_on_change

logger = structlog.get_logger()

FILE_PREFIX = "ironic-"
FILE_SUFFIX = ".conf"
IRONIC_TAG = "ironic"
IGNORE = "ignore"

# DHCP option codes written for netboot hosts
OPTION_BOOT_FILE = 67
OPTION_TFTP_SERVER = 66
OPTION_TFTP_SERVER_ADDRESS = 150
OPTION_SERVER_IDENTIFIER = 255
OPTION_IPV6_BOOT_URL = 59

OPTION_FILE_HEADER = (
    "# DHCP options configuration - DNSMasq compatible format",
    "# Format: tag:<tag>,tag:<conditional>,<option-code>,<value>",
    "#",
)

_CHANGE_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}


@dataclass(slots=True)
class DHCPOption:
    """One tag-scoped DHCP option."""

    tag: str
    conditional_tag: str  # e.g. "!ipxe", "ipxe6"; empty for unconditional
    option_code: int
    value: str

    def to_line(self) -> str:
        line = f"tag:{self.tag}"
        if self.conditional_tag:
            line += f",tag:{self.conditional_tag}"
        return f"{line},{self.option_code},{self.value}"


@dataclass(slots=True)
class HostEntry:
    """Netboot policy for one MAC."""

    mac: str
    node_id: str = ""
    tag_id: str = ""
    should_boot: bool = False

    def to_line(self) -> str:
        tag = self.node_id or self.tag_id
        if self.should_boot and tag:
            return f"{self.mac},set:{tag},set:{IRONIC_TAG}"
        return f"{self.mac},{IGNORE}"


def parse_option_line(line: str) -> DHCPOption:
    """Parse ``tag:<tag>[,tag:<cond>],<code>,<value>``. Raises ValueError."""
    parts = line.split(",")
    if len(parts) < 3:
        raise ValueError(f"invalid option line format: {line}")

    tag = ""
    conditional = ""
    for i, part in enumerate(parts):
        if part.startswith("tag:"):
            if not tag:
                tag = part[len("tag:"):]
            else:
                conditional = part[len("tag:"):]
            continue

        try:
            code = int(part.strip())
        except ValueError:
            raise ValueError(f"invalid option code: {part}") from None
        return DHCPOption(
            tag=tag,
            conditional_tag=conditional,
            option_code=code,
            value=",".join(parts[i + 1:]),
        )

    raise ValueError(f"missing option code: {line}")


def parse_host_line(line: str) -> HostEntry:
    """
    Parse ``<mac>,set:<tag>,set:ironic`` or ``<mac>,ignore``.

    Only the MAC, tag and boot flag are taken from the line; the node id is
    resolved separately against the opts directory.
    """
    parts = line.split(",")
    if len(parts) < 2:
        raise ValueError(f"invalid host line format: {line}")

    entry = HostEntry(mac=normalize_mac(parts[0]))

    if len(parts) == 2 and parts[1] == IGNORE:
        return entry

    if len(parts) >= 3:
        for part in parts[1:]:
            if part.startswith("set:"):
                value = part[len("set:"):]
                if value != IRONIC_TAG:
                    entry.tag_id = value
        entry.should_boot = f"set:{IRONIC_TAG}" in parts

    return entry


def _node_id_from_filename(path: str) -> str:
    name = os.path.basename(path)
    return name[len(FILE_PREFIX):-len(FILE_SUFFIX)]


def _first_tag(path: str) -> Optional[str]:
    """The tag of the first ``tag:`` line in an options file."""
    try:
        lines = read_lines(path)
    except OSError:
        return None

    for line in lines:
        if not line or line.startswith("#"):
            continue
        first = line.split(",", 1)[0]
        if first.startswith("tag:"):
            return first[len("tag:"):]
    return None


class ConfigManager:
    """Owns the hosts/opts directories and their in-memory indices."""

    def __init__(self, root_dir: str):
        self.root_dir = root_dir
        self.hosts_dir = os.path.join(root_dir, "hosts")
        self.opts_dir = os.path.join(root_dir, "opts")

        self._lock = threading.RLock()
        self._options: List[DHCPOption] = []
        self._hosts: Dict[str, HostEntry] = {}
        self.watcher = FileWatcher("config")

        self.load_config()
        self.watcher.add(self.hosts_dir)
        self.watcher.add(self.opts_dir)

    # Loading

    def load_config(self) -> None:
        """
        Rebuild the host and option indices from disk.

        Host files are read first; option files are then loaded for every
        host that should boot. Unreadable files and bad lines are logged
        and skipped.
        """
        options_by_tag = self._index_option_files()

        hosts: Dict[str, HostEntry] = {}
        for path in sorted(glob.glob(os.path.join(self.hosts_dir, f"{FILE_PREFIX}*{FILE_SUFFIX}"))):
            for entry in self._load_host_file(path):
                if entry.tag_id:
                    option_files = self._find_option_files(entry.tag_id, options_by_tag)
                    if option_files:
                        entry.node_id = _node_id_from_filename(option_files[0])
                hosts[entry.mac] = entry

        options: List[DHCPOption] = []
        for host in hosts.values():
            if not host.should_boot or not host.tag_id:
                continue
            for option_file in self._find_option_files(host.tag_id, options_by_tag):
                options.extend(self._load_option_file(option_file, host.mac))

        with self._lock:
            self._hosts = hosts
            self._options = options

        logger.debug("config_loaded", hosts=len(hosts), options=len(options))

    def _index_option_files(self) -> Dict[str, List[str]]:
        """Map each options file's first tag to the files carrying it."""
        index: Dict[str, List[str]] = {}
        for path in sorted(glob.glob(os.path.join(self.opts_dir, f"{FILE_PREFIX}*{FILE_SUFFIX}"))):
            tag = _first_tag(path)
            if tag is not None:
                index.setdefault(tag, []).append(path)
        return index

    def _find_option_files(self, tag: str, options_by_tag: Dict[str, List[str]]) -> List[str]:
        """
        Locate the options files for a host tag, sorted by path.

        Ironic tags the option lines with the host tag; files written by
        this store are tagged with the MAC instead and found by name.
        """
        matches = options_by_tag.get(tag)
        if matches:
            return list(matches)

        by_name = os.path.join(self.opts_dir, f"{FILE_PREFIX}{tag}{FILE_SUFFIX}")
        if os.path.isfile(by_name):
            return [by_name]
        return []

    def _load_host_file(self, path: str) -> List[HostEntry]:
        try:
            lines = read_lines(path)
        except OSError as e:
            logger.warning("host_file_load_failed", file=path, error=str(e))
            return []

        entries = []
        for line_num, line in enumerate(lines, start=1):
            if not line or line.startswith("#"):
                continue
            try:
                entries.append(parse_host_line(line))
            except ValueError as e:
                logger.warning(
                    "host_line_parse_failed", file=path, line=line_num, content=line, error=str(e)
                )
        return entries

    def _load_option_file(self, path: str, mac: str) -> List[DHCPOption]:
        try:
            lines = read_lines(path)
        except OSError as e:
            logger.warning("option_file_load_failed", file=path, error=str(e))
            return []

        options = []
        for line_num, line in enumerate(lines, start=1):
            if not line or line.startswith("#"):
                continue
            try:
                option = parse_option_line(line)
            except ValueError as e:
                logger.warning(
                    "option_line_parse_failed", file=path, line=line_num, content=line, error=str(e)
                )
                continue
            option.tag = mac
            options.append(option)
        return options

    # Queries

    def get_host(self, mac: str) -> Optional[HostEntry]:
        with self._lock:
            host = self._hosts.get(normalize_mac(mac))
            return replace(host) if host else None

    def get_options(self, tag: str) -> List[DHCPOption]:
        """Options indexed under ``tag`` (a MAC, for generated options)."""
        with self._lock:
            return [replace(o) for o in self._options if o.tag == tag]

    def get_all_options(self) -> List[DHCPOption]:
        with self._lock:
            return [replace(o) for o in self._options]

    def is_netboot_enabled(self, mac: str) -> bool:
        with self._lock:
            host = self._hosts.get(normalize_mac(mac))
            return host.should_boot if host else False

    # Mutation

    def add_option(self, tag: str, conditional_tag: str, option_code: int, value: str) -> None:
        with self._lock:
            self._options.append(DHCPOption(tag, conditional_tag, option_code, value))

    def remove_options_for_tag(self, tag: str) -> None:
        with self._lock:
            self._options = [o for o in self._options if o.tag != tag]

    def add_netboot_options(self, mac: str, tftp_server: str, http_server: str) -> None:
        """Enable netboot for ``mac`` with the x86_64 iPXE binary."""
        self.add_netboot_options_with_boot_file(mac, tftp_server, http_server, "ipxe.efi")

    def add_netboot_options_with_boot_file(
        self, mac: str, tftp_server: str, http_server: str, boot_file: str
    ) -> None:
        """
        Enable netboot for ``mac`` and regenerate its options.

        All existing options for the MAC are dropped first, so repeated calls
        leave exactly one set of netboot options behind.
        """
        mac = normalize_mac(mac)
        script_url = f"http://{http_server}/boot.ipxe"
        ipv6_boot_file = "snp.efi" if boot_file == "snp.efi" else "ipxe.efi"

        with self._lock:
            self.remove_options_for_tag(mac)

            host = self._hosts.get(mac)
            if host is None:
                host = self._hosts[mac] = HostEntry(mac=mac)
            host.should_boot = True
            if not host.node_id:
                host.node_id = mac.replace(":", "")
            if not host.tag_id:
                host.tag_id = host.node_id

            self.add_option(mac, "!ipxe", OPTION_BOOT_FILE, boot_file)
            self.add_option(mac, "ipxe", OPTION_BOOT_FILE, script_url)
            self.add_option(mac, "", OPTION_TFTP_SERVER, tftp_server)
            self.add_option(mac, "", OPTION_TFTP_SERVER_ADDRESS, tftp_server)
            self.add_option(mac, "", OPTION_SERVER_IDENTIFIER, tftp_server)
            self.add_option(
                mac, "!ipxe6", OPTION_IPV6_BOOT_URL, f"tftp://{tftp_server}/{ipv6_boot_file}"
            )
            self.add_option(mac, "ipxe6", OPTION_IPV6_BOOT_URL, script_url)

    def disable_netboot(self, mac: str) -> None:
        """Drop the MAC's options and mark its host as ignored."""
        mac = normalize_mac(mac)
        with self._lock:
            self.remove_options_for_tag(mac)
            host = self._hosts.get(mac)
            if host is None:
                host = self._hosts[mac] = HostEntry(mac=mac)
            host.should_boot = False

    # Persistence

    def save_config(self) -> None:
        """Write one host file per host and one options file per booting node."""
        for directory in (self.hosts_dir, self.opts_dir):
            ensure_dir(directory)
            self.watcher.add(directory)

        with self._lock:
            hosts = [replace(h) for h in self._hosts.values()]
            options_by_mac: Dict[str, List[DHCPOption]] = {}
            for option in self._options:
                options_by_mac.setdefault(option.tag, []).append(replace(option))

        for host in sorted(hosts, key=lambda h: h.mac):
            path = os.path.join(self.hosts_dir, f"{FILE_PREFIX}{host.mac}{FILE_SUFFIX}")
            atomic_write(path, [host.to_line()])

        for path, options in self._option_files(hosts, options_by_mac):
            atomic_write(path, [*OPTION_FILE_HEADER, *(o.to_line() for o in options)])

    def _option_files(
        self, hosts: List[HostEntry], options_by_mac: Dict[str, List[DHCPOption]]
    ) -> List[Tuple[str, List[DHCPOption]]]:
        files = []
        for host in hosts:
            options = options_by_mac.get(host.mac)
            if host.should_boot and host.node_id and options:
                path = os.path.join(self.opts_dir, f"{FILE_PREFIX}{host.node_id}{FILE_SUFFIX}")
                files.append((path, options))
        return files

    # Watching

    def _is_config_event(self, event: FileSystemEvent) -> bool:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return False
        return any(not path.endswith(TMP_SUFFIX) for path in event_paths(event))

    def snapshot(self) -> Tuple[Dict[str, HostEntry], List[DHCPOption]]:
        """Copies of the host and option indices."""
        with self._lock:
            hosts = {mac: replace(h) for mac, h in self._hosts.items()}
            return hosts, [replace(o) for o in self._options]

    def restore(self, state: Tuple[Dict[str, HostEntry], List[DHCPOption]]) -> None:
        """Replace the in-memory indices with an earlier snapshot."""
        hosts, options = state
        with self._lock:
            self._hosts = {mac: replace(h) for mac, h in hosts.items()}
            self._options = [replace(o) for o in options]

    async def start(self, reload: Optional[Callable[[], None]] = None) -> None:
        """
        Reload host and option files whenever the directories change.

        ``reload`` replaces ``load_config`` when the owner needs the reload
        to run under its own lock. Blocks until cancelled.
        """
        await reload_on_change(
            self.watcher, "config", self._is_config_event, reload or self.load_config
        )

    def close(self) -> None:
        self.watcher.close()
