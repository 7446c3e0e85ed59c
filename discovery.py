import asyncio
import datetime
import ipaddress
import logging
import socket
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from xml.etree import ElementTree

import aiohttp

from dvrip import probe_dvrip
from errors import MalformedInputError
from models import OnvifDeviceMatch, ProtocolDetectionResult
from net_utils import is_port_open, probe_http, probe_rtsp_port, validate_address, validate_port
from param import (
    DEFAULT_USERNAME,
    HTTP_PORTS,
    ONVIF_PORTS,
    PROPRIETARY_PORTS,
    RTSP_PORTS,
    SCAN_CONCURRENCY,
    WS_DISCOVERY_ADDRESS,
    WS_DISCOVERY_PORT,
    WS_DISCOVERY_ROUNDS,
    WS_DISCOVERY_TIMEOUT,
    WS_DISCOVERY_TTL,
    get_fast_discovery_ports,
    get_intelligent_discovery_ports,
    get_manufacturer_ports,
    get_scan_timeout,
    order_ports,
)
from recording_urls import build_url


ONVIF_DEVICE_PATH = "/onvif/device_service"

# GetSystemDateAndTime must be answered without authentication
ONVIF_PROBE_BODY = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope">'
    "<s:Body>"
    '<GetSystemDateAndTime xmlns="http://www.onvif.org/ver10/device/wsdl"/>'
    "</s:Body>"
    "</s:Envelope>"
)

MAX_SCAN_HOSTS = 4096

Check = Callable[[str, int, float, Any], Awaitable[Optional[Dict[str, Any]]]]


async def check_onvif(host: str, port: int, timeout: float, credentials: Any = None) -> Optional[Dict[str, Any]]:
    if not await is_port_open(host, port, timeout):
        return None
    url = build_url("http", host, port, ONVIF_DEVICE_PATH)
    headers = {"Content-Type": "application/soap+xml; charset=utf-8"}
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.post(url, data=ONVIF_PROBE_BODY, headers=headers) as resp:
                if resp.status == 401:
                    return {"onvif_xaddr": url, "onvif_auth_required": True}
                text = await resp.text(errors="ignore")
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as err:
        logging.debug("ONVIF probe on %s:%s failed: %s", host, port, err)
        return None
    if "Envelope" in text and ("SystemDateAndTime" in text or "Fault" in text):
        return {"onvif_xaddr": url}
    return None


async def check_http(host: str, port: int, timeout: float, credentials: Any = None) -> Optional[Dict[str, Any]]:
    if not await is_port_open(host, port, timeout):
        return None
    probe = await probe_http(build_url("http", host, port, "/"), credentials, timeout=timeout)
    # A 401 still proves a web server is listening
    if probe or probe.unauthorized:
        return {"http_status": probe.status}
    return None


async def check_proprietary(host: str, port: int, timeout: float, credentials: Any = None) -> Optional[Dict[str, Any]]:
    username = getattr(credentials, "username", None) or DEFAULT_USERNAME
    password = getattr(credentials, "password", None) or ""
    result = await probe_dvrip(host, port, username, password, timeout)
    if not result["available"]:
        return None
    return {"dvrip_authenticated": result["authenticated"], "dvrip_ret": result["ret"]}


async def check_rtsp(host: str, port: int, timeout: float, credentials: Any = None) -> Optional[Dict[str, Any]]:
    return {} if await probe_rtsp_port(host, port, timeout) else None


def category_ports(ports: Iterable[int], manufacturer: Optional[str] = None) -> List[int]:
    """Scored order for one category, led by the manufacturer's known ports."""
    ports = list(ports)
    lead = []
    if manufacturer:
        lead = [port for port in get_manufacturer_ports(manufacturer) if port in ports]
    return lead + [port for port in order_ports(ports) if port not in lead]


CATEGORIES: List[Tuple[str, List[int], Check, str]] = [
    ("onvif", ONVIF_PORTS, check_onvif, "common"),
    ("http", HTTP_PORTS, check_http, "fast"),
    ("proprietary", PROPRIETARY_PORTS, check_proprietary, "common"),
    ("rtsp", RTSP_PORTS, check_rtsp, "rtsp"),
]


async def discover_device(
    host: str,
    *,
    credentials: Any = None,
    manufacturer: Optional[str] = None,
    timeout: Optional[float] = None,
    onvif_port: Optional[int] = None,
) -> ProtocolDetectionResult:
    """Classify the protocols a host speaks, stopping each category at the
    first port that answers.

    ``onvif_port``, typically taken from a WS-Discovery XAddr, is tried
    before the ONVIF port table.  An all-false result is a valid answer,
    reported with an ``error`` text.
    """
    validate_address(host)
    result = ProtocolDetectionResult()
    for name, ports, check, timeout_name in CATEGORIES:
        probe_timeout = timeout or get_scan_timeout(timeout_name)
        candidates = category_ports(ports, manufacturer)
        if name == "onvif" and onvif_port:
            candidates = [onvif_port] + [port for port in candidates if port != onvif_port]
        for port in candidates:
            info = await check(host, port, probe_timeout, credentials)
            if info is None:
                continue
            logging.info("%s detected on %s:%s", name.upper(), host, port)
            setattr(result, f"{name}_available", True)
            setattr(result, f"{name}_port", port)
            result.device_info.update(info)
            break
        else:
            logging.debug("No %s port answered on %s", name, host)
    result.detected_at = datetime.datetime.now(datetime.timezone.utc)
    if not result.has_any_protocol:
        result.error = f"No ONVIF, proprietary or RTSP service answered on {host}"
        logging.info(result.error)
    return result


def _scan_hosts(network: str) -> List[str]:
    try:
        net = ipaddress.ip_network(network, strict=False)
    except ValueError:
        raise MalformedInputError(f"Invalid network: {network!r}") from None
    if net.num_addresses > MAX_SCAN_HOSTS:
        raise MalformedInputError(f"Network {network} is too large to scan")
    if net.num_addresses == 1:
        return [str(net.network_address)]
    return [str(address) for address in net.hosts()]


async def scan_network(
    network: str,
    ports: Optional[Iterable[int]] = None,
    *,
    timeout: Optional[float] = None,
    concurrency: int = SCAN_CONCURRENCY,
) -> List[Dict[str, Any]]:
    """TCP sweep of a subnet.

    Without explicit ports the sweep runs in phases: the fast port list,
    then the scored list for hosts that showed nothing yet.
    """
    hosts = _scan_hosts(network)
    if ports is None:
        phases = [("fast", get_fast_discovery_ports()), ("common", get_intelligent_discovery_ports())]
    else:
        phases = [("full", [validate_port(port) for port in ports])]
    semaphore = asyncio.Semaphore(concurrency)
    found: Dict[str, Dict[str, Any]] = {}
    tested = set()

    async def check(host: str, port: int, phase_timeout: float) -> Optional[Tuple[str, int]]:
        async with semaphore:
            if await is_port_open(host, port, phase_timeout):
                return host, port
        return None

    for phase, phase_ports in phases:
        phase_timeout = timeout or get_scan_timeout(phase)
        pairs = [
            (host, port)
            for host in hosts
            if host not in found
            for port in phase_ports
            if (host, port) not in tested
        ]
        tested.update(pairs)
        if not pairs:
            continue
        logging.info("Scan phase %s: %d probes on %s", phase, len(pairs), network)
        results = await asyncio.gather(*(check(host, port, phase_timeout) for host, port in pairs))
        for hit in results:
            if hit is None:
                continue
            host, port = hit
            entry = found.setdefault(host, {"host": host, "open_ports": [], "phase": phase})
            entry["open_ports"].append(port)
    return [found[host] for host in hosts if host in found]


# WS-Discovery

WS_DISCOVERY_REQUEST = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<e:Envelope xmlns:e="http://www.w3.org/2003/05/soap-envelope"'
    ' xmlns:w="http://schemas.xmlsoap.org/ws/2004/08/addressing"'
    ' xmlns:d="http://schemas.xmlsoap.org/ws/2005/04/discovery"'
    ' xmlns:dn="http://www.onvif.org/ver10/network/wsdl">'
    "<e:Header>"
    "<w:MessageID>{message_id}</w:MessageID>"
    "<w:To>urn:schemas-xmlsoap-org:ws:2005:04:discovery</w:To>"
    "<w:Action>http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe</w:Action>"
    "</e:Header>"
    "<e:Body>"
    "<d:Probe><d:Types>dn:NetworkVideoTransmitter</d:Types></d:Probe>"
    "</e:Body>"
    "</e:Envelope>"
)


def build_discovery_request(message_id: Optional[str] = None) -> bytes:
    message_id = message_id or f"uuid:{uuid.uuid4()}"
    return WS_DISCOVERY_REQUEST.format(message_id=message_id).encode("utf-8")


def _local_name(tag: Any) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def parse_discovery_reply(payload: bytes, address: str) -> List[OnvifDeviceMatch]:
    """ProbeMatch (or Hello) entries of one WS-Discovery datagram.

    Elements are matched on their local name so the 2005 and 2009 discovery
    namespaces are both accepted.
    """
    try:
        root = ElementTree.fromstring(payload)
    except ElementTree.ParseError as err:
        logging.debug("Ignoring WS-Discovery reply from %s: %s", address, err)
        return []
    matches = []
    for element in root.iter():
        if _local_name(element.tag) not in ("ProbeMatch", "Hello"):
            continue
        fields = {}
        for child in element.iter():
            name = _local_name(child.tag)
            if child is not element and name not in fields:
                fields[name] = (child.text or "").strip()
        xaddrs = fields.get("XAddrs", "").split()
        if not xaddrs and not fields.get("Scopes"):
            continue
        matches.append(
            OnvifDeviceMatch(
                address=address,
                xaddrs=xaddrs,
                scopes=fields.get("Scopes", "").split(),
                types=fields.get("Types", "").split(),
                endpoint_reference=fields.get("Address") or None,
            )
        )
    return matches


class DiscoveryReplies(asyncio.DatagramProtocol):
    """Collects WS-Discovery matches, one per advertised device."""

    def __init__(self):
        self.matches: Dict[str, OnvifDeviceMatch] = {}

    def datagram_received(self, data, addr):
        for match in parse_discovery_reply(data, addr[0]):
            key = match.endpoint_reference or " ".join(match.xaddrs) or match.address
            if key in self.matches:
                continue
            logging.info("WS-Discovery match from %s: %s", addr[0], " ".join(match.xaddrs))
            self.matches[key] = match

    def error_received(self, exc):
        logging.debug("WS-Discovery socket error: %s", exc)


async def ws_discover(
    timeout: Optional[float] = None,
    *,
    target: Optional[Tuple[str, int]] = None,
    rounds: int = WS_DISCOVERY_ROUNDS,
) -> List[OnvifDeviceMatch]:
    """Send a WS-Discovery Probe for ONVIF video transmitters and collect the
    matches that arrive within ``timeout`` seconds.

    The request goes to the multicast group unless ``target`` names a single
    host and port.  The same message is repeated ``rounds`` times since UDP
    gives no delivery guarantee.
    """
    timeout = timeout or WS_DISCOVERY_TIMEOUT
    if target is None:
        target = (WS_DISCOVERY_ADDRESS, WS_DISCOVERY_PORT)
    else:
        target = (validate_address(target[0]), validate_port(target[1]))
    rounds = max(rounds, 1)
    loop = asyncio.get_running_loop()
    transport, replies = await loop.create_datagram_endpoint(DiscoveryReplies, local_addr=("0.0.0.0", 0))
    try:
        sock = transport.get_extra_info("socket")
        if sock is not None:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, WS_DISCOVERY_TTL)
        request = build_discovery_request()
        for _ in range(rounds):
            transport.sendto(request, target)
            await asyncio.sleep(timeout / rounds)
    finally:
        transport.close()
    logging.info("WS-Discovery to %s:%s found %d device(s)", target[0], target[1], len(replies.matches))
    return list(replies.matches.values())
