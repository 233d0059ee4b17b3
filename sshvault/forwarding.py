"""
sshvault - Forwarding Helpers

Turns what a user types into the exact directive text stored on a profile:

    "remote 57001 172.16.0.45:22"  ->  "RemoteForward 57001 172.16.0.45:22"
    "1080"                          ->  DynamicForward value "1080"
    "http://10.0.0.1:3128"         ->  "ncat --proxy 10.0.0.1:3128 --proxy-type http %h %p"
"""

import re
import sys
import socket
import ipaddress
from typing import Union

from .errors import InvalidProfile

_TUNNEL_RE = re.compile(
    r"^(RemoteForward|LocalForward)\s+"
    r"((?:[a-zA-Z0-9.-]+|\[[a-fA-F0-9:]+\]):)?(\d+)\s+"
    r"([a-zA-Z0-9][a-zA-Z0-9.-]*|\[[a-fA-F0-9:]+\]):(\d+)$",
    re.IGNORECASE,
)

_SOCKS_RE = re.compile(r"^((?:[a-zA-Z0-9.-]+|\*|\[[a-fA-F0-9:]+\]):)?(\d+)$")

_KEYWORDS = {
    "local": "LocalForward",
    "localforward": "LocalForward",
    "remote": "RemoteForward",
    "remoteforward": "RemoteForward",
}


def _check_port(port: Union[str, int], lowest: int = 1) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise InvalidProfile(f"wrong port number: {port}") from None
    if not lowest <= value <= 65535:
        raise InvalidProfile(f"port number out of range: {port}")
    return value


def normalize_tunnel(spec: str) -> str:
    """
    Canonicalize a Local/RemoteForward spec.

    Accepted: ``<local|remote|LocalForward|RemoteForward> [bind:]port host:port``

    Raises:
        InvalidProfile: unknown forward type, bad address or port
    """
    parts = spec.split(None, 1)
    if len(parts) != 2:
        raise InvalidProfile(f"provided socket is not valid: {spec}")
    keyword = _KEYWORDS.get(parts[0].lower())
    if keyword is None:
        raise InvalidProfile(f"unknown forward type: {parts[0]} (use local or remote)")

    candidate = f"{keyword} {' '.join(parts[1].split())}"
    match = _TUNNEL_RE.match(candidate)
    if not match:
        raise InvalidProfile(f"provided socket is not valid: {spec}")
    _check_port(match.group(3))
    _check_port(match.group(5))
    return candidate


def normalize_dynamic_socks(value: Union[str, int]) -> str:
    """Validate a DynamicForward value, ``[bind_address:]port``."""
    text = str(value).strip()
    match = _SOCKS_RE.match(text)
    if not match:
        raise InvalidProfile(f"wrong port number: {value}")
    _check_port(match.group(2))
    return text


def http_proxy_command(proxy: str, platform: str = sys.platform) -> str:
    """
    Build a ProxyCommand that tunnels through an HTTP CONNECT proxy.

    Args:
        proxy: ``ip:port``, optionally with an http:// or https:// prefix
        platform: sys.platform value; macOS gets BSD nc, others get ncat

    Raises:
        InvalidProfile: not an ip:port pair, or port out of range
    """
    clean = proxy.strip().replace("http://", "").replace("https://", "").replace("/", "")
    ip_text, sep, port_text = clean.rpartition(":")
    if not sep:
        raise InvalidProfile(f"proxy {proxy} not formatted properly")
    try:
        ipaddress.ip_address(ip_text.strip("[]"))
    except ValueError:
        raise InvalidProfile(f"ip address not valid: {ip_text}") from None
    if not port_text.isdigit():
        raise InvalidProfile(f"port is not valid: {port_text}")
    _check_port(port_text)

    if platform == "darwin":
        return f"nc -X connect -x {clean} %h %p"
    return f"ncat --proxy {clean} --proxy-type http %h %p"


def find_available_port() -> int:
    """Ask the OS for a free local TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]
