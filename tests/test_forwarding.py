"""Tunnel, DynamicForward and proxy command helpers."""

import pytest

from sshvault.errors import InvalidProfile
from sshvault.forwarding import (
    find_available_port,
    http_proxy_command,
    normalize_dynamic_socks,
    normalize_tunnel,
)


@pytest.mark.parametrize("spec, expected", [
    ("remote 57001 172.16.0.45:22", "RemoteForward 57001 172.16.0.45:22"),
    ("local 8080 web:80", "LocalForward 8080 web:80"),
    ("Local 127.0.0.1:8080   web:80", "LocalForward 127.0.0.1:8080 web:80"),
    ("RemoteForward 2222 [::1]:22", "RemoteForward 2222 [::1]:22"),
])
def test_normalize_tunnel(spec, expected):
    assert normalize_tunnel(spec) == expected


@pytest.mark.parametrize("spec", [
    "",
    "remote",
    "sideways 1 a:2",
    "local 80",
    "local 70000 web:80",
    "local 80 web:0",
    "local abc web:80",
])
def test_normalize_tunnel_rejects(spec):
    with pytest.raises(InvalidProfile):
        normalize_tunnel(spec)


def test_normalize_dynamic_socks():
    assert normalize_dynamic_socks(1080) == "1080"
    assert normalize_dynamic_socks(" localhost:1080 ") == "localhost:1080"
    assert normalize_dynamic_socks("*:1080") == "*:1080"
    for bad in ("0", "65536", "abc", "host:"):
        with pytest.raises(InvalidProfile):
            normalize_dynamic_socks(bad)


def test_http_proxy_command():
    assert http_proxy_command("http://10.0.0.1:3128", platform="linux") == \
        "ncat --proxy 10.0.0.1:3128 --proxy-type http %h %p"
    assert http_proxy_command("10.0.0.1:3128/", platform="darwin") == \
        "nc -X connect -x 10.0.0.1:3128 %h %p"


@pytest.mark.parametrize("proxy", ["10.0.0.1", "proxy.example:3128", "10.0.0.1:http", "10.0.0.1:99999"])
def test_http_proxy_command_rejects(proxy):
    with pytest.raises(InvalidProfile):
        http_proxy_command(proxy)


def test_find_available_port():
    assert 1 <= find_available_port() <= 65535
