"""SSH config parsing, rendering and atomic writes."""

import os
import stat

from sshvault import ssh_config
from sshvault.models import Profile

SAMPLE = """\
# managed by sshvault
Include ~/.ssh/conf.d/*

Host db1
    HostName 10.0.0.5
    User admin
    Port 2222
    IdentityFile ~/.ssh/id_ed25519
    LocalForward 5432 localhost:5432
    DynamicForward 1080
    ServerAliveInterval 30
    # keep me

Host *
    ForwardAgent no

Match host legacy
    User old
"""


def test_parse_sample():
    db1, star = ssh_config.parse(SAMPLE)

    assert db1.host == "db1"
    assert db1.hostname == "10.0.0.5"
    assert db1.user == "admin"
    assert db1.port == 2222
    assert db1.identity_file == "~/.ssh/id_ed25519"
    assert db1.tunnels == ["LocalForward 5432 localhost:5432"]
    assert db1.dynamic_socks == ["1080"]
    assert db1.options == ["ServerAliveInterval 30", "# keep me"]

    assert star.host == "*"
    assert star.is_pattern
    assert star.options == ["ForwardAgent no"]


def test_match_block_not_modelled():
    profiles = ssh_config.parse(SAMPLE)
    assert [p.host for p in profiles] == ["db1", "*"]
    assert all(p.user != "old" for p in profiles)


def test_preamble():
    assert ssh_config.parse_preamble(SAMPLE) == [
        "# managed by sshvault",
        "Include ~/.ssh/conf.d/*",
    ]
    assert ssh_config.parse_preamble("Host a\n") == []


def test_equals_syntax_and_keyword_case():
    (web,) = ssh_config.parse("Host=web\n  hostname=1.2.3.4\n  PORT = 22\n  localforward 80 a:80\n")
    assert web.host == "web"
    assert web.hostname == "1.2.3.4"
    assert web.port == 22
    assert web.tunnels == ["LocalForward 80 a:80"]


def test_repeated_and_invalid_values_kept_as_options():
    (a,) = ssh_config.parse("Host a\n  HostName first\n  HostName second\n  Port abc\n")
    assert a.hostname == "first"
    assert a.port is None
    assert a.options == ["HostName second", "Port abc"]


def test_invalid_block_skipped():
    profiles = ssh_config.parse("Host\n  HostName nowhere\nHost ok\n  User me\n")
    assert [p.host for p in profiles] == ["ok"]


def test_render_order():
    profile = Profile(
        host="db1",
        hostname="10.0.0.5",
        user="admin",
        port=2222,
        proxy="ncat --proxy 10.0.0.1:3128 --proxy-type http %h %p",
        tunnels=["RemoteForward 57001 172.16.0.45:22"],
        dynamic_socks=["1080"],
        options=["ServerAliveInterval 30"],
        folder="prod",
        note="never rendered",
        password="s3cret",
    )
    assert ssh_config.render(profile) == (
        "Host db1\n"
        "    HostName 10.0.0.5\n"
        "    User admin\n"
        "    Port 2222\n"
        "    ProxyCommand ncat --proxy 10.0.0.1:3128 --proxy-type http %h %p\n"
        "    RemoteForward 57001 172.16.0.45:22\n"
        "    DynamicForward 1080\n"
        "    ServerAliveInterval 30\n"
    )


def test_render_parse_roundtrip():
    text = (
        "Host db1\n"
        "    HostName 10.0.0.5\n"
        "    User admin\n"
        "    Port 2222\n"
        "    IdentityFile ~/.ssh/id_rsa\n"
        "    LocalForward 5432 localhost:5432\n"
        "\n"
        "Host web\n"
        "    HostName web.example.com\n"
    )
    profiles = ssh_config.parse(text)
    assert ssh_config.render_config(profiles) == text
    assert ssh_config.parse(ssh_config.render_config(profiles)) == profiles


def test_render_config_with_preamble():
    text = ssh_config.render_config([Profile(host="a")], ["Include x"])
    assert text == "Include x\n\nHost a\n"


def test_read_missing_file(tmp_path):
    assert ssh_config.read_config(tmp_path / "none") == ([], [])


def test_write_config_atomic(tmp_path):
    path = tmp_path / "config"
    path.write_text("old contents\n")

    ssh_config.write_config(path, [Profile(host="db1", hostname="10.0.0.5")], ["Include x"])

    assert path.read_text() == "Include x\n\nHost db1\n    HostName 10.0.0.5\n"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert os.listdir(tmp_path) == ["config"]

    preamble, profiles = ssh_config.read_config(path)
    assert preamble == ["Include x"]
    assert profiles[0].hostname == "10.0.0.5"


def test_match_blocks_kept_as_text():
    blocks = ssh_config.parse_blocks(SAMPLE)
    assert [type(b).__name__ for b in blocks] == ["Profile", "Profile", "RawBlock"]
    match = blocks[2]
    assert match.header == "Match host legacy"
    assert match.lines == ["User old"]


def test_invalid_host_block_kept_as_text():
    blocks = ssh_config.parse_blocks("Host\n  HostName nowhere\nHost ok\n")
    assert blocks[0] == ssh_config.RawBlock("Host", ["HostName nowhere"])
    assert blocks[1].host == "ok"


def test_render_blocks_roundtrip_with_match():
    text = (
        "Host *\n"
        "    User root\n"
        "\n"
        "Host db1\n"
        "    HostName 10.0.0.5\n"
        "\n"
        "Match host legacy exec \"test -f /tmp/x\"\n"
        "    KexAlgorithms +diffie-hellman-group1-sha1\n"
        "    # old switch\n"
    )
    assert ssh_config.render_config(ssh_config.parse_blocks(text)) == text
