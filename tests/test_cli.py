"""Command-line front end, run in-process against temp files."""

import pytest

from sshvault import cli


@pytest.fixture
def run(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("SSHVAULT_LEGACY_KEY_FILE", "")
    base = ["--db", str(tmp_path / "sshcli.db"), "--ssh-config", str(tmp_path / "config")]

    def invoke(*argv):
        code = cli.main(base + list(argv))
        out, err = capsys.readouterr()
        return code, out, err
    return invoke


@pytest.fixture
def ssh_config(tmp_path):
    return tmp_path / "config"


def test_add_show_list(run, ssh_config):
    code, out, _ = run("add", "db1", "--hostname", "10.0.0.5", "--user", "admin", "--port", "2222",
                       "--folder", "prod")
    assert code == 0
    assert "Host db1" in ssh_config.read_text()

    code, out, _ = run("show", "db1")
    assert code == 0
    assert "HostName: 10.0.0.5" in out
    assert "Port: 2222" in out
    assert "Password: -" in out

    code, out, _ = run("list")
    assert "db1" in out and "10.0.0.5" in out and "prod" in out

    code, out, _ = run("folders")
    assert out.split() == ["prod"]


def test_add_twice_fails(run):
    run("add", "db1")
    code, _, err = run("add", "db1")
    assert code == 1
    assert "ERROR" in err


def test_add_bad_port(run):
    code, _, err = run("add", "db1", "--port", "http")
    assert code == 1
    assert "ERROR" in err


def test_password_flow(run, monkeypatch, ssh_config):
    monkeypatch.setattr("getpass.getpass", lambda prompt="": "s3cret")
    run("add", "db1", "--hostname", "10.0.0.5")

    code, out, _ = run("set-password", "db1")
    assert code == 0

    code, out, _ = run("show", "db1")
    assert "Password: stored" in out

    code, out, _ = run("reveal", "db1")
    assert code == 0
    assert out.strip() == "s3cret"
    assert "s3cret" not in ssh_config.read_text()

    run("set-password", "db1", "--clear")
    code, out, _ = run("reveal", "db1")
    assert code == 1
    assert "No password" in out


def test_show_missing_host(run):
    code, _, err = run("show", "nope")
    assert code == 1
    assert "no profile found for host: nope" in err


def test_tunnels_socks_and_proxy(run, monkeypatch, ssh_config):
    monkeypatch.setenv("https_proxy", "http://10.0.0.1:3128")
    run("add", "db1", "--hostname", "10.0.0.5")

    assert run("add-tunnel", "db1", "remote", "57001", "172.16.0.45:22")[0] == 0
    assert run("add-socks", "db1", "1080")[0] == 0
    assert run("set-proxy", "db1")[0] == 0

    text = ssh_config.read_text()
    assert "    RemoteForward 57001 172.16.0.45:22\n" in text
    assert "    DynamicForward 1080\n" in text
    assert "10.0.0.1:3128" in text and "ProxyCommand" in text

    run("add-tunnel", "db1", "--clear")
    run("set-proxy", "db1", "--clear")
    text = ssh_config.read_text()
    assert "RemoteForward" not in text
    assert "ProxyCommand" not in text


def test_bad_tunnel(run):
    run("add", "db1")
    code, _, err = run("add-tunnel", "db1", "sideways", "1", "a:2")
    assert code == 1
    assert "unknown forward type" in err


def test_rename_duplicate_remove(run, ssh_config):
    run("add", "db1", "--hostname", "10.0.0.5")
    run("duplicate", "db1", "db2")
    run("rename", "db1", "primary")

    text = ssh_config.read_text()
    assert "Host primary" in text and "Host db2" in text
    assert "Host db1\n" not in text

    code, out, _ = run("remove", "db2")
    assert "Removed db2" in out
    code, out, _ = run("remove", "db2")
    assert code == 0
    assert "No profile" in out


def test_existing_config_is_imported(run, ssh_config):
    ssh_config.write_text("Host web\n    HostName 10.0.0.6\n")
    code, out, _ = run("list")
    assert "web" in out and "10.0.0.6" in out


def test_no_sync_leaves_config_alone(run, ssh_config):
    run("--no-sync", "add", "db1")
    assert not ssh_config.exists()
    code, out, _ = run("--no-sync", "list")
    assert "db1" in out


def test_prune_and_backup(run, ssh_config, tmp_path):
    run("add", "db1")
    run("--no-sync", "add", "orphan")

    code, out, _ = run("--no-sync", "prune")
    assert "Deleted 1 row(s)" in out

    code, out, _ = run("backup")
    assert code == 0
    assert (tmp_path / "config_backup").exists()
    assert (tmp_path / "sshcli.db_backup").exists()


def test_notes_and_upgrade(run):
    run("add", "db1")
    run("set-note", "db1", "primary database")
    run("set-url", "db1", "https://db1.example.com")
    code, out, _ = run("show", "db1")
    assert "Note: primary database" in out
    assert "URL: https://db1.example.com" in out

    code, out, _ = run("upgrade")
    assert "Re-encrypted 0 legacy secret(s)" in out


def test_console_commands(run):
    code, out, _ = run("console-list")
    assert code == 0 and "No console profiles." in out

    code, out, _ = run("console-add", "sw1", "--device", "/dev/ttyUSB0", "--baud-rate", "115200",
                       "--folder", "lab")
    assert code == 0 and "Saved console sw1" in out

    code, out, _ = run("console-list")
    assert "sw1" in out and "/dev/ttyUSB0" in out and "115200" in out and "8/none/1" in out

    code, out, _ = run("console-show", "sw1")
    assert "Baud rate: 115200" in out
    assert "Folder: lab" in out

    code, out, _ = run("console-remove", "sw1")
    assert "Removed console sw1" in out
    code, out, _ = run("console-remove", "sw1")
    assert "No console profile for sw1" in out

    code, _, err = run("console-show", "sw1")
    assert code == 1 and "ERROR" in err


def test_console_add_bad_parity(run):
    code, _, err = run("console-add", "sw1", "--device", "/dev/ttyUSB0", "--parity", "sideways")
    assert code == 1
    assert "ERROR" in err


def test_bad_busy_timeout_env(run, monkeypatch):
    monkeypatch.setenv("SSHVAULT_BUSY_TIMEOUT", "soon")
    code, _, err = run("list")
    assert code == 1
    assert err.startswith("ERROR:")
    assert "Traceback" not in err


@pytest.mark.parametrize("command", ["set-note", "set-url", "set-folder"])
def test_metadata_commands_need_existing_host(run, ssh_config, command):
    code, _, err = run(command, "nope", "value")
    assert code == 1
    assert "ERROR" in err

    code, out, _ = run("list")
    assert "nope" not in out
    assert not ssh_config.exists() or "nope" not in ssh_config.read_text()


def test_match_block_survives_add(run, ssh_config):
    ssh_config.write_text(
        "Host *\n    User root\n\nMatch host legacy\n    KexAlgorithms +diffie-hellman-group1-sha1\n"
    )
    run("add", "db1", "--hostname", "10.0.0.5")

    text = ssh_config.read_text()
    assert "Match host legacy\n    KexAlgorithms +diffie-hellman-group1-sha1\n" in text
    assert text.index("Host db1") < text.index("Host *") < text.index("Match host legacy")
