"""
sshvault - Command Line

Non-interactive front end over the profile store. On start the SSH config
is imported into the store; commands that change connection fields write
the config back (both skipped with --no-sync).

Usage:
    sshvault list [--folder NAME]
    sshvault show HOST [--secrets]
    sshvault add HOST --hostname 10.0.0.5 --user admin
    sshvault set-password HOST
    sshvault reveal HOST [--field key_passphrase] [--copy]
    sshvault add-tunnel HOST remote 57001 172.16.0.45:22
    sshvault remove HOST
    sshvault console-add sw1 --device /dev/ttyUSB0 --baud-rate 115200
"""

import os
import sys
import getpass
import logging
import argparse
from typing import List, Optional

from .config import StoreConfig
from .errors import InvalidProfile, SSHVaultError
from .forwarding import find_available_port, http_proxy_command
from .models import ConsoleProfile, Profile
from .store import ProfileStore
from . import sync

logger = logging.getLogger("sshvault.cli")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def _flags(profile: Profile) -> str:
    marks = []
    if profile.has_password:
        marks.append("password")
    if profile.has_key_passphrase:
        marks.append("passphrase")
    if profile.proxy:
        marks.append("proxy")
    if profile.tunnels:
        marks.append("tunnel")
    if profile.dynamic_socks:
        marks.append("socks")
    if profile.note:
        marks.append("note")
    if profile.url:
        marks.append("url")
    return ",".join(marks)


def _prompt_secret(label: str) -> str:
    while True:
        first = getpass.getpass(f"{label}: ")
        second = getpass.getpass("Confirm: ")
        if first != second:
            print("Values don't match.\n")
            continue
        return first


def _export(store: ProfileStore, config: StoreConfig, args) -> None:
    if not args.no_sync:
        sync.export_config(store, config.ssh_config_path)


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_list(store, config, args) -> int:
    profiles = list(store.search(args.query) if args.query else store.list(args.folder))
    if not profiles:
        print("No profiles.")
        return 0
    print(f"{'Host':<24}  {'HostName':<22}  {'User':<12}  {'Folder':<12}  Flags")
    print("-" * 86)
    for p in profiles:
        print(f"{p.host:<24}  {p.hostname or '-':<22}  {p.user or '-':<12}  {p.folder or '-':<12}  {_flags(p)}")
    return 0


def cmd_show(store, config, args) -> int:
    p = store.get(args.host, include_secrets=args.secrets)
    print(f"Host: {p.host}")
    for label, value in (
        ("HostName", p.hostname),
        ("User", p.user),
        ("Port", p.port),
        ("IdentityFile", p.identity_file),
        ("ProxyCommand", p.proxy),
        ("Folder", p.folder),
        ("URL", p.url),
    ):
        if value:
            print(f"  {label}: {value}")
    for tunnel in p.tunnels:
        print(f"  {tunnel}")
    for socks in p.dynamic_socks:
        print(f"  DynamicForward {socks}")
    for option in p.options:
        print(f"  {option}")
    if p.note:
        print(f"  Note: {p.note}")
    if args.secrets:
        print(f"  Password: {p.password or '-'}")
        print(f"  Key passphrase: {p.key_passphrase or '-'}")
    else:
        print(f"  Password: {'stored' if p.has_password else '-'}")
        print(f"  Key passphrase: {'stored' if p.has_key_passphrase else '-'}")
    return 0


def cmd_folders(store, config, args) -> int:
    for folder in store.folders():
        print(folder)
    return 0


def cmd_add(store, config, args) -> int:
    if store.exists(args.host):
        raise InvalidProfile(f"host already exists: {args.host}")
    try:
        profile = Profile(
            host=args.host,
            hostname=args.hostname or "",
            user=args.user or "",
            port=args.port,
            identity_file=args.identity_file or "",
            folder=args.folder or "",
            note=args.note or "",
            url=args.url or "",
        )
    except ValueError as e:
        raise InvalidProfile(str(e)) from e
    store.upsert(profile)
    _export(store, config, args)
    print(f"Added {profile.host}")
    return 0


def cmd_duplicate(store, config, args) -> int:
    store.duplicate(args.host, args.new_host)
    _export(store, config, args)
    print(f"Duplicated {args.host} as {args.new_host}")
    return 0


def cmd_rename(store, config, args) -> int:
    store.rename(args.host, args.new_host)
    _export(store, config, args)
    print(f"Renamed {args.host} to {args.new_host}")
    return 0


def cmd_remove(store, config, args) -> int:
    removed = store.remove(args.host)
    _export(store, config, args)
    print(f"Removed {args.host}" if removed else f"No profile for {args.host}")
    return 0


def cmd_set_password(store, config, args) -> int:
    if args.clear:
        store.clear_password(args.host)
        print("Password removed.")
        return 0
    store.set_password(args.host, _prompt_secret("Password"))
    print("Password stored.")
    return 0


def cmd_set_passphrase(store, config, args) -> int:
    if args.clear:
        store.clear_key_passphrase(args.host)
        print("Key passphrase removed.")
        return 0
    store.set_key_passphrase(args.host, _prompt_secret("Key passphrase"))
    print("Key passphrase stored.")
    return 0


def cmd_reveal(store, config, args) -> int:
    secret = store.reveal(args.host, args.field)
    if secret is None:
        print(f"No {args.field} stored for {args.host}")
        return 1
    if args.copy:
        try:
            import pyperclip
            pyperclip.copy(secret)
            print("Copied to clipboard.")
            return 0
        except ImportError:
            print("(pyperclip not installed - run: pip install sshvault[clipboard])", file=sys.stderr)
            return 1
    print(secret)
    return 0


def cmd_set_proxy(store, config, args) -> int:
    if args.clear:
        store.set_proxy(args.host, "")
    elif args.raw:
        store.set_proxy(args.host, args.proxy)
    else:
        proxy = args.proxy or os.environ.get("https_proxy", "")
        if not proxy:
            raise InvalidProfile("https_proxy is not set")
        store.set_proxy(args.host, http_proxy_command(proxy))
    _export(store, config, args)
    print(f"Proxy updated for {args.host}")
    return 0


def cmd_add_tunnel(store, config, args) -> int:
    if args.clear:
        store.clear_tunnels(args.host)
        print(f"Tunnels removed from {args.host}")
    else:
        tunnel = store.add_tunnel(args.host, " ".join(args.spec))
        print(f"Added {tunnel}")
    _export(store, config, args)
    return 0


def cmd_add_socks(store, config, args) -> int:
    if args.clear:
        store.clear_dynamic_socks(args.host)
        print(f"DynamicForward removed from {args.host}")
    else:
        port = args.port or str(find_available_port())
        socks = store.add_dynamic_socks(args.host, port)
        print(f"Added DynamicForward {socks}")
    _export(store, config, args)
    return 0


def cmd_set_folder(store, config, args) -> int:
    store.set_folder(args.host, args.folder or "")
    return 0


def cmd_set_note(store, config, args) -> int:
    store.set_note(args.host, args.note)
    return 0


def cmd_set_url(store, config, args) -> int:
    store.set_url(args.host, args.url)
    return 0


def cmd_console_add(store, config, args) -> int:
    try:
        console = ConsoleProfile(
            host=args.host,
            device=args.device,
            baud_rate=args.baud_rate,
            parity=args.parity,
            stop_bit=args.stop_bit,
            data_bits=args.data_bits,
            folder=args.folder or "",
        )
    except ValueError as e:
        raise InvalidProfile(str(e)) from e
    store.upsert_console(console)
    print(f"Saved console {console.host}")
    return 0


def cmd_console_list(store, config, args) -> int:
    consoles = store.list_consoles()
    if not consoles:
        print("No console profiles.")
        return 0
    print(f"{'Host':<24}  {'Device':<20}  {'Baud':>7}  Framing")
    print("-" * 70)
    for c in consoles:
        print(f"{c.host:<24}  {c.device:<20}  {c.baud_rate:>7}  {c.data_bits}/{c.parity}/{c.stop_bit}")
    return 0


def cmd_console_show(store, config, args) -> int:
    c = store.get_console(args.host)
    print(f"Console: {c.host}")
    print(f"  Device: {c.device}")
    print(f"  Baud rate: {c.baud_rate}")
    print(f"  Data bits: {c.data_bits}")
    print(f"  Parity: {c.parity}")
    print(f"  Stop bit: {c.stop_bit}")
    if c.folder:
        print(f"  Folder: {c.folder}")
    return 0


def cmd_console_remove(store, config, args) -> int:
    removed = store.remove_console(args.host)
    print(f"Removed console {args.host}" if removed else f"No console profile for {args.host}")
    return 0


def cmd_import(store, config, args) -> int:
    hosts = sync.import_config(store, config.ssh_config_path)
    print(f"Imported {len(hosts)} host(s)")
    return 0


def cmd_export(store, config, args) -> int:
    count = sync.export_config(store, config.ssh_config_path)
    print(f"Wrote {count} host(s) to {config.ssh_config_path}")
    return 0


def cmd_prune(store, config, args) -> int:
    count = sync.prune_store(store, config.ssh_config_path)
    print(f"Deleted {count} row(s)")
    return 0


def cmd_upgrade(store, config, args) -> int:
    count = store.upgrade_legacy()
    print(f"Re-encrypted {count} legacy secret(s)")
    return 0


def cmd_backup(store, config, args) -> int:
    config_copy, db_copy = sync.backup(config)
    print(f"Backups: {config_copy}, {db_copy}")
    return 0


# =============================================================================
# ARGUMENTS
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sshvault", description="Encrypted SSH profile store")
    parser.add_argument("--db", help="SQLite database path")
    parser.add_argument("--ssh-config", help="SSH client config path")
    parser.add_argument("--no-sync", action="store_true",
                        help="don't import/export the SSH config file")
    parser.add_argument("--log-file", help="also append log records to this file")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="list profiles")
    p.add_argument("--folder")
    p.add_argument("--query", help="substring search")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", help="show one profile")
    p.add_argument("host")
    p.add_argument("--secrets", action="store_true", help="decrypt and print secrets")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("folders", help="list folders")
    p.set_defaults(func=cmd_folders)

    p = sub.add_parser("add", help="add a profile")
    p.add_argument("host")
    p.add_argument("--hostname")
    p.add_argument("--user")
    p.add_argument("--port")
    p.add_argument("--identity-file")
    p.add_argument("--folder")
    p.add_argument("--note")
    p.add_argument("--url")
    p.set_defaults(func=cmd_add)

    for name, func, helptext in (
        ("duplicate", cmd_duplicate, "copy a profile under a new name"),
        ("rename", cmd_rename, "rename a profile"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument("host")
        p.add_argument("new_host")
        p.set_defaults(func=func)

    p = sub.add_parser("remove", help="delete a profile and its secrets")
    p.add_argument("host")
    p.set_defaults(func=cmd_remove)

    for name, func in (("set-password", cmd_set_password), ("set-passphrase", cmd_set_passphrase)):
        p = sub.add_parser(name, help=f"{name.replace('-', ' ')} (prompted)")
        p.add_argument("host")
        p.add_argument("--clear", action="store_true")
        p.set_defaults(func=func)

    p = sub.add_parser("reveal", help="print or copy a stored secret")
    p.add_argument("host")
    p.add_argument("--field", choices=("password", "key_passphrase"), default="password")
    p.add_argument("--copy", action="store_true", help="copy to clipboard instead of printing")
    p.set_defaults(func=cmd_reveal)

    p = sub.add_parser("set-proxy", help="route the host through an HTTP proxy")
    p.add_argument("host")
    p.add_argument("proxy", nargs="?", help="ip:port (default: $https_proxy)")
    p.add_argument("--raw", action="store_true", help="store PROXY as the ProxyCommand as-is")
    p.add_argument("--clear", action="store_true")
    p.set_defaults(func=cmd_set_proxy)

    p = sub.add_parser("add-tunnel", help="add a Local/RemoteForward")
    p.add_argument("host")
    p.add_argument("spec", nargs="*", help="e.g. remote 57001 172.16.0.45:22")
    p.add_argument("--clear", action="store_true")
    p.set_defaults(func=cmd_add_tunnel)

    p = sub.add_parser("add-socks", help="add a DynamicForward")
    p.add_argument("host")
    p.add_argument("port", nargs="?", help="[bind:]port (default: a free port)")
    p.add_argument("--clear", action="store_true")
    p.set_defaults(func=cmd_add_socks)

    p = sub.add_parser("set-folder", help="move a profile into a folder")
    p.add_argument("host")
    p.add_argument("folder", nargs="?")
    p.set_defaults(func=cmd_set_folder)

    p = sub.add_parser("set-note", help="set the note")
    p.add_argument("host")
    p.add_argument("note")
    p.set_defaults(func=cmd_set_note)

    p = sub.add_parser("set-url", help="set the url")
    p.add_argument("host")
    p.add_argument("url")
    p.set_defaults(func=cmd_set_url)

    p = sub.add_parser("console-add", help="add or replace a serial console profile")
    p.add_argument("host")
    p.add_argument("--device", required=True, help="e.g. /dev/ttyUSB0")
    p.add_argument("--baud-rate", type=int, default=9600)
    p.add_argument("--parity", default="none")
    p.add_argument("--stop-bit", default="1")
    p.add_argument("--data-bits", type=int, default=8)
    p.add_argument("--folder")
    p.set_defaults(func=cmd_console_add)

    p = sub.add_parser("console-list", help="list serial console profiles")
    p.set_defaults(func=cmd_console_list)

    for name, func, helptext in (
        ("console-show", cmd_console_show, "show a serial console profile"),
        ("console-remove", cmd_console_remove, "delete a serial console profile"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument("host")
        p.set_defaults(func=func)

    for name, func, helptext in (
        ("import", cmd_import, "load the SSH config into the store"),
        ("export", cmd_export, "write the store to the SSH config"),
        ("prune", cmd_prune, "drop profiles missing from the SSH config"),
        ("upgrade", cmd_upgrade, "re-encrypt legacy secrets"),
        ("backup", cmd_backup, "back up the SSH config and database"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.set_defaults(func=func)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        config = StoreConfig.from_env(db_path=args.db, ssh_config_path=args.ssh_config)
        config.ensure_dirs()
        with ProfileStore.from_config(config) as store:
            if not args.no_sync and args.command not in ("import", "backup"):
                sync.import_config(store, config.ssh_config_path)
            return args.func(store, config, args)
    except SSHVaultError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nExiting...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
