"""
sshvault - SSH Config Bridge

Reads and writes the OpenSSH client config (~/.ssh/config):

    Host db1
        HostName 10.0.0.5
        User admin
        Port 2222
        LocalForward 5432 localhost:5432

Directives this package models go to Profile fields; everything else in a
Host block (comments included) is kept verbatim in Profile.options and
written back unchanged. Blocks that are not modelled at all (Match blocks,
Host blocks that fail validation) are carried as RawBlock and written back
where they were. Secrets never appear in this file.
"""

import os
import re
import logging
import tempfile
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from .models import Profile

logger = logging.getLogger("sshvault.ssh_config")

INDENT = "    "

_DIRECTIVE_RE = re.compile(r"^([A-Za-z][A-Za-z0-9]*)\s*(?:=\s*|\s+)(.*)$")

# lowercase keyword -> Profile field, for single-valued directives
_SCALARS = {
    "hostname": "hostname",
    "user": "user",
    "port": "port",
    "identityfile": "identity_file",
    "proxycommand": "proxy",
}

_TUNNEL_KEYWORDS = {
    "localforward": "LocalForward",
    "remoteforward": "RemoteForward",
}

# Render order
_SCALAR_DIRECTIVES = (
    ("HostName", "hostname"),
    ("User", "user"),
    ("Port", "port"),
    ("IdentityFile", "identity_file"),
    ("ProxyCommand", "proxy"),
)


class RawBlock(NamedTuple):
    """A block kept as text: its header line and body lines, stripped."""
    header: str
    lines: List[str]


Block = Union[Profile, RawBlock]


def _split(line: str) -> Tuple[str, str]:
    match = _DIRECTIVE_RE.match(line)
    if not match:
        return line, ""
    return match.group(1), match.group(2).strip()


def _valid_port(value: str) -> bool:
    return value.isdigit() and 1 <= int(value) <= 65535


def _is_block_start(line: str) -> bool:
    keyword, _ = _split(line.strip())
    return keyword.lower() in ("host", "match")


def _add_directive(fields: dict, line: str, kw: str, value: str) -> None:
    field = _SCALARS.get(kw)
    if field is not None and value and field not in fields:
        if field == "port" and not _valid_port(value):
            fields["options"].append(line)
        else:
            fields[field] = value
    elif kw in _TUNNEL_KEYWORDS and value:
        fields["tunnels"].append(f"{_TUNNEL_KEYWORDS[kw]} {value}")
    elif kw == "dynamicforward" and value:
        fields["dynamic_socks"].append(value)
    else:
        fields["options"].append(line)


def parse_blocks(text: str) -> List[Block]:
    """
    Parse SSH config text into blocks, in file order.

    - ``Host <patterns>`` blocks become Profiles
    - ``Match`` blocks, and Host blocks that fail validation, become
      RawBlocks holding their lines unchanged
    - ``Key value`` and ``Key=value`` are both accepted, keywords in any case
    - Lines before the first block belong to the preamble (see parse_preamble)
    - A repeated single-valued directive keeps the first value in its field
      and the rest verbatim in options, so nothing is lost

    Args:
        text: Config file contents

    Returns:
        Profiles and RawBlocks in file order
    """
    blocks: List[Block] = []
    header: Optional[str] = None
    body: List[str] = []

    def finish():
        if header is None:
            return
        keyword, value = _split(header)
        if keyword.lower() != "host":
            blocks.append(RawBlock(header, list(body)))
            return
        fields = {"host": value, "tunnels": [], "dynamic_socks": [], "options": []}
        for line in body:
            if line.startswith("#"):
                fields["options"].append(line)
                continue
            kw, val = _split(line)
            _add_directive(fields, line, kw.lower(), val)
        try:
            blocks.append(Profile(**fields))
        except ValidationError as e:
            logger.warning("Keeping Host block %r as text: %s", value, e)
            blocks.append(RawBlock(header, list(body)))

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if _is_block_start(line):
            finish()
            header, body = line, []
        elif header is not None:
            body.append(line)

    finish()
    return blocks


def parse(text: str) -> List[Profile]:
    """
    Parse SSH config text into profiles, one per valid Host block.

    Match blocks and invalid Host blocks are left out; use parse_blocks to
    keep them.
    """
    return [b for b in parse_blocks(text) if isinstance(b, Profile)]


def parse_preamble(text: str) -> List[str]:
    """Global lines before the first Host/Match block, trailing blanks dropped."""
    preamble: List[str] = []
    for raw in text.splitlines():
        if _is_block_start(raw):
            break
        preamble.append(raw.rstrip())
    while preamble and not preamble[-1]:
        preamble.pop()
    return preamble


def render(profile: Profile) -> str:
    """
    Render one profile as a Host block.

    Field order is fixed: HostName, User, Port, IdentityFile, ProxyCommand,
    tunnels, DynamicForward, then unmodelled options. Password, passphrase,
    folder, note and url are never written.
    """
    lines = [f"Host {profile.host}"]
    for directive, field in _SCALAR_DIRECTIVES:
        value = getattr(profile, field)
        if value not in (None, ""):
            lines.append(f"{INDENT}{directive} {value}")
    lines.extend(f"{INDENT}{tunnel}" for tunnel in profile.tunnels)
    lines.extend(f"{INDENT}DynamicForward {socks}" for socks in profile.dynamic_socks)
    lines.extend(f"{INDENT}{option}" for option in profile.options)
    return "\n".join(lines) + "\n"


def render_block(block: Block) -> str:
    if isinstance(block, RawBlock):
        return "\n".join([block.header] + [f"{INDENT}{line}" for line in block.lines]) + "\n"
    return render(block)


def render_config(blocks: Iterable[Block], preamble: Sequence[str] = ()) -> str:
    """Render a whole config file: preamble, then blocks separated by blank lines."""
    parts = [render_block(b) for b in blocks]
    if preamble:
        parts.insert(0, "\n".join(preamble) + "\n")
    return "\n".join(parts)


def read_config(path: Union[str, Path]) -> Tuple[List[str], List[Block]]:
    """
    Read a config file.

    Returns:
        (preamble lines, blocks in file order); both empty if the file does
        not exist
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("No SSH config at %s", path)
        return [], []
    return parse_preamble(text), parse_blocks(text)


def write_config(
    path: Union[str, Path],
    blocks: Iterable[Block],
    preamble: Sequence[str] = (),
) -> None:
    """
    Write a config file atomically.

    The text goes to a temp file in the same directory, is fsynced, and
    replaces the target with os.replace. A crash leaves the old file or
    the new one. The result is mode 0600.
    """
    path = Path(path)
    content = render_config(blocks, preamble)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    logger.info("Wrote SSH config %s", path)
