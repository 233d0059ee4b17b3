"""
sshvault - Profile Model

A Profile is one named SSH destination. Connection fields mirror the
OpenSSH client config; folder, note and url only live in the database.
A ConsoleProfile is a serial console line; it lives only in the database.

Secret fields follow one rule:
    None     not loaded (or: leave the stored value alone on write)
    ""       no secret (or: erase the stored value on write)
    "text"   plaintext, in memory only
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

SECRET_FIELDS = ("password", "key_passphrase")

# Fields that belong to the connection itself (rendered into ssh config)
CONNECTION_FIELDS = (
    "hostname", "user", "port", "identity_file", "proxy",
    "tunnels", "dynamic_socks", "options",
)

# Fields that only live in the database
META_FIELDS = ("folder", "note", "url")

_PATTERN_CHARS = set("*?!")


class Profile(BaseModel):
    """One SSH host profile."""

    host: str
    hostname: str = ""
    user: str = ""
    port: Optional[int] = None
    identity_file: str = ""
    proxy: str = ""
    folder: str = ""
    tunnels: List[str] = Field(default_factory=list)
    dynamic_socks: List[str] = Field(default_factory=list)
    options: List[str] = Field(default_factory=list)
    note: str = ""
    url: str = ""

    password: Optional[str] = Field(default=None, repr=False)
    key_passphrase: Optional[str] = Field(default=None, repr=False)
    has_password: bool = False
    has_key_passphrase: bool = False

    model_config = {"validate_assignment": True}

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Host must be non-empty and fit on one config line."""
        v = " ".join(v.split())
        if not v:
            raise ValueError("host cannot be empty")
        return v

    @field_validator("port", mode="before")
    @classmethod
    def coerce_port(cls, v):
        """Accept '' / None as unset and numeric strings from config text."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            v = v.strip()
            if not v.isdigit():
                raise ValueError(f"port is not a number: {v}")
            v = int(v)
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1 <= v <= 65535:
            raise ValueError(f"port out of range: {v}")
        return v

    @field_validator("hostname", "user", "identity_file", "proxy", "folder", "url")
    @classmethod
    def single_line(cls, v: str) -> str:
        if "\n" in v or "\r" in v:
            raise ValueError("value cannot contain line breaks")
        return v.strip()

    @property
    def is_pattern(self) -> bool:
        """True for multi-alias or wildcard Host lines (``Host a b``, ``Host *``)."""
        return " " in self.host or any(c in _PATTERN_CHARS for c in self.host)


PARITIES = ("none", "even", "odd", "mark", "space")
STOP_BITS = ("1", "1.5", "2")


class ConsoleProfile(BaseModel):
    """A serial console line: device and framing. Defaults are 9600 8N1."""

    host: str
    device: str
    baud_rate: int = Field(default=9600, gt=0)
    parity: str = "none"
    stop_bit: str = "1"
    data_bits: int = Field(default=8, ge=5, le=8)
    folder: str = ""

    @field_validator("host", "device")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v or "\n" in v:
            raise ValueError("value must be a single non-empty line")
        return v

    @field_validator("parity")
    @classmethod
    def validate_parity(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in PARITIES:
            raise ValueError(f"parity must be one of {', '.join(PARITIES)}")
        return v

    @field_validator("stop_bit", mode="before")
    @classmethod
    def validate_stop_bit(cls, v) -> str:
        v = str(v).strip()
        if v not in STOP_BITS:
            raise ValueError(f"stop bit must be one of {', '.join(STOP_BITS)}")
        return v
