"""Password-authenticated kitty remote control.

kitty started with ``remote_control_password`` only accepts commands that
carry the password inside an encrypted envelope:

    {"version": [...], "iv": b85, "tag": b85, "pubkey": b85, "encrypted": b85}

The plaintext is the usual command dict plus ``password`` and ``timestamp``
(ns since the epoch). It is sealed with AES-256-GCM under SHA-256 of an X25519
shared secret between a fresh key pair and kitty's public key.

kitty publishes its public key as ``KITTY_PUBLIC_KEY=1:<b85>`` in the
environment of every process it spawns.
"""

import base64
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import psutil
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import AuthenticationError

logger = logging.getLogger(__name__)

PUBLIC_KEY_ENV = "KITTY_PUBLIC_KEY"
ENCRYPTION_PROTOCOL = "1"
GCM_TAG_SIZE = 16
GCM_NONCE_SIZE = 12


def password_path(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    config_home = env.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(config_home) / "kitty" / "rc.password"


def get_kitty_password(path: Optional[Path] = None) -> Optional[str]:
    """Password from kitty/rc.password, or None if there is none."""
    path = path or password_path()
    try:
        password = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Cannot read kitty password file {path}: {e}")
        return None
    return password or None


def parse_public_key(value: str) -> Tuple[str, bytes]:
    """Split ``<protocol>:<b85 key>`` into (protocol, raw key).

    Raises:
        AuthenticationError: If the value is not a kitty public key
    """
    protocol, sep, encoded = value.partition(":")
    if not sep or protocol != ENCRYPTION_PROTOCOL:
        raise AuthenticationError(f"Unsupported kitty public key: {value[:16]!r}")
    try:
        key = base64.b85decode(encoded)
    except ValueError as e:
        raise AuthenticationError(f"Malformed kitty public key: {e}") from e
    if len(key) != 32:
        raise AuthenticationError(f"kitty public key has {len(key)} bytes, expected 32")
    return protocol, key


def find_public_key(pid: Optional[int] = None) -> Optional[str]:
    """kitty's public key for the instance with this PID.

    Read from the environment of the instance's children. Without a PID, or
    when running inside that very instance, our own environment is used.
    """
    if pid is None or os.environ.get("KITTY_PID") == str(pid):
        return os.environ.get(PUBLIC_KEY_ENV)

    try:
        children = psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None

    for child in children:
        try:
            value = child.environ().get(PUBLIC_KEY_ENV)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if value:
            return value
    return None


def _b85(data: bytes) -> str:
    return base64.b85encode(data).decode("ascii")


class CommandEncryptor:
    """Seals command dicts for one kitty instance."""

    def __init__(self, password: str, public_key: str) -> None:
        self.password = password
        self.protocol, self._public_key = parse_public_key(public_key)

    def encrypt(self, message: Dict[str, Any], timestamp_ns: Optional[int] = None) -> Dict[str, Any]:
        plaintext = dict(message, password=self.password)
        plaintext["timestamp"] = time.time_ns() if timestamp_ns is None else timestamp_ns

        private_key = X25519PrivateKey.generate()
        shared_secret = private_key.exchange(X25519PublicKey.from_public_bytes(self._public_key))
        iv = os.urandom(GCM_NONCE_SIZE)
        sealed = AESGCM(hashlib.sha256(shared_secret).digest()).encrypt(
            iv, json.dumps(plaintext).encode(), None
        )

        return {
            "version": message["version"],
            "iv": _b85(iv),
            "tag": _b85(sealed[-GCM_TAG_SIZE:]),
            "pubkey": _b85(private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)),
            "encrypted": _b85(sealed[:-GCM_TAG_SIZE]),
        }


def build_encryptor(password: Optional[str], pid: Optional[int] = None) -> Optional[CommandEncryptor]:
    """Encryptor for a kitty instance, or None to talk in the clear.

    Raises:
        AuthenticationError: If a password is set but kitty's public key is unusable
    """
    if not password:
        return None
    public_key = find_public_key(pid)
    if public_key is None:
        logger.warning(f"kitty password configured but no {PUBLIC_KEY_ENV} found for PID {pid}, sending commands unencrypted")
        return None
    return CommandEncryptor(password, public_key)
