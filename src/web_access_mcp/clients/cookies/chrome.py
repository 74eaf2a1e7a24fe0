import asyncio
import re
import shutil
import sqlite3
import sys
import tempfile
from collections.abc import Awaitable, Callable, Iterable
from contextlib import closing
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict, Field

from web_access_mcp.clients.cookies.keychain import read_linux_keychain_password, read_mac_keychain_password
from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("chrome")

CookieJar = dict[str, str]

PBKDF2_SALT = b"saltysalt"
KEY_LENGTH = 16
CBC_IV = b" " * 16

# Cookie databases from this schema version on prefix each plaintext with a SHA-256 of the host.
HASH_PREFIX_VERSION = 24
HASH_PREFIX_LENGTH = 32

SIDECAR_SUFFIXES = ["-wal", "-shm"]

ENCRYPTION_PREFIX = re.compile(rb"^v\d\d$")
CONTROL_CHARACTERS = "".join(chr(i) for i in range(0x20))


class PlatformConfig(BaseModel):
    """Where a platform keeps the Chrome cookie database and how its values are keyed."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    cookie_path: Path
    pbkdf2_iterations: int
    get_password: Callable[[], Awaitable[str | None]]


class CookieRecord(BaseModel):
    name: str
    value: str
    host: str
    expires_utc: int = 0


class CookieLookup(BaseModel):
    cookies: CookieJar = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


def get_platform_config(platform: str | None = None, home: Path | None = None) -> PlatformConfig | None:
    platform = platform or sys.platform
    home = home or Path.home()

    if platform == "darwin":
        return PlatformConfig(
            cookie_path=home / "Library" / "Application Support" / "Google" / "Chrome" / "Default" / "Cookies",
            pbkdf2_iterations=1003,
            get_password=read_mac_keychain_password,
        )

    if platform.startswith("linux"):
        return PlatformConfig(
            cookie_path=home / ".config" / "google-chrome" / "Default" / "Cookies",
            pbkdf2_iterations=1,
            get_password=read_linux_keychain_password,
        )

    return None


def derive_key(password: str, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA1(), length=KEY_LENGTH, salt=PBKDF2_SALT, iterations=iterations)  # noqa: S303
    return kdf.derive(password.encode())


def remove_pkcs7_padding(data: bytes) -> bytes:
    if not data:
        return data

    padding = data[-1]
    if padding == 0 or padding > algorithms.AES.block_size // 8:
        return data

    return data[:-padding]


def decrypt_cookie_value(encrypted: bytes, key: bytes, strip_hash: bool) -> str | None:
    """Decrypt a `vNN`-prefixed Chrome cookie value. Returns None if the value cannot be decrypted."""

    if len(encrypted) < 3 or not ENCRYPTION_PREFIX.match(encrypted[:3]):
        return None

    ciphertext = encrypted[3:]
    if not ciphertext:
        return ""

    decryptor = Cipher(algorithms.AES(key), modes.CBC(CBC_IV)).decryptor()

    try:
        plaintext = decryptor.update(ciphertext) + decryptor.finalize()
    except ValueError:
        return None

    unpadded = remove_pkcs7_padding(plaintext)

    if strip_hash and len(unpadded) >= HASH_PREFIX_LENGTH:
        unpadded = unpadded[HASH_PREFIX_LENGTH:]

    try:
        decoded = unpadded.decode("utf-8")
    except UnicodeDecodeError:
        return None

    return decoded.lstrip(CONTROL_CHARACTERS)


def expand_hosts(host: str) -> list[str]:
    """A host and every parent domain that a cookie for it could be scoped to."""

    parts = [part for part in host.split(".") if part]
    if len(parts) <= 1:
        return [host]

    candidates = [host]
    for i in range(1, len(parts) - 1):
        candidate = ".".join(parts[i:])
        if candidate not in candidates:
            candidates.append(candidate)

    return candidates


def _copy_database(source: Path, destination: Path) -> None:
    shutil.copyfile(source, destination)

    for suffix in SIDECAR_SUFFIXES:
        sidecar = source.with_name(source.name + suffix)
        if not sidecar.exists():
            continue

        try:
            shutil.copyfile(sidecar, destination.with_name(destination.name + suffix))
        except OSError as e:
            logger.debug(f"Could not copy {sidecar}: {e}")


def _connect(database: Path) -> sqlite3.Connection:
    return sqlite3.connect(f"{database.as_uri()}?mode=ro", uri=True)


def read_meta_version(database: Path) -> int:
    try:
        with closing(_connect(database)) as connection:
            row = connection.execute("SELECT value FROM meta WHERE key = 'version'").fetchone()
    except sqlite3.Error:
        return 0

    if row is None:
        return 0

    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def query_cookie_rows(database: Path, hosts: Iterable[str]) -> list[dict[str, Any]] | None:
    clauses: list[str] = []
    parameters: list[str] = []

    for host in hosts:
        for candidate in expand_hosts(host):
            clauses.extend(["host_key = ?", "host_key = ?", "host_key LIKE ?"])
            parameters.extend([candidate, f".{candidate}", f"%.{candidate}"])

    if not clauses:
        return []

    query = (
        "SELECT name, value, host_key, encrypted_value, expires_utc FROM cookies "
        f"WHERE ({' OR '.join(clauses)}) ORDER BY expires_utc DESC"
    )

    try:
        with closing(_connect(database)) as connection:
            connection.row_factory = sqlite3.Row
            return [dict(row) for row in connection.execute(query, parameters).fetchall()]
    except sqlite3.Error as e:
        logger.debug(f"Cookie query failed: {e}")
        return None


def select_cookies(
    rows: Iterable[dict[str, Any]], cookie_names: set[str], key: bytes, strip_hash: bool
) -> tuple[list[CookieRecord], list[str]]:
    """Decrypt the allowed cookies, keeping the first non-empty value per name in row order.

    Returns:
        The selected cookies and the names of allowed cookies that only had undecryptable values.
    """

    selected: dict[str, CookieRecord] = {}
    undecryptable: list[str] = []

    for row in rows:
        name = row.get("name")
        if name not in cookie_names or name in selected:
            continue

        value = row.get("value") if isinstance(row.get("value"), str) else None

        if not value and isinstance(encrypted := row.get("encrypted_value"), bytes | memoryview) and encrypted:
            value = decrypt_cookie_value(bytes(encrypted), key, strip_hash)
            if not value and name not in undecryptable:
                undecryptable.append(name)

        if value:
            selected[name] = CookieRecord(name=name, value=value, host=row.get("host_key") or "", expires_utc=row.get("expires_utc") or 0)

    return list(selected.values()), [name for name in undecryptable if name not in selected]


class ChromeCookieReader:
    """Reads authentication cookies out of the local Chrome profile."""

    platform_config: PlatformConfig | None

    def __init__(self, platform_config: PlatformConfig | None = None, detect_platform: bool = True):
        self.platform_config = platform_config if platform_config or not detect_platform else get_platform_config()

    def is_available(self) -> bool:
        return self.platform_config is not None and self.platform_config.cookie_path.exists()

    async def read_auth_cookies(self, origins: Iterable[str], cookie_names: Iterable[str]) -> CookieLookup | None:
        """Read the allowed cookies for the given origins.

        Returns:
            None when the platform is unsupported or no cookie database exists. Otherwise a best
            effort lookup, with warnings describing anything that could not be read.
        """

        config = self.platform_config
        if config is None or not config.cookie_path.exists():
            return None

        lookup = CookieLookup()

        password = await config.get_password()
        if not password:
            lookup.warnings.append("Could not read Chrome Safe Storage password")
            return lookup

        key = derive_key(password, config.pbkdf2_iterations)
        hosts = [hostname for origin in origins if (hostname := urlparse(origin).hostname)]

        scratch = Path(tempfile.mkdtemp(prefix="web-access-cookies-"))

        try:
            database = scratch / "Cookies"
            await asyncio.to_thread(_copy_database, config.cookie_path, database)

            meta_version = await asyncio.to_thread(read_meta_version, database)
            rows = await asyncio.to_thread(query_cookie_rows, database, hosts)

            if rows is None:
                lookup.warnings.append("Failed to query Chrome cookie database")
                return lookup

            records, undecryptable = select_cookies(rows, set(cookie_names), key, strip_hash=meta_version >= HASH_PREFIX_VERSION)
        except OSError as e:
            lookup.warnings.append(f"Could not copy Chrome cookie database: {e}")
            return lookup
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        lookup.cookies = {record.name: record.value for record in records}

        if undecryptable:
            lookup.warnings.append(f"Could not decrypt {len(undecryptable)} Chrome cookies: {', '.join(undecryptable)}")

        logger.info(f"Read {len(lookup.cookies)} Chrome cookies for {', '.join(hosts)}")

        return lookup
