"""Lookups of the Chrome Safe Storage password in the platform secret stores.

Every lookup is best effort: a missing tool, a locked store or a timeout simply
yields None so the next mechanism can be tried.
"""

from web_access_mcp.utils.logging import BASE_LOGGER
from web_access_mcp.utils.subprocess import CommandError, run_command, try_command

logger = BASE_LOGGER.getChild("keychain")

LOOKUP_TIMEOUT_SECONDS = 5
DBUS_PROBE_TIMEOUT_SECONDS = 3

# Chromium builds use this password when no keyring is configured.
LINUX_FALLBACK_PASSWORD = "peanuts"

LIBSECRET_SCHEMAS = ["chrome_libsecret_os_crypt_password_v2", "chrome_libsecret_os_crypt_password_v1"]
KWALLET_DAEMONS = ["kwalletd6", "kwalletd5"]


async def read_mac_keychain_password() -> str | None:
    return await try_command(
        "security",
        "find-generic-password",
        "-w",
        "-a",
        "Chrome",
        "-s",
        "Chrome Safe Storage",
        timeout=LOOKUP_TIMEOUT_SECONDS,
    )


async def read_libsecret_password(schema: str) -> str | None:
    return await try_command("secret-tool", "lookup", "xdg:schema", schema, "application", "chrome", timeout=LOOKUP_TIMEOUT_SECONDS)


async def _kwallet_enabled(daemon: str) -> bool:
    try:
        _ = await run_command(
            "dbus-send",
            "--session",
            f"--dest=org.kde.{daemon}",
            "--print-reply",
            f"/modules/{daemon}",
            "org.kde.KWallet.isEnabled",
            timeout=DBUS_PROBE_TIMEOUT_SECONDS,
        )
    except CommandError:
        return False

    return True


async def read_kwallet_password() -> str | None:
    for daemon in KWALLET_DAEMONS:
        if await _kwallet_enabled(daemon):
            logger.debug(f"Reading Chrome Safe Storage from {daemon}")
            return await try_command(
                "kwallet-query", "-r", "Chrome Safe Storage", "-f", "Chrome Keys", "kdewallet", timeout=LOOKUP_TIMEOUT_SECONDS
            )

    return None


async def read_linux_keychain_password() -> str:
    """Try GNOME Keyring (both libsecret schemas), then KWallet, then the Chromium default."""

    for schema in LIBSECRET_SCHEMAS:
        if password := await read_libsecret_password(schema):
            return password

    if password := await read_kwallet_password():
        return password

    logger.debug("No keyring password found, using the Chromium default")
    return LINUX_FALLBACK_PASSWORD
