"""Configuration module for mailsift.

This module handles loading and providing configuration values from
environment variables for the IMAP connection.
"""

import os
from dataclasses import dataclass, replace
from typing import Any

from dotenv import load_dotenv

# Load environment variables from .env file for configuration
# This allows secure credential storage outside the codebase
load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in ("0", "false", "no", "off")


# IMAP Configuration - Global Constants
IMAP_SERVER = os.getenv("IMAP_SERVER", "localhost")
IMAP_PORT = int(os.getenv("IMAP_PORT", "993"))  # IMAP over implicit TLS
IMAP_USERNAME = os.getenv("IMAP_USERNAME", "")
IMAP_PASSWORD = os.getenv("IMAP_PASSWORD", "")
IMAP_MAILBOX = os.getenv("IMAP_MAILBOX", "INBOX")
IMAP_USE_SSL = _env_flag("IMAP_USE_SSL", "true")
IMAP_TIMEOUT = float(os.getenv("IMAP_TIMEOUT", "60"))  # Socket timeout in seconds


@dataclass(frozen=True)
class ConnectionSettings:
    """Everything needed to open an authenticated mailbox session.

    Attributes:
        server: IMAP server hostname
        port: IMAP server port
        username: Login name
        password: Password or app-specific password
        mailbox: Mailbox to select after login
        use_ssl: Connect with implicit TLS
        timeout: Socket timeout in seconds, aborts a stuck round trip
    """
    server: str = IMAP_SERVER
    port: int = IMAP_PORT
    username: str = IMAP_USERNAME
    password: str = IMAP_PASSWORD
    mailbox: str = IMAP_MAILBOX
    use_ssl: bool = IMAP_USE_SSL
    timeout: float = IMAP_TIMEOUT

    def with_overrides(self, **overrides: Any) -> "ConnectionSettings":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)
