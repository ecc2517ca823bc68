"""
Runtime configuration, read from the environment.

  PLC_DIRECTORY_URL               directory base URL
  PLC_TIMEOUT                     request timeout in seconds (unset = none)
  PLC_LOG_LEVEL                   logging level name
  FAIR_ROTATION_KEY_PRIVATE       encoded rotation private key
  FAIR_VERIFICATION_KEY_PRIVATE   encoded verification private key
  FAIR_VERIFICATION_KEY_PUBLIC    encoded verification public key
  FAIR_DID                        existing identifier, if any
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from plc_log.directory.client import DEFAULT_DIRECTORY_URL


@dataclass
class Settings:
    directory_url: str = DEFAULT_DIRECTORY_URL
    timeout: Optional[float] = None
    log_level: str = "INFO"
    rotation_private: str = field(default="", repr=False)
    verification_private: str = field(default="", repr=False)
    verification_public: str = ""
    did: str = ""

    @property
    def has_rotation_key(self) -> bool:
        return bool(self.rotation_private)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    timeout = env.get("PLC_TIMEOUT", "").strip()
    return Settings(
        directory_url=env.get("PLC_DIRECTORY_URL", DEFAULT_DIRECTORY_URL),
        timeout=float(timeout) if timeout else None,
        log_level=env.get("PLC_LOG_LEVEL", "INFO").upper(),
        rotation_private=env.get("FAIR_ROTATION_KEY_PRIVATE", "").strip(),
        verification_private=env.get("FAIR_VERIFICATION_KEY_PRIVATE", "").strip(),
        verification_public=env.get("FAIR_VERIFICATION_KEY_PUBLIC", "").strip(),
        did=env.get("FAIR_DID", "").strip(),
    )
