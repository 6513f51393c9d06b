"""Unified path constants for remote-provisioner.

All local state lives under the .remote-provisioner directory:
- .remote-provisioner/resources.json   # JSON resource store
- .remote-provisioner/credentials/     # per-server SSH key pairs
"""

from pathlib import Path

BASE_DIR = Path(".remote-provisioner")

STORE_PATH = BASE_DIR / "resources.json"
CREDENTIALS_DIR = BASE_DIR / "credentials"
