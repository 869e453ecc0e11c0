# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ===============================
# Constants
# ===============================

RECOVERY_RECORD_SIZE = 10  # percent
COMPRESSION_LEVEL = 3
DEFAULT_COMMENT = "Automated Snapshot"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
HASH_CHUNK_BYTES = 1024 * 1024
ELEVATED_TIMEOUT = 300  # seconds per elevated hash/copy
PROBE_LIMIT = 5000  # entries inspected by the elevation probe
POLL_INTERVAL = 0.5  # seconds between backend output polls

PASSWORD_ENV = "RAR_PASSWORD"

README_TEXT = """This archive was created by bitfreeze.

To list or restore its contents, install bitfreeze and run:

    bitfreeze list <this-archive.rar>
    bitfreeze checkout <commit_id> <this-archive.rar> <output-folder>

---
Files are stored as content hashes in 'files/' and commit manifests in 'versions/'.
Comments are stored as .comment files alongside manifests.
"""


class Settings(BaseSettings):
    """Tool locations and tunables, overridable through ``BITFREEZE_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="BITFREEZE_",
        env_ignore_empty=True,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    rar: str = "rar"
    sudo: str = "sudo"
    elevated_timeout: float = Field(default=ELEVATED_TIMEOUT, gt=0)
    recovery_percent: int = Field(default=RECOVERY_RECORD_SIZE, ge=0, le=100,
                                  validation_alias="BITFREEZE_RECOVERY")
    password_env: str = PASSWORD_ENV


def load_settings() -> Settings:
    return Settings()
