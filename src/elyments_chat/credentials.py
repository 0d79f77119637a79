"""
CredentialStore — session, device identity and profile records on disk.

Three independent JSON files under ``<home>/credentials/<account_id>/``.
Each save replaces the whole file atomically; loads never raise.
"""

import logging
import os
import secrets
import tempfile
import time
import uuid
from pathlib import Path
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from elyments_chat.models.session import DeviceIdentity, Profile, Session

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"
SESSION_FILE = "session.json"
DEVICE_FILE = "device.json"
PROFILE_FILE = "profile.json"

M = TypeVar("M", bound=BaseModel)


def default_home() -> Path:
    env_home = os.environ.get("ELYMENTS_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".elyments"


class CredentialStore:
    def __init__(self, home: Optional[Path] = None, account_id: str = DEFAULT_ACCOUNT_ID):
        self._home = Path(home) if home is not None else default_home()
        self._account_id = account_id

    @property
    def directory(self) -> Path:
        return self._home / "credentials" / self._account_id

    def _read(self, name: str, model: type[M]) -> Optional[M]:
        path = self.directory / name
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("Ignoring unreadable credential file %s: %s", path, e)
            return None

    def _write(self, name: str, record: BaseModel) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{name}.", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            os.replace(tmp, self.directory / name)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _delete(self, name: str) -> bool:
        try:
            (self.directory / name).unlink()
            return True
        except FileNotFoundError:
            return False

    # Session

    def load_session(self) -> Optional[Session]:
        session = self._read(SESSION_FILE, Session)
        if session is None or not session.is_complete:
            return None
        return session

    def save_session(self, session: Session) -> None:
        self._write(SESSION_FILE, session)

    def delete_session(self) -> bool:
        return self._delete(SESSION_FILE)

    def has_session(self) -> bool:
        return self.load_session() is not None

    # Device

    def load_device(self) -> Optional[DeviceIdentity]:
        return self._read(DEVICE_FILE, DeviceIdentity)

    def get_or_create_device(self) -> DeviceIdentity:
        existing = self.load_device()
        if existing:
            return existing
        device = DeviceIdentity(
            device_id=f"elyments-{secrets.token_hex(4)}",
            device_token=str(uuid.uuid4()),
            platform_type="WEB",
            resource=f"elyments-{int(time.time() * 1000)}",
        )
        self._write(DEVICE_FILE, device)
        logger.info("Created device identity %s", device.device_id)
        return device

    # Profile

    def load_profile(self) -> Optional[Profile]:
        return self._read(PROFILE_FILE, Profile)

    def save_profile(self, profile: Profile) -> None:
        self._write(PROFILE_FILE, profile)

    def clear(self) -> None:
        """Remove every record, device identity included."""
        for name in (SESSION_FILE, DEVICE_FILE, PROFILE_FILE):
            self._delete(name)
