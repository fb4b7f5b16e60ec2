"""
Persistence of the session list across restarts.

The coordinator only talks to the ``TransferStore`` protocol. The JSON
store keeps sharing and receiving state in two separate files so that
writing one never clobbers the other.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from blobferry.logger import get_logger

logger = get_logger(__name__)

SHARE_STATE_FILE = "transfer-state-share.json"
RECEIVE_STATE_FILE = "transfer-state-receive.json"


def _now_iso() -> str:
    return datetime.now().isoformat()


class ShareItem(BaseModel):
    """A persisted send session."""

    id: str
    files: list[str] = Field(default_factory=list)
    old_ticket: str = Field(default="", alias="oldTicket")
    created_at: str = Field(default_factory=_now_iso, alias="createdAt")
    force_zip: Optional[bool] = Field(default=None, alias="forceZip")
    source_folder_path: Optional[Union[str, list[str]]] = Field(
        default=None, alias="sourceFolderPath"
    )
    batch_suffix: Optional[str] = Field(default=None, alias="batchSuffix")
    staged_path: Optional[str] = Field(default=None, alias="stagedPath")

    model_config = {"populate_by_name": True}


class ReceiveItem(BaseModel):
    """A persisted receive session."""

    id: str
    ticket: str
    status: str = "pending"
    filename: Optional[str] = None
    progress: float = 0
    created_at: str = Field(default_factory=_now_iso, alias="createdAt")
    output_dir: Optional[str] = Field(default=None, alias="outputDir")

    model_config = {"populate_by_name": True}


@runtime_checkable
class TransferStore(Protocol):
    """What the coordinator needs from a persistence backend."""

    def load_send_sessions(self) -> list[ShareItem]:
        ...

    def load_receive_sessions(self) -> list[ReceiveItem]:
        ...

    def save_send_sessions(self, items: list[ShareItem]) -> bool:
        ...

    def save_receive_sessions(self, items: list[ReceiveItem]) -> bool:
        ...


class MemoryTransferStore:
    """In-memory store, for embedding and tests."""

    def __init__(self):
        self.sharing: list[ShareItem] = []
        self.receiving: list[ReceiveItem] = []
        self.saves = 0

    def load_send_sessions(self) -> list[ShareItem]:
        return list(self.sharing)

    def load_receive_sessions(self) -> list[ReceiveItem]:
        return list(self.receiving)

    def save_send_sessions(self, items: list[ShareItem]) -> bool:
        self.sharing = list(items)
        self.saves += 1
        return True

    def save_receive_sessions(self, items: list[ReceiveItem]) -> bool:
        self.receiving = list(items)
        self.saves += 1
        return True


class JsonTransferStore:
    """
    File-backed store.

    ``transfer-state-share.json``   -> {"sharing": [...]}
    ``transfer-state-receive.json`` -> {"receiving": [...], "settings": {...}}
    """

    def __init__(self, base_dir: Path, default_receive_folder: Optional[Path] = None):
        self.base_dir = Path(base_dir)
        self.default_receive_folder = str(
            default_receive_folder or Path.home() / "Downloads"
        )

    @property
    def share_path(self) -> Path:
        return self.base_dir / SHARE_STATE_FILE

    @property
    def receive_path(self) -> Path:
        return self.base_dir / RECEIVE_STATE_FILE

    # -- Raw file access -----------------------------------------------------

    def _read(self, path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load {path.name}: {e}")
            return {}

    def _write(self, path: Path, data: dict) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            return True
        except OSError as e:
            logger.error(f"Failed to save {path.name}: {e}")
            return False

    def _receive_state(self) -> dict:
        state = self._read(self.receive_path)
        return {
            "receiving": state.get("receiving") or [],
            "settings": state.get("settings")
            or {"receiveFolder": self.default_receive_folder},
        }

    # -- Sessions ------------------------------------------------------------

    def load_send_sessions(self) -> list[ShareItem]:
        raw = self._read(self.share_path).get("sharing") or []
        return _validate_items(ShareItem, raw)

    def load_receive_sessions(self) -> list[ReceiveItem]:
        return _validate_items(ReceiveItem, self._receive_state()["receiving"])

    def save_send_sessions(self, items: list[ShareItem]) -> bool:
        payload = [item.model_dump(by_alias=True, exclude_none=True) for item in items]
        return self._write(self.share_path, {"sharing": payload})

    def save_receive_sessions(self, items: list[ReceiveItem]) -> bool:
        state = self._receive_state()
        state["receiving"] = [
            item.model_dump(by_alias=True, exclude_none=True) for item in items
        ]
        return self._write(self.receive_path, state)

    # -- Settings ------------------------------------------------------------

    def get_receive_folder(self) -> str:
        return self._receive_state()["settings"].get(
            "receiveFolder", self.default_receive_folder
        )

    def set_receive_folder(self, folder: str) -> bool:
        state = self._receive_state()
        state["settings"]["receiveFolder"] = folder
        return self._write(self.receive_path, state)

    def clear(self) -> bool:
        """Delete both state files."""
        try:
            self.share_path.unlink(missing_ok=True)
            self.receive_path.unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.error(f"Failed to clear transfer state: {e}")
            return False


def _validate_items(model, raw_items: list) -> list:
    items = []
    for raw in raw_items:
        try:
            items.append(model.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {model.__name__} entry: {e}")
    return items
