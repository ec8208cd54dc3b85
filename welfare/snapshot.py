from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import ValidationError

from .models import StoreState

logger = structlog.get_logger("welfare.snapshot")


class JsonSnapshot:
    """
    Local key-value slot for the durable part of the store.

    Writes are whole-file replacements; there is no journal, so a crash
    mid-write loses at most the last snapshot.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def save(self, state: StoreState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    def load(self) -> Optional[StoreState]:
        if not self.path.exists():
            return None
        try:
            return StoreState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.warning("snapshot_unreadable", path=str(self.path), errors=e.error_count())
            return None
