"""
basketbot Infrastructure: State Store

File-backed JSON persistence with atomic writes for the removal ledger and the
trailing-stop bookkeeping. A missing or unreadable file is treated as a first
run and yields the caller's defaults.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)

REMOVAL_LIST_FILE = "CoinRemovalList.json"
PORTFOLIO_ATH_FILE = "PortfolioATH.json"


class StateStore:
    """
    One JSON document on disk.

    Features:
    - Atomic writes (temp file + rename)
    - Defaults synthesised when the file is absent or corrupt
    """

    def __init__(self, state_file: Union[str, Path], default_factory: Callable[[], Any]):
        """
        Initialize state store.

        Args:
            state_file: Path to the JSON document
            default_factory: Builds the value returned when nothing usable is on disk
        """
        self.state_file = Path(state_file)
        self._default_factory = default_factory
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Any:
        """
        Load the document.

        Returns:
            Parsed JSON, or the default when missing/corrupt
        """
        if not self.state_file.exists():
            logger.debug(f"No state file at {self.state_file}, using defaults")
            return self._default_factory()

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load {self.state_file}, using defaults: {e}")
            return self._default_factory()

    def save(self, value: Any) -> bool:
        """
        Save the document atomically.

        Returns:
            True when the file was replaced
        """
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=f".{self.state_file.stem}_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2)

            os.replace(temp_path, self.state_file)
            logger.debug(f"Saved {self.state_file}")
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save {self.state_file}: {e}")
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            return False


def removal_list_store(data_dir: Union[str, Path]) -> StateStore:
    return StateStore(Path(data_dir) / REMOVAL_LIST_FILE, default_factory=list)


def portfolio_ath_store(data_dir: Union[str, Path]) -> StateStore:
    return StateStore(Path(data_dir) / PORTFOLIO_ATH_FILE, default_factory=dict)
