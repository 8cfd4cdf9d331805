from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

STATE_DIR_NAME = ".steward"


@dataclass(frozen=True, slots=True)
class RuntimePaths:
    project_root: Path
    state_dir: Path

    @property
    def chats_dir(self) -> Path:
        return self.state_dir / "chats"

    @property
    def events_dir(self) -> Path:
        return self.state_dir / "events"

    @property
    def chats_index(self) -> Path:
        return self.state_dir / "chats.json"

    def chat_path(self, chat_id: str) -> Path:
        return self.chats_dir / f"{chat_id}.json"

    def event_log_path(self, chat_id: str) -> Path:
        return self.events_dir / f"{chat_id}.jsonl"

    @staticmethod
    def for_project(project_root: Path, *, state_dir: str | Path | None = None) -> "RuntimePaths":
        root = Path(project_root).expanduser().resolve()
        if state_dir is None:
            resolved_state = root / STATE_DIR_NAME
        else:
            candidate = Path(state_dir).expanduser()
            resolved_state = candidate if candidate.is_absolute() else root / candidate
        return RuntimePaths(project_root=root, state_dir=resolved_state.resolve())

    @staticmethod
    def discover(start: Path | None = None) -> "RuntimePaths":
        """Walk up from `start` (default: cwd) to the nearest directory holding a state dir."""

        here = Path(start or Path.cwd()).expanduser().resolve()
        for candidate in [here, *here.parents]:
            if (candidate / STATE_DIR_NAME).is_dir():
                return RuntimePaths.for_project(candidate)
        raise FileNotFoundError(f"No {STATE_DIR_NAME}/ directory found from {here} upwards.")
