# kestrel/assets/state.py
from enum import Enum, auto


class LoadState(Enum):
    REQUESTED = auto()
    READING = auto()
    PARSING = auto()
    WAITING_ON_DEPENDENCIES = auto()
    LOADED = auto()
    FAILED = auto()
    UNLOADED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (LoadState.LOADED, LoadState.FAILED, LoadState.UNLOADED)

    @property
    def is_loading(self) -> bool:
        """Reading or parsing, i.e. the ``Loading`` phase."""
        return self in (LoadState.READING, LoadState.PARSING)

    @property
    def progress(self) -> int:
        # Used to pick the least advanced state of a group.
        return _PROGRESS[self]


_PROGRESS = {
    LoadState.REQUESTED: 0,
    LoadState.READING: 1,
    LoadState.PARSING: 2,
    LoadState.WAITING_ON_DEPENDENCIES: 3,
    LoadState.LOADED: 4,
    LoadState.FAILED: 4,
    LoadState.UNLOADED: 4,
}
