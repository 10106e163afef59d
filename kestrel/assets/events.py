# kestrel/assets/events.py
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

from kestrel.assets.errors import AssetError
from kestrel.assets.handle import AssetId
from kestrel.assets.path import AssetPath
from kestrel.core.events import Event


class AssetEventKind(Enum):
    ADDED = auto()
    MODIFIED = auto()
    REMOVED = auto()


@dataclass(frozen=True)
class AssetEvent(Event):
    kind: AssetEventKind
    asset_id: AssetId
    asset_type: Optional[type] = None


@dataclass(frozen=True)
class AssetLoadFailed(Event):
    path: AssetPath
    asset_id: Optional[AssetId]
    error: AssetError
