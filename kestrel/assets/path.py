# kestrel/assets/path.py
from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import NewType, Optional

SourceId = NewType("SourceId", str)

DEFAULT_SOURCE = SourceId("default")

_SOURCE_SEPARATOR = "://"
_LABEL_SEPARATOR = "#"


def _normalize(path: str) -> str:
    path = path.replace("\\", "/").strip()
    if not path:
        raise ValueError("Asset path must not be empty")

    normalized = posixpath.normpath(path)
    if normalized.startswith("../") or normalized == "..":
        raise ValueError(f"Asset path escapes its source root: {path}")

    return normalized.lstrip("/")


@dataclass(frozen=True, slots=True)
class AssetPath:
    """
    Names an external source plus an optional sub-asset label.

    Equal only when source, path and label all match.
    """

    path: str
    label: Optional[str] = None
    source: SourceId = DEFAULT_SOURCE

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _normalize(self.path))
        if self.label is not None and not self.label:
            raise ValueError("Asset label must not be empty")

    @classmethod
    def parse(cls, text: str | AssetPath) -> AssetPath:
        """Parse ``source://dir/file.ext#Label``; source and label optional."""
        if isinstance(text, AssetPath):
            return text

        source = DEFAULT_SOURCE
        if _SOURCE_SEPARATOR in text:
            prefix, text = text.split(_SOURCE_SEPARATOR, 1)
            source = SourceId(prefix)

        label: Optional[str] = None
        if _LABEL_SEPARATOR in text:
            text, label = text.split(_LABEL_SEPARATOR, 1)

        return cls(path=text, label=label or None, source=source)

    @property
    def extension(self) -> str:
        """Lower-cased extension including the dot, e.g. ``.png``."""
        return posixpath.splitext(self.path)[1].lower()

    @property
    def parent(self) -> str:
        return posixpath.dirname(self.path)

    def without_label(self) -> AssetPath:
        if self.label is None:
            return self
        return AssetPath(self.path, None, self.source)

    def with_label(self, label: Optional[str]) -> AssetPath:
        return AssetPath(self.path, label, self.source)

    def resolve(self, relative: str | AssetPath) -> AssetPath:
        """
        Resolve a dependency reference found inside this source.

        ``#Label`` alone names a sibling sub-asset, paths starting with ``/``
        are rooted at the source, anything else is relative to this file.
        """
        if isinstance(relative, AssetPath):
            return relative
        if _SOURCE_SEPARATOR in relative:
            return AssetPath.parse(relative)
        if relative.startswith(_LABEL_SEPARATOR):
            return self.with_label(relative[1:])

        text, _, label = relative.partition(_LABEL_SEPARATOR)
        if not text.startswith("/"):
            # Join before normalizing so ``../`` may climb out of this file's folder.
            text = posixpath.join(self.parent, text)
        return AssetPath(text, label or None, self.source)

    def __str__(self) -> str:
        text = self.path
        if self.source != DEFAULT_SOURCE:
            text = f"{self.source}{_SOURCE_SEPARATOR}{text}"
        if self.label is not None:
            text = f"{text}{_LABEL_SEPARATOR}{self.label}"
        return text
