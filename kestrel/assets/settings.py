# kestrel/assets/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

_TRUE = {"1", "true", "yes", "on"}


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE


def _optional_path(value: Optional[str]) -> Optional[Path]:
    if value is None or not value.strip():
        return None
    return Path(value)


@dataclass(frozen=True, slots=True)
class AssetServerSettings:
    asset_root: Path = Path("assets")
    # Where ``.meta`` records go; None keeps them next to the sources.
    meta_root: Optional[Path] = None
    # Where derived artifacts are written; None disables writing them.
    import_root: Optional[Path] = None
    max_workers: int = 2
    partial_dependencies: bool = False
    persist_metadata: bool = True
    watch_for_changes: bool = False
    register_default_loaders: bool = True

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> AssetServerSettings:
        env = os.environ if environ is None else environ
        defaults = cls()
        workers = env.get("KESTREL_ASSET_WORKERS", "").strip()
        return cls(
            asset_root=Path(env.get("KESTREL_ASSET_ROOT") or defaults.asset_root),
            meta_root=_optional_path(env.get("KESTREL_META_ROOT")),
            import_root=_optional_path(env.get("KESTREL_IMPORT_ROOT")),
            max_workers=int(workers) if workers else defaults.max_workers,
            partial_dependencies=_flag(
                env.get("KESTREL_PARTIAL_DEPENDENCIES"), defaults.partial_dependencies
            ),
            persist_metadata=_flag(env.get("KESTREL_PERSIST_METADATA"), defaults.persist_metadata),
            watch_for_changes=_flag(env.get("KESTREL_WATCH_ASSETS"), defaults.watch_for_changes),
        )
