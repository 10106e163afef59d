from pathlib import Path

import pytest

from kestrel.assets.settings import AssetServerSettings


def test_defaults():
    settings = AssetServerSettings()

    assert settings.asset_root == Path("assets")
    assert settings.max_workers == 2
    assert not settings.partial_dependencies
    assert settings.persist_metadata
    assert settings.meta_root is None


def test_from_env_reads_overrides():
    settings = AssetServerSettings.from_env(
        {
            "KESTREL_ASSET_ROOT": "/srv/assets",
            "KESTREL_IMPORT_ROOT": "/srv/imported",
            "KESTREL_ASSET_WORKERS": "4",
            "KESTREL_PARTIAL_DEPENDENCIES": "yes",
            "KESTREL_PERSIST_METADATA": "0",
            "KESTREL_WATCH_ASSETS": "true",
        }
    )

    assert settings.asset_root == Path("/srv/assets")
    assert settings.import_root == Path("/srv/imported")
    assert settings.meta_root is None
    assert settings.max_workers == 4
    assert settings.partial_dependencies
    assert not settings.persist_metadata
    assert settings.watch_for_changes


def test_from_env_blank_values_fall_back():
    settings = AssetServerSettings.from_env(
        {"KESTREL_ASSET_WORKERS": " ", "KESTREL_PERSIST_METADATA": ""}
    )

    assert settings == AssetServerSettings()


def test_worker_count_must_be_positive():
    with pytest.raises(ValueError):
        AssetServerSettings(max_workers=0)
    with pytest.raises(ValueError):
        AssetServerSettings.from_env({"KESTREL_ASSET_WORKERS": "0"})
