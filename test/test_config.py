from pathlib import Path
from typing import Any

import pytest
import yaml

from s3portal.storage.models import StoreConfig
from s3portal.storage.registry import StoreRegistry
from s3portal.utils.config import LEGACY_STORE_NAME, ConfigManager, PortalConfig, load_config

LEGACY_ENV = ("AWS_REGION", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_ENDPOINT")


@pytest.fixture(autouse=True)
def clear_aws_env(monkeypatch: Any) -> None:
    for key in LEGACY_ENV:
        monkeypatch.delenv(key, raising=False)


def write_yaml(path: Path, data: Any) -> Path:
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)
    return path


def test_missing_file_gives_empty_config(temp_dir: Path) -> None:
    config = load_config(temp_dir / "absent.yaml")
    assert config.regions == []
    assert config.effective_stores() == []


def test_regions_are_loaded(temp_dir: Path) -> None:
    path = write_yaml(
        temp_dir / "config.yaml",
        {
            "regions": [
                {"name": "minio", "region": "us-east-1", "access_key": "a", "secret_key": "b", "endpoint": "http://m:9000"},
                {"name": "aws", "region": "eu-west-1", "access_key": "c", "secret_key": "d", "endpoint": ""},
            ]
        },
    )

    stores = load_config(path).effective_stores()

    assert [store.name for store in stores] == ["minio", "aws"]
    assert stores[1].endpoint is None, "Empty endpoints should be treated as unset"


def test_legacy_block_becomes_default_store(temp_dir: Path) -> None:
    path = write_yaml(
        temp_dir / "config.yaml",
        {"aws": {"region": "eu-central-1", "access_key": "legacy-key", "secret_key": "legacy-secret"}},
    )

    stores = load_config(path).effective_stores()

    assert len(stores) == 1
    assert stores[0].name == LEGACY_STORE_NAME
    assert stores[0].region == "eu-central-1"


def test_legacy_store_listed_before_regions(temp_dir: Path) -> None:
    path = write_yaml(
        temp_dir / "config.yaml",
        {
            "regions": [{"name": "minio", "region": "us-east-1", "access_key": "a", "secret_key": "b"}],
            "aws": {"region": "eu-central-1", "access_key": "legacy-key", "secret_key": "legacy-secret"},
        },
    )

    assert [store.name for store in load_config(path).effective_stores()] == [LEGACY_STORE_NAME, "minio"]


def test_region_named_default_shadows_legacy_block(temp_dir: Path) -> None:
    path = write_yaml(
        temp_dir / "config.yaml",
        {
            "regions": [{"name": LEGACY_STORE_NAME, "region": "us-west-2", "access_key": "a", "secret_key": "b"}],
            "aws": {"region": "eu-central-1", "access_key": "legacy-key", "secret_key": "legacy-secret"},
        },
    )

    stores = load_config(path).effective_stores()

    assert len(stores) == 1
    assert stores[0].region == "us-west-2"


def test_env_overrides_legacy_block(temp_dir: Path, monkeypatch: Any) -> None:
    path = write_yaml(temp_dir / "config.yaml", {"aws": {"region": "eu-central-1", "access_key": "file-key"}})
    monkeypatch.setenv("AWS_REGION", "ap-southeast-2")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "env-secret")
    monkeypatch.setenv("AWS_ENDPOINT", "https://storage.example.com")

    stores = load_config(path).effective_stores()

    assert len(stores) == 1
    assert stores[0].region == "ap-southeast-2"
    assert stores[0].access_key == "file-key"
    assert stores[0].secret_key == "env-secret"
    assert stores[0].endpoint == "https://storage.example.com"


def test_env_only_configuration(temp_dir: Path, monkeypatch: Any) -> None:
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "env-key")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "env-secret")

    stores = load_config(temp_dir / "absent.yaml").effective_stores()

    assert [store.name for store in stores] == [LEGACY_STORE_NAME]


def test_env_secrets_never_written(temp_dir: Path, monkeypatch: Any) -> None:
    path = write_yaml(temp_dir / "config.yaml", {"aws": {"region": "eu-central-1", "access_key": "file-key"}})
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "env-secret")
    manager = ConfigManager(path)
    registry = StoreRegistry.from_config_file(manager)

    registry.add(StoreConfig(name="extra", region="us-east-1", access_key="k", secret_key="s"))

    text = path.read_text(encoding="utf-8")
    assert "env-secret" not in text
    saved = yaml.safe_load(text)
    assert [entry["name"] for entry in saved["regions"]] == ["extra"], "The legacy store is not written to regions"
    assert saved["aws"] == {"region": "eu-central-1", "access_key": "file-key"}

    reloaded = StoreRegistry.from_config_file(ConfigManager(path))
    assert [store.name for store in reloaded.list()] == [LEGACY_STORE_NAME, "extra"]


def test_save_round_trip(temp_dir: Path) -> None:
    manager = ConfigManager(temp_dir / "nested" / "config.yaml")
    manager.save_config(
        PortalConfig(regions=[StoreConfig(name="minio", region="us-east-1", access_key="a", secret_key="b")])
    )

    config = ConfigManager(manager.config_path).load_config()
    assert config.regions[0].name == "minio"
    assert not manager.config_path.with_name("config.yaml.tmp").exists()


def test_invalid_yaml(temp_dir: Path) -> None:
    path = temp_dir / "config.yaml"
    path.write_text("regions: [unclosed", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid YAML"):
        load_config(path)


def test_invalid_store_definition(temp_dir: Path) -> None:
    path = write_yaml(temp_dir / "config.yaml", {"regions": [{"name": "bad", "endpoint": "ftp://nope"}]})

    with pytest.raises(ValueError, match="Invalid store configuration"):
        load_config(path)
