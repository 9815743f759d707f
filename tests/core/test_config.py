import os

import pytest
from pydantic import ValidationError

from pgupsert.core import config as config_module
from pgupsert.core.config import DatabaseConfig, load_config, load_env_if_present


def test_defaults():
    cfg = DatabaseConfig()
    assert cfg.host == "localhost"
    assert cfg.port == 5432
    assert cfg.sslmode == "prefer"
    assert cfg.log_level == "error"


def test_from_yaml_with_database_section(tmp_path):
    path = tmp_path / "db.yaml"
    path.write_text(
        "database:\n"
        "  user: loader\n"
        "  password: s3cret\n"
        "  host: db.internal\n"
        "  port: 6432\n"
        "  dbname: metrics\n"
        "  sslmode: require\n"
        "  logLevel: WARN\n"
    )
    cfg = DatabaseConfig.from_yaml(path)
    assert cfg.user == "loader"
    assert cfg.port == 6432
    assert cfg.sslmode == "require"
    assert cfg.log_level == "warn"


def test_from_yaml_flat_document(tmp_path):
    path = tmp_path / "db.yaml"
    path.write_text("host: pg\ndbname: app\n")
    cfg = load_config(path)
    assert cfg.host == "pg"
    assert cfg.dbname == "app"


def test_from_yaml_rejects_non_mapping(tmp_path):
    path = tmp_path / "db.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        DatabaseConfig.from_yaml(path)


def test_invalid_values():
    with pytest.raises(ValidationError):
        DatabaseConfig(port=70000)
    with pytest.raises(ValidationError):
        DatabaseConfig(sslmode="sometimes")
    with pytest.raises(ValidationError):
        DatabaseConfig(host="  ")
    with pytest.raises(ValidationError):
        DatabaseConfig(pool_min_size=5, pool_max_size=2)


def test_conninfo_and_safe_dict():
    cfg = DatabaseConfig(user="u", password="pw", host="h", port=5433, dbname="d", sslmode="disable")
    conninfo = cfg.conninfo
    for part in ("user=u", "password=pw", "host=h", "port=5433", "dbname=d", "sslmode=disable"):
        assert part in conninfo
    assert cfg.safe_dict()["password"] == "**"
    assert "pw" not in repr(cfg)


def test_from_env_prefers_pgupsert_names():
    env = {
        "POSTGRES_HOST": "fallback",
        "PGUPSERT_HOST": "primary",
        "POSTGRES_PORT": "5555",
        "POSTGRES_DB": "warehouse",
        "PGUPSERT_POOL_MAX_SIZE": "4",
        "PGUPSERT_LOG_LEVEL": " ",
    }
    cfg = DatabaseConfig.from_env(env)
    assert cfg.host == "primary"
    assert cfg.port == 5555
    assert cfg.dbname == "warehouse"
    assert cfg.pool_max_size == 4
    assert cfg.log_level == "error"


def test_load_env_file(tmp_path, monkeypatch):
    env_file = tmp_path / "custom.env"
    env_file.write_text(
        "# comment\n"
        "export PGUPSERT_TEST_A=\"quoted\"\n"
        "PGUPSERT_TEST_B=plain\n"
        "PGUPSERT_TEST_KEEP=from-file\n"
    )
    monkeypatch.setenv("PGUPSERT_ENV_FILE", str(env_file))
    monkeypatch.setenv("PGUPSERT_TEST_KEEP", "from-env")
    monkeypatch.delenv("PGUPSERT_TEST_A", raising=False)
    monkeypatch.delenv("PGUPSERT_TEST_B", raising=False)
    monkeypatch.setattr(config_module, "_ENV_LOADED", False)

    load_env_if_present()

    assert os.environ["PGUPSERT_TEST_A"] == "quoted"
    assert os.environ["PGUPSERT_TEST_B"] == "plain"
    assert os.environ["PGUPSERT_TEST_KEEP"] == "from-env"
