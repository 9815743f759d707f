import json

import pytest
from typer.testing import CliRunner

from pgupsert import cli
from pgupsert.core.errors import MergeError
from pgupsert.upsert.orchestrator import UpsertResult, UpsertState


runner = CliRunner()


class _FakeDatabasePool:
    instances = []

    def __init__(self, config, name="pgupsert"):
        self.config = config
        self.name = name
        self.ping_result = True
        _FakeDatabasePool.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def ping(self):
        return self.ping_result


@pytest.fixture(autouse=True)
def fake_database(monkeypatch, tmp_path):
    _FakeDatabasePool.instances = []
    monkeypatch.setattr(cli, "DatabasePool", _FakeDatabasePool)
    config_path = tmp_path / "db.yaml"
    config_path.write_text("database:\n  host: pg\n  dbname: metrics\n")
    return config_path


def test_ping(fake_database):
    result = runner.invoke(cli.app, ["ping", "--config", str(fake_database)])

    assert result.exit_code == 0
    assert "OK pg:5432/metrics" in result.stdout
    assert _FakeDatabasePool.instances[0].config.host == "pg"


def test_ping_bad_config(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("port: not-a-port\n")

    result = runner.invoke(cli.app, ["ping", "--config", str(path)])

    assert result.exit_code == 2


def test_fetch_prints_json(fake_database, monkeypatch):
    calls = {}

    async def _fetch(pool, query, params=None, timeout=None):
        calls["query"] = query
        calls["timeout"] = timeout
        return [{"id": 1, "amount": 2.5}]

    monkeypatch.setattr(cli, "fetch_records", _fetch)

    result = runner.invoke(cli.app, ["fetch", "--config", str(fake_database), "--timeout", "3", "SELECT 1"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == [{"id": 1, "amount": 2.5}]
    assert calls == {"query": "SELECT 1", "timeout": 3.0}


def test_load_json_lines(fake_database, monkeypatch, tmp_path):
    records_file = tmp_path / "records.jsonl"
    records_file.write_text('{"id": 1, "val": "a"}\n\n{"id": 2, "val": "b"}\n')
    calls = {}

    async def _upsert(pool, records, table, primary_key, timeout, options=None):
        calls.update(records=records, table=table, primary_key=primary_key, timeout=timeout, options=options)
        return UpsertResult(
            table=table,
            columns=("id", "val"),
            primary_key=("id",),
            state=UpsertState.COMMITTED,
            rows_received=2,
            rows_loaded=2,
            rows_merged=2,
        )

    monkeypatch.setattr(cli, "bulk_upsert", _upsert)

    result = runner.invoke(
        cli.app,
        [
            "load", str(records_file),
            "--config", str(fake_database),
            "--table", "metrics",
            "--key", "id",
            "--timeout", "12",
            "--duplicates", "first",
        ],
    )

    assert result.exit_code == 0
    output = json.loads(result.stdout)
    assert output["state"] == "committed"
    assert output["rows_merged"] == 2
    assert calls["records"] == [{"id": 1, "val": "a"}, {"id": 2, "val": "b"}]
    assert list(calls["primary_key"]) == ["id"]
    assert calls["timeout"] == 12.0
    assert calls["options"].key_conflicts.value == "first"


def test_load_failure_exits_non_zero(fake_database, monkeypatch, tmp_path):
    records_file = tmp_path / "records.json"
    records_file.write_text('[{"id": 1, "val": "a"}]')

    async def _upsert(pool, records, table, primary_key, timeout, options=None):
        raise MergeError("merge into metrics failed")

    monkeypatch.setattr(cli, "bulk_upsert", _upsert)

    result = runner.invoke(
        cli.app, ["load", str(records_file), "--config", str(fake_database), "--table", "metrics", "--key", "id"]
    )

    assert result.exit_code == 1


def test_read_records(tmp_path):
    array_file = tmp_path / "a.json"
    array_file.write_text('  [{"id": 1}, {"id": 2}]')
    assert cli.read_records(array_file) == [{"id": 1}, {"id": 2}]

    empty_file = tmp_path / "empty.json"
    empty_file.write_text("\n")
    assert cli.read_records(empty_file) == []

    bad_file = tmp_path / "bad.json"
    bad_file.write_text("[1, 2]")
    with pytest.raises(ValueError):
        cli.read_records(bad_file)
