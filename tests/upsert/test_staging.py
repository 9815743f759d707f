import psycopg
import pytest

from pgupsert.core.errors import ErrorKind, SchemaError
from pgupsert.upsert.staging import (
    MAX_IDENTIFIER_LENGTH,
    create_staging_table,
    split_table_name,
    staging_table_name,
    table_identifier,
)


def test_staging_table_name_is_unique_and_sanitized():
    first = staging_table_name("Public.Sensor-Readings")
    second = staging_table_name("Public.Sensor-Readings")
    assert first != second
    assert first.startswith("temp_sensor_readings_")
    assert len(first) == len("temp_sensor_readings_") + 32


def test_staging_table_name_fits_identifier_limit():
    name = staging_table_name("x" * 200)
    assert len(name.encode()) <= MAX_IDENTIFIER_LENGTH
    assert name.startswith("temp_xxx")


def test_split_table_name():
    assert split_table_name("metrics") == ("metrics",)
    assert split_table_name('analytics."Metrics"') == ("analytics", "Metrics")
    with pytest.raises(ValueError):
        split_table_name("a.b.c")
    with pytest.raises(ValueError):
        split_table_name("schema.")


def test_table_identifier_quotes_each_part():
    assert table_identifier("analytics.metrics").as_string(None) == '"analytics"."metrics"'


@pytest.mark.asyncio
async def test_create_staging_table(fake_conn):
    staging = await create_staging_table(fake_conn, "metrics", ["id", "val"])

    ddl = fake_conn.statements()[0]
    assert ddl == (
        f'CREATE TEMPORARY TABLE "{staging.name}" ON COMMIT DROP AS TABLE "metrics" WITH NO DATA'
    )
    assert fake_conn.executed[1][1] == (staging.name,)
    assert staging.target == "metrics"
    assert staging.column_types == {"id": "int4", "val": "text"}
    assert staging.types_for(["val", "id"]) == ("text", "int4")


@pytest.mark.asyncio
async def test_create_staging_table_missing_target(fake_conn):
    fake_conn.fail_on["CREATE TEMPORARY TABLE"] = psycopg.errors.UndefinedTable('relation "nope" does not exist')

    with pytest.raises(SchemaError) as exc:
        await create_staging_table(fake_conn, "nope", ["id"])

    assert exc.value.sqlstate == "42P01"
    assert exc.value.info.kind is ErrorKind.SCHEMA
    assert exc.value.stage == "staging"


@pytest.mark.asyncio
async def test_create_staging_table_unknown_column(fake_conn):
    with pytest.raises(SchemaError, match="colour"):
        await create_staging_table(fake_conn, "metrics", ["id", "colour"])
