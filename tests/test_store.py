from __future__ import annotations

import math
import time
from datetime import datetime, timedelta, timezone
from types import MappingProxyType

import orjson
import pytest

from conftest import FatalError, NonFatalError, RecordingPool, ScriptedPool
from sessionvault.db.base import QueryResult
from sessionvault.errors import DecodeError, EnvelopeError, RetriesExhausted
from sessionvault.settings import StoreOptions
from sessionvault.store import SessionStore, expires_seconds, serialize_record

UPSERT = (
    "INSERT INTO `{table}` (`sid`, `session`, `expires`) VALUES (%s, %s, %s) "
    "ON DUPLICATE KEY UPDATE `session` = %s, `expires` = %s"
)
SELECT = "SELECT `session` FROM `{table}` WHERE `sid` = %s"


def _future_ms() -> int:
    return int(time.time() * 1000) + 60 * 60 * 1000


def _store(pool, **options) -> SessionStore:
    options.setdefault("cleanup", False)
    return SessionStore(pool, StoreOptions(**options))


@pytest.mark.asyncio
async def test_set_and_get(recording_pool: RecordingPool) -> None:
    expires = _future_ms()
    record = {"cookie": {"expires": expires}}
    expected_session = orjson.dumps(record).decode("utf-8")
    expected_expires = math.floor(expires / 1000 + 0.5)
    store = _store(recording_pool, retries=0, table="custom_sessions")

    await store.set("sid", record)
    session = await store.get("sid")

    assert session == record
    assert recording_pool.calls == [
        {
            "sql": UPSERT.format(table="custom_sessions"),
            "values": [
                "sid",
                expected_session,
                expected_expires,
                expected_session,
                expected_expires,
            ],
        },
        {"sql": SELECT.format(table="custom_sessions"), "values": ["sid"]},
    ]


@pytest.mark.asyncio
async def test_set_and_get_encrypted(recording_pool: RecordingPool) -> None:
    expires = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(hours=1)
    store = _store(recording_pool, retries=0, secret="foo")

    await store.set("sid", {"cookie": {"expires": expires}})
    session = await store.get("sid")

    assert session == {"cookie": {"expires": expires.isoformat()}}

    stored = recording_pool.rows["sid"]["session"]
    with pytest.raises(orjson.JSONDecodeError):
        orjson.loads(stored)
    assert recording_pool.rows["sid"]["expires"] == int(expires.timestamp())

    insert = recording_pool.calls[0]
    assert insert["sql"] == UPSERT.format(table="sessions")
    assert insert["values"] == [
        "sid",
        stored,
        int(expires.timestamp()),
        stored,
        int(expires.timestamp()),
    ]


@pytest.mark.asyncio
async def test_get_without_prior_set_is_absent(recording_pool: RecordingPool) -> None:
    store = _store(recording_pool)

    assert await store.get("missing") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [None, "", b""])
async def test_empty_session_column_is_absent(value) -> None:
    pool = ScriptedPool(QueryResult(rows=[{"session": value}], rowcount=1))
    store = _store(pool)

    assert await store.get("sid") is None


@pytest.mark.asyncio
async def test_bytes_column_is_decoded() -> None:
    pool = ScriptedPool(QueryResult(rows=[{"session": b'{"a": 1}'}], rowcount=1))
    store = _store(pool)

    assert await store.get("sid") == {"a": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["not json", "[1, 2]", b"\xff\xfe"])
async def test_undecodable_plaintext_session(value) -> None:
    pool = ScriptedPool(QueryResult(rows=[{"session": value}], rowcount=1))
    store = _store(pool)

    with pytest.raises(DecodeError):
        await store.get("sid")


@pytest.mark.asyncio
async def test_tampered_session_is_an_error_not_absence(
    recording_pool: RecordingPool,
) -> None:
    store = _store(recording_pool, secret="foo")
    await store.set("sid", {"cookie": {"expires": _future_ms()}})

    stored = recording_pool.rows["sid"]["session"]
    packed = bytearray(bytes.fromhex(stored))
    packed[-1] ^= 0x01
    recording_pool.rows["sid"]["session"] = packed.hex()

    with pytest.raises(EnvelopeError):
        await store.get("sid")


@pytest.mark.asyncio
async def test_plaintext_row_read_with_secret_is_rejected(
    recording_pool: RecordingPool,
) -> None:
    await _store(recording_pool).set("sid", {"cookie": {}})

    with pytest.raises(EnvelopeError):
        await _store(recording_pool, secret="foo").get("sid")


@pytest.mark.asyncio
async def test_destroy(recording_pool: RecordingPool) -> None:
    store = _store(recording_pool)
    await store.set("sid", {"cookie": {}})

    await store.destroy("sid")

    assert await store.get("sid") is None
    assert recording_pool.calls[1] == {
        "sql": "DELETE FROM `sessions` WHERE `sid` = %s",
        "values": ["sid"],
    }


@pytest.mark.asyncio
async def test_set_retries_fatal_errors() -> None:
    pool = ScriptedPool(FatalError("gone"), QueryResult(rowcount=1))
    store = _store(pool, retries=1)

    await store.set("sid", {"cookie": {}})

    assert len(pool.calls) == 2
    assert pool.calls[0] == pool.calls[1]


@pytest.mark.asyncio
async def test_get_gives_up_after_retries() -> None:
    pool = ScriptedPool(FatalError("gone"))
    store = _store(pool, retries=2)

    with pytest.raises(RetriesExhausted):
        await store.get("sid")
    assert len(pool.calls) == 3


@pytest.mark.asyncio
async def test_permanent_errors_reach_the_caller() -> None:
    error = NonFatalError("constraint")
    pool = ScriptedPool(error)
    store = _store(pool, retries=3)

    with pytest.raises(NonFatalError) as excinfo:
        await store.destroy("sid")
    assert excinfo.value is error
    assert len(pool.calls) == 1


@pytest.mark.asyncio
async def test_query_is_public() -> None:
    expected = QueryResult(rows=[{"n": 1}], rowcount=1)
    pool = ScriptedPool(expected)
    store = _store(pool)

    assert await store.query("SELECT 1 AS n") is expected
    assert pool.calls == [("SELECT 1 AS n", None)]


def test_dialect_follows_pool_then_defaults_to_mysql() -> None:
    assert "?" in _store(ScriptedPool(dialect="sqlite")).statements.select
    assert "%s" in _store(ScriptedPool()).statements.select
    explicit = _store(ScriptedPool(dialect="sqlite"), dialect="mysql")
    assert "%s" in explicit.statements.select


@pytest.mark.parametrize(
    "record, expected",
    [
        ({"cookie": {"expires": 1_500}}, 2),
        ({"cookie": {"expires": 2_500}}, 3),
        ({"cookie": {"expires": 2_499.9}}, 2),
        ({"cookie": {"expires": "2030-01-01T00:00:00Z"}}, 1893456000),
        ({"cookie": {"expires": "2030-01-01T01:00:00+01:00"}}, 1893456000),
        ({"cookie": {"expires": datetime(2030, 1, 1)}}, 1893456000),
        (
            {"cookie": {"expires": datetime(2030, 1, 1, 0, 0, 0, 600_000, timezone.utc)}},
            1893456001,
        ),
        ({"cookie": {"expires": None}}, 0),
        ({"cookie": {}}, 0),
        ({}, 0),
    ],
)
def test_expires_seconds(record, expected: int) -> None:
    assert expires_seconds(record) == expected


@pytest.mark.parametrize(
    "value", ["tomorrow", True, ["x"], float("inf"), float("-inf"), float("nan")]
)
def test_expires_seconds_rejects_garbage(value) -> None:
    with pytest.raises(ValueError):
        expires_seconds({"cookie": {"expires": value}})


@pytest.mark.asyncio
@pytest.mark.parametrize("secret", [None, "foo"])
async def test_set_accepts_non_dict_mappings(
    recording_pool: RecordingPool, secret: str | None
) -> None:
    record = MappingProxyType(
        {"cookie": MappingProxyType({"expires": 1_000}), "user": {"id": 7}}
    )
    store = _store(recording_pool, secret=secret)

    await store.set("sid", record)

    assert await store.get("sid") == {"cookie": {"expires": 1_000}, "user": {"id": 7}}
    assert recording_pool.rows["sid"]["expires"] == 1


def test_serialize_record_still_rejects_unknown_types() -> None:
    with pytest.raises(TypeError):
        serialize_record({"cookie": {}, "blob": object()})
