import codecs
import json

import pytest
from sqlalchemy import text

from discount_app.config import Settings
from discount_app.database import create_engine
from discount_app.exceptions import CodeStoreError
from discount_app.schemas.discount_code import DiscountCodeRecord
from discount_app.services.code_registry import CodeRegistry, UseCodeResult
from discount_app.services.code_store import (
    JsonFileCodeStore,
    MemoryCodeStore,
    SqlCodeStore,
    build_code_store,
)


@pytest.mark.anyio
async def test_json_store_missing_file_is_empty(tmp_path):
    store = JsonFileCodeStore(tmp_path / "missing.json")

    assert await store.load() == []


@pytest.mark.anyio
@pytest.mark.parametrize("content", ["", "   \n", "not json", '{"Code": "ABCDEFG"}', '[{"IsUsed": true}]', "[1, 2]"])
async def test_json_store_invalid_content_is_empty(tmp_path, content):
    path = tmp_path / "codes.json"
    path.write_text(content, encoding="utf-8")

    assert await JsonFileCodeStore(path).load() == []


@pytest.mark.anyio
async def test_json_store_reads_legacy_format(tmp_path):
    path = tmp_path / "discountCodes.json"
    path.write_text('[{"Code":"ABCDEFG","IsUsed":true},{"Code":"HIJKLMN","IsUsed":false}]', encoding="utf-8")

    records = await JsonFileCodeStore(path).load()

    assert records == [
        DiscountCodeRecord(code="ABCDEFG", is_used=True),
        DiscountCodeRecord(code="HIJKLMN", is_used=False),
    ]


@pytest.mark.anyio
async def test_json_store_writes_full_snapshot(tmp_path):
    path = tmp_path / "codes.json"
    store = JsonFileCodeStore(path)

    await store.save([DiscountCodeRecord(code="ABCDEFG"), DiscountCodeRecord(code="HIJKLMN", is_used=True)])
    await store.save([DiscountCodeRecord(code="ABCDEFG", is_used=True)])

    assert json.loads(path.read_text(encoding="utf-8")) == [{"Code": "ABCDEFG", "IsUsed": True}]
    # 临时文件已被替换
    assert [p.name for p in tmp_path.iterdir()] == ["codes.json"]


@pytest.mark.anyio
async def test_json_store_write_failure_raises(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = JsonFileCodeStore(blocker / "codes.json")

    with pytest.raises(CodeStoreError) as exc:
        await store.save([DiscountCodeRecord(code="ABCDEFG")])

    assert exc.value.error_code == "STORE_WRITE_FAILED"


@pytest.mark.anyio
async def test_state_survives_reload(tmp_path):
    path = tmp_path / "codes.json"
    registry = await CodeRegistry.create(JsonFileCodeStore(path))
    codes = await registry.generate(5, 7)
    assert await registry.redeem(codes[1]) == UseCodeResult.SUCCESS

    reloaded = await CodeRegistry.create(JsonFileCodeStore(path))

    assert await reloaded.count() == 5
    assert await reloaded.redeem(codes[0]) == UseCodeResult.SUCCESS
    assert await reloaded.redeem(codes[0]) == UseCodeResult.ALREADY_USED
    assert await reloaded.redeem(codes[1]) == UseCodeResult.ALREADY_USED

    more = await reloaded.generate(5, 7)
    assert not set(more) & set(codes)


@pytest.mark.anyio
async def test_sql_store_round_trip(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'codes.db'}"
    store = SqlCodeStore(url)
    try:
        assert await store.load() == []
        await store.save([DiscountCodeRecord(code="BBBBBBB"), DiscountCodeRecord(code="AAAAAAA", is_used=True)])
        await store.save([
            DiscountCodeRecord(code="BBBBBBB", is_used=True),
            DiscountCodeRecord(code="AAAAAAA", is_used=True),
            DiscountCodeRecord(code="CCCCCCC"),
        ])
    finally:
        await store.close()

    reopened = SqlCodeStore(url)
    try:
        records = await reopened.load()
    finally:
        await reopened.close()

    assert records == [
        DiscountCodeRecord(code="BBBBBBB", is_used=True),
        DiscountCodeRecord(code="AAAAAAA", is_used=True),
        DiscountCodeRecord(code="CCCCCCC"),
    ]


@pytest.mark.anyio
async def test_memory_store_copies_records():
    store = MemoryCodeStore()
    record = DiscountCodeRecord(code="ABCDEFG")

    await store.save([record])
    record.is_used = True

    assert (await store.load())[0].is_used is False


def test_build_code_store_by_backend(tmp_path):
    json_store = build_code_store(Settings(_env_file=None, store_backend="json", codes_file=str(tmp_path / "c.json")))
    memory_store = build_code_store(Settings(_env_file=None, store_backend="memory"))

    assert isinstance(json_store, JsonFileCodeStore)
    assert isinstance(memory_store, MemoryCodeStore)
    with pytest.raises(ValueError):
        build_code_store(Settings(_env_file=None, store_backend="redis"))


@pytest.mark.anyio
async def test_json_store_reads_utf8_bom(tmp_path):
    path = tmp_path / "discountCodes.json"
    path.write_bytes(codecs.BOM_UTF8 + b'[{"Code":"ABCDEFG","IsUsed":false}]')

    records = await JsonFileCodeStore(path).load()

    assert records == [DiscountCodeRecord(code="ABCDEFG")]


@pytest.mark.anyio
async def test_sql_store_corrupt_database_is_empty(tmp_path):
    path = tmp_path / "codes.db"
    path.write_bytes(b"this is definitely not a sqlite database" * 20)
    store = SqlCodeStore(f"sqlite+aiosqlite:///{path}")
    try:
        assert await store.load() == []
    finally:
        await store.close()


@pytest.mark.anyio
async def test_sql_store_legacy_table_is_empty_then_rebuilt(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'codes.db'}"
    engine = create_engine(url)
    async with engine.begin() as conn:
        await conn.execute(text("CREATE TABLE discount_codes (code VARCHAR(255) PRIMARY KEY, is_used BOOLEAN)"))
        await conn.execute(text("INSERT INTO discount_codes (code, is_used) VALUES ('ABCDEFG', 0)"))

    store = SqlCodeStore(engine=engine)
    try:
        registry = await CodeRegistry.create(store)
        assert await registry.count() == 0

        codes = await registry.generate(2, 7)
        records = await store.load()
    finally:
        await store.close()

    assert [r.code for r in records] == codes
