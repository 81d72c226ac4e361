"""
兑换码存储 - 持久化边界

每次变更后整体重写快照，不做增量更新：
- JsonFileCodeStore: 本地 JSON 文件（默认，兼容 discountCodes.json 格式）
- SqlCodeStore: SQLAlchemy 表
- MemoryCodeStore: 仅内存，用于测试和临时运行
"""
import asyncio
import codecs
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from discount_app.database import Base, create_engine, create_sessionmaker, init_db
from discount_app.exceptions import CodeStoreError
from discount_app.models.discount_code import DiscountCode
from discount_app.schemas.discount_code import DiscountCodeRecord, dump_records, load_records

logger = logging.getLogger(__name__)


class CodeStore:
    """存储接口：load 返回全部记录，save 整体覆盖"""

    async def load(self) -> List[DiscountCodeRecord]:
        raise NotImplementedError

    async def save(self, records: List[DiscountCodeRecord]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCodeStore(CodeStore):
    def __init__(self, records: Optional[List[DiscountCodeRecord]] = None):
        self._records = [r.model_copy() for r in records or []]
        self.save_count = 0

    @property
    def records(self) -> List[DiscountCodeRecord]:
        return [r.model_copy() for r in self._records]

    async def load(self) -> List[DiscountCodeRecord]:
        return self.records

    async def save(self, records: List[DiscountCodeRecord]) -> None:
        self._records = [r.model_copy() for r in records]
        self.save_count += 1


class JsonFileCodeStore(CodeStore):
    """
    JSON 文件存储

    文件不存在、为空或内容无效时视为空集合（会丢失原有数据，记录警告）。
    写入先落到同目录临时文件再 os.replace，避免写一半的文件。
    """

    def __init__(self, path: Union[str, os.PathLike]):
        self.path = Path(path)

    async def load(self) -> List[DiscountCodeRecord]:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, records: List[DiscountCodeRecord]) -> None:
        payload = dump_records(records)
        try:
            await asyncio.to_thread(self._write_sync, payload)
        except OSError as exc:
            raise CodeStoreError(f"写入兑换码文件失败: {self.path}: {exc}") from exc

    def _load_sync(self) -> List[DiscountCodeRecord]:
        if not self.path.exists():
            logger.info("兑换码文件不存在，使用空集合: %s", self.path)
            return []

        # 兼容带 BOM 的 UTF-8 文件
        raw = self.path.read_bytes().removeprefix(codecs.BOM_UTF8)
        if not raw.strip():
            return []

        try:
            return load_records(raw)
        except ValidationError as exc:
            logger.warning("兑换码文件格式无效，按空集合处理: %s (%s)", self.path, exc.error_count())
            return []

    def _write_sync(self, payload: bytes) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


class SqlCodeStore(CodeStore):
    """
    SQLAlchemy 存储，save 在一个事务内清空并重写整张表

    数据库损坏或表结构不兼容时 load 返回空集合，下一次 save 会重建兑换码表。
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        if engine is None:
            if not database_url:
                raise ValueError("database_url 或 engine 必须提供一个")
            engine = create_engine(database_url)
        self.engine = engine
        self._sessionmaker = create_sessionmaker(engine)
        self._initialized = False
        self._needs_rebuild = False

    async def _ensure_schema(self) -> None:
        if not self._initialized:
            await init_db(self.engine)
            self._initialized = True

    async def load(self) -> List[DiscountCodeRecord]:
        try:
            await self._ensure_schema()
            async with self._sessionmaker() as session:
                result = await session.execute(select(DiscountCode).order_by(DiscountCode.position))
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            logger.warning("兑换码表无法读取，按空集合处理: %s", exc)
            self._needs_rebuild = True
            return []
        return [DiscountCodeRecord(code=row.code, is_used=row.is_used) for row in rows]

    async def save(self, records: List[DiscountCodeRecord]) -> None:
        try:
            if self._needs_rebuild:
                await self._rebuild_table()
            await self._ensure_schema()
            async with self._sessionmaker() as session:
                async with session.begin():
                    await session.execute(delete(DiscountCode))
                    session.add_all(
                        DiscountCode(code=r.code, is_used=r.is_used, position=i)
                        for i, r in enumerate(records)
                    )
        except SQLAlchemyError as exc:
            raise CodeStoreError(f"写入兑换码表失败: {exc}") from exc

    async def _rebuild_table(self) -> None:
        table = DiscountCode.__table__
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all, tables=[table])
            await conn.run_sync(Base.metadata.create_all, tables=[table])
        self._needs_rebuild = False
        self._initialized = True
        logger.warning("兑换码表已重建")

    async def close(self) -> None:
        await self.engine.dispose()


def build_code_store(settings) -> CodeStore:
    """根据配置创建存储"""
    if settings.store_backend == "json":
        return JsonFileCodeStore(settings.codes_file)
    if settings.store_backend == "sql":
        return SqlCodeStore(settings.database_url)
    if settings.store_backend == "memory":
        return MemoryCodeStore()
    raise ValueError(f"未知的存储类型: {settings.store_backend}")
