"""
兑换码服务 - 生成与核销的唯一入口

此服务提供：
1. 批量生成全局唯一的兑换码
2. 兑换码只能核销一次
3. 所有操作（含持久化）在同一把锁内串行执行

使用方式:
    registry = await CodeRegistry.create(JsonFileCodeStore("discountCodes.json"))
    codes = await registry.generate(5, 7)
    result = await registry.redeem(codes[0])
"""
import asyncio
import logging
import secrets
from enum import IntEnum
from typing import Dict, List, Optional

from discount_app.exceptions import CodeStoreError
from discount_app.schemas.discount_code import DiscountCodeRecord
from discount_app.services.code_store import CodeStore

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


class UseCodeResult(IntEnum):
    """核销结果，取值即响应字节"""
    SUCCESS = 0
    CODE_NOT_FOUND = 1
    ALREADY_USED = 2


def generate_discount_code(length: int) -> str:
    """
    生成随机兑换码

    每个字符取一个 CSPRNG 字节对 36 取模。256 不能被 36 整除，
    前 4 个字符（A-D）出现概率略高（8/256 对 7/256），属于已知近似。
    """
    data = secrets.token_bytes(length)
    return "".join(CODE_ALPHABET[b % len(CODE_ALPHABET)] for b in data)


class CodeRegistry:
    """
    兑换码注册表

    内存中的记录集合是权威数据，CodeStore 只负责快照的读写。
    未传入 records 时，首次操作会在锁内先从 store 加载，避免空集合覆盖已有快照。
    """

    def __init__(self, store: CodeStore, records: Optional[List[DiscountCodeRecord]] = None):
        self.store = store
        self._lock = asyncio.Lock()
        self._records: List[DiscountCodeRecord] = []
        self._index: Dict[str, DiscountCodeRecord] = {}
        self._loaded = False
        if records is not None:
            self._set_records(records)

    def _set_records(self, records: List[DiscountCodeRecord]) -> None:
        self._records = []
        self._index = {}
        for record in records:
            if record.code in self._index:
                logger.warning("忽略重复的兑换码记录: %s", record.code)
                continue
            self._records.append(record)
            self._index[record.code] = record
        self._loaded = True

    async def _ensure_loaded(self) -> None:
        # 调用方必须持有 self._lock
        if not self._loaded:
            self._set_records(await self.store.load())
            logger.info("Loaded %d discount codes", len(self._records))

    @classmethod
    async def create(cls, store: CodeStore) -> "CodeRegistry":
        """从存储加载全部记录"""
        registry = cls(store)
        async with registry._lock:
            await registry._ensure_loaded()
        return registry

    async def generate(self, count: int, length: int) -> List[str]:
        """
        批量生成兑换码

        Args:
            count: 生成数量（>= 0）
            length: 兑换码长度（>= 1）

        Returns:
            新生成的兑换码，彼此不同且与已有兑换码不同

        Raises:
            ValueError: 参数无效
            CodeStoreError: 持久化失败（本次生成的记录会被撤销）
        """
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")
        if length < 1:
            raise ValueError(f"length must be >= 1, got {length}")

        async with self._lock:
            await self._ensure_loaded()
            generated: List[str] = []
            for _ in range(count):
                code = generate_discount_code(length)
                while code in self._index:
                    code = generate_discount_code(length)

                record = DiscountCodeRecord(code=code, is_used=False)
                self._records.append(record)
                self._index[code] = record
                generated.append(code)

            try:
                await self.store.save(self._records)
            except CodeStoreError:
                # 撤销本批次，保持内存与快照一致
                del self._records[len(self._records) - len(generated):]
                for code in generated:
                    del self._index[code]
                raise

            return generated

    async def redeem(self, code: str) -> UseCodeResult:
        """
        核销兑换码

        Raises:
            CodeStoreError: 持久化失败（兑换码恢复为未使用）
        """
        async with self._lock:
            await self._ensure_loaded()
            record = self._index.get(code)
            if record is None:
                return UseCodeResult.CODE_NOT_FOUND
            if record.is_used:
                return UseCodeResult.ALREADY_USED

            record.is_used = True
            try:
                await self.store.save(self._records)
            except CodeStoreError:
                record.is_used = False
                raise
            return UseCodeResult.SUCCESS

    async def count(self) -> int:
        async with self._lock:
            await self._ensure_loaded()
            return len(self._records)

    async def unused_count(self) -> int:
        async with self._lock:
            await self._ensure_loaded()
            return sum(1 for r in self._records if not r.is_used)
