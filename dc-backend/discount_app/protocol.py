"""
二进制协议编解码

帧格式（所有多字节整数为小端无符号）：
    GenerateRequest   [0x00][2B count][1B length]
    GenerateResponse  [0x00]                               失败
                      [0x01][2B n]{[1B len][len B UTF-8]}*n  成功
    RedeemRequest     [0x01][1B len][len B UTF-8]
    RedeemResponse    [1B result] 0=Success 1=CodeNotFound 2=AlreadyUsed

协议没有分隔符，读取不足或内容非法时抛出 FramingError，调用方必须断开连接。
"""
import asyncio
import struct
from dataclasses import dataclass
from typing import List, Optional

from discount_app.exceptions import FramingError
from discount_app.services.code_registry import UseCodeResult

REQUEST_GENERATE = 0x00
REQUEST_REDEEM = 0x01

GENERATE_FAILED = 0x00
GENERATE_OK = 0x01

_U16 = struct.Struct("<H")
MAX_STRING_BYTES = 0xFF
MAX_CODES_PER_RESPONSE = 0xFFFF


@dataclass(frozen=True)
class GenerateRequest:
    count: int
    length: int


@dataclass(frozen=True)
class RedeemRequest:
    code: str


@dataclass(frozen=True)
class GenerateResponse:
    success: bool
    codes: List[str]


async def _read_exactly(reader: asyncio.StreamReader, n: int, what: str) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as exc:
        raise FramingError(f"{what}: 需要 {n} 字节，只收到 {len(exc.partial)} 字节") from exc


async def _read_string(reader: asyncio.StreamReader, what: str) -> str:
    (size,) = await _read_exactly(reader, 1, f"{what} 长度")
    raw = await _read_exactly(reader, size, what)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FramingError(f"{what}: 不是合法的 UTF-8") from exc


def _encode_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > MAX_STRING_BYTES:
        raise FramingError(f"字符串过长: {len(raw)} 字节")
    return bytes((len(raw),)) + raw


async def read_request_type(reader: asyncio.StreamReader) -> Optional[int]:
    """读取请求类型字节；对端正常关闭时返回 None"""
    data = await reader.read(1)
    if not data:
        return None
    return data[0]


async def read_generate_request(reader: asyncio.StreamReader) -> GenerateRequest:
    """读取类型字节之后的 GenerateRequest 主体"""
    body = await _read_exactly(reader, 3, "GenerateRequest")
    (count,) = _U16.unpack_from(body)
    return GenerateRequest(count=count, length=body[2])


async def read_redeem_request(reader: asyncio.StreamReader) -> RedeemRequest:
    """读取类型字节之后的 RedeemRequest 主体"""
    return RedeemRequest(code=await _read_string(reader, "RedeemRequest code"))


def encode_generate_failure() -> bytes:
    return bytes((GENERATE_FAILED,))


def encode_generate_success(codes: List[str]) -> bytes:
    if len(codes) > MAX_CODES_PER_RESPONSE:
        raise FramingError(f"兑换码数量过多: {len(codes)}")
    parts = [bytes((GENERATE_OK,)), _U16.pack(len(codes))]
    parts.extend(_encode_string(code) for code in codes)
    return b"".join(parts)


def encode_redeem_response(result: UseCodeResult) -> bytes:
    return bytes((int(result),))


# ============ 客户端 ============

def encode_generate_request(count: int, length: int) -> bytes:
    if not 0 <= count <= 0xFFFF:
        raise FramingError(f"count 超出范围: {count}")
    if not 0 <= length <= 0xFF:
        raise FramingError(f"length 超出范围: {length}")
    return bytes((REQUEST_GENERATE,)) + _U16.pack(count) + bytes((length,))


def encode_redeem_request(code: str) -> bytes:
    return bytes((REQUEST_REDEEM,)) + _encode_string(code)


async def read_generate_response(reader: asyncio.StreamReader) -> GenerateResponse:
    (status,) = await _read_exactly(reader, 1, "GenerateResponse status")
    if status == GENERATE_FAILED:
        return GenerateResponse(success=False, codes=[])
    if status != GENERATE_OK:
        raise FramingError(f"未知的 GenerateResponse 状态: {status}")

    (count,) = _U16.unpack(await _read_exactly(reader, 2, "GenerateResponse count"))
    codes = [await _read_string(reader, "GenerateResponse code") for _ in range(count)]
    return GenerateResponse(success=True, codes=codes)


async def read_redeem_response(reader: asyncio.StreamReader) -> UseCodeResult:
    (value,) = await _read_exactly(reader, 1, "RedeemResponse")
    try:
        return UseCodeResult(value)
    except ValueError as exc:
        raise FramingError(f"未知的 RedeemResponse: {value}") from exc
