"""
兑换码相关 Schemas
"""
from typing import List
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class DiscountCodeRecord(BaseModel):
    """兑换码记录（与 discountCodes.json 文件格式兼容）"""
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(alias="Code", min_length=1)
    is_used: bool = Field(default=False, alias="IsUsed")


DiscountCodeList = TypeAdapter(List[DiscountCodeRecord])


def dump_records(records: List[DiscountCodeRecord]) -> bytes:
    """序列化为 JSON 数组"""
    return DiscountCodeList.dump_json(records, by_alias=True)


def load_records(raw: bytes) -> List[DiscountCodeRecord]:
    """从 JSON 数组反序列化，格式错误时抛出 pydantic.ValidationError"""
    return DiscountCodeList.validate_json(raw)
