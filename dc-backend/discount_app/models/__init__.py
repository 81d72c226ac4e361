"""
数据库模型
"""
from discount_app.models.discount_code import DiscountCode

__all__ = [
    "DiscountCode",
]
