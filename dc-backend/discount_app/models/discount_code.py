"""
兑换码模型
"""
from sqlalchemy import String, Boolean, Integer
from sqlalchemy.orm import Mapped, mapped_column
from discount_app.database import Base


class DiscountCode(Base):
    """兑换码表"""
    __tablename__ = "discount_codes"

    code: Mapped[str] = mapped_column(String(255), primary_key=True)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False)
    position: Mapped[int] = mapped_column(Integer, index=True)  # 生成顺序
