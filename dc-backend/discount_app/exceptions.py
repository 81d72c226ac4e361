"""
异常定义
"""


class DiscountCodeError(Exception):
    """兑换码服务异常基类"""
    def __init__(self, message: str, error_code: str = "DISCOUNT_CODE_ERROR"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class FramingError(DiscountCodeError):
    """二进制帧格式错误，连接无法继续同步"""
    def __init__(self, message: str):
        super().__init__(message, "FRAMING_ERROR")


class CodeStoreError(DiscountCodeError):
    """兑换码持久化失败"""
    def __init__(self, message: str):
        super().__init__(message, "STORE_WRITE_FAILED")
