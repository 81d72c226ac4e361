"""
兑换码服务
"""
__version__ = "1.0.0"
