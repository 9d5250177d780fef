"""博雅课程 (BYKC) 协议客户端与业务服务"""
from .client import BykcClient
from .service import BykcService

__all__ = ["BykcClient", "BykcService"]
