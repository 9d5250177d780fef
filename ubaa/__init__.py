"""
UBAA 核心：北航统一身份认证 (CAS) 会话管理，以及博雅课程 (BYKC) 加密协议客户端。
"""

__version__ = "0.1.0"
