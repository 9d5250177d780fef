"""
北航 WebVPN (d.buaa.edu.cn) 地址转换。

WebVPN 把内网主机名用 AES-CFB 加密后放进路径：
    https://d.buaa.edu.cn/<协议[-端口]>/<iv_hex + 密文_hex><原路径>?<原查询>
"""
import binascii
import logging
import urllib.parse

from Crypto.Cipher import AES

logger = logging.getLogger(__name__)

VPN_HOST = "d.buaa.edu.cn"
KEY = b"wrdvpnisthebest!"
IV = b"wrdvpnisthebest!"

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


def _right_pad(data: bytes, segment: int) -> bytes:
    return data + b"0" * ((segment - len(data) % segment) % segment)


def encrypt_host(host: str, key: bytes = KEY, iv: bytes = IV) -> str:
    """
    加密主机名。

    明文以字符 '0' 补齐到 16 字节的整数倍后做 AES-CFB(128) 加密，
    输出为 iv 的十六进制 + 截断到明文长度的密文十六进制。
    """
    plain = host.encode("utf-8")
    cipher = AES.new(key, AES.MODE_CFB, iv=iv, segment_size=128)
    ct = cipher.encrypt(_right_pad(plain, 16))
    return iv.hex() + ct.hex()[: len(plain) * 2]


def decrypt_host(text: str, key: bytes = KEY) -> str:
    """encrypt_host 的逆运算"""
    iv = binascii.unhexlify(text[:32])
    ct_hex = text[32:]
    ct = binascii.unhexlify(_right_pad(ct_hex.encode("ascii"), 32))
    cipher = AES.new(key, AES.MODE_CFB, iv=iv, segment_size=128)
    return cipher.decrypt(ct)[: len(ct_hex) // 2].decode("utf-8")


def to_vpn_url(url: str, enabled: bool = True) -> str:
    """
    将普通 URL 转换为 WebVPN 格式；未启用或已是 WebVPN 地址时原样返回。

    参数:
        url (str): 原始 URL
        enabled (bool): 是否启用转换，通常传入 settings.use_vpn

    返回:
        str: 转换后的 URL
    """
    if not enabled:
        return url
    try:
        parts = urllib.parse.urlsplit(url)
        host = parts.hostname
        port = parts.port
    except ValueError:
        logger.warning(f"无法解析的 URL，跳过 WebVPN 转换: {url}")
        return url
    if not host or host == VPN_HOST:
        return url

    scheme = parts.scheme
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        protocol = scheme
    else:
        protocol = f"{scheme}-{port}"

    path = parts.path or "/"
    query = f"?{parts.query}" if parts.query else ""
    fragment = f"#{parts.fragment}" if parts.fragment else ""
    return f"https://{VPN_HOST}/{protocol}/{encrypt_host(host)}{path}{query}{fragment}"


def to_raw_url(vpn_url: str) -> str:
    """将 WebVPN URL 还原为原始 URL；非 WebVPN 地址原样返回"""
    parts = urllib.parse.urlsplit(vpn_url)
    if parts.hostname != VPN_HOST:
        return vpn_url

    segments = parts.path.lstrip("/").split("/", 2)
    if len(segments) < 2:
        return vpn_url
    protocol, encrypted = segments[0], segments[1]
    remaining = "/" + segments[2] if len(segments) > 2 else "/"

    scheme, _, port = protocol.partition("-")
    try:
        host = decrypt_host(encrypted)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"WebVPN 主机名解密失败: {vpn_url} ({e})")
        return vpn_url

    if port and not port.isdecimal():
        logger.warning(f"WebVPN 地址中的端口无法解析: {vpn_url}")
        return vpn_url

    netloc = host
    if port and DEFAULT_PORTS.get(scheme) != int(port):
        netloc = f"{host}:{port}"
    query = f"?{parts.query}" if parts.query else ""
    fragment = f"#{parts.fragment}" if parts.fragment else ""
    return f"{scheme}://{netloc}{remaining}{query}{fragment}"
