"""
博雅课程 (BYKC) 请求/响应的 RSA+AES 混合加密。

该方案复刻了博雅前端 app.js 中的加密逻辑，算法、密钥字符集、填充方式都必须与上游逐字节一致:
    ak   = RSA(随机 AES 密钥)
    sk   = RSA(SHA1(明文) 的小写十六进制)
    ts   = 毫秒时间戳
    body = Base64(AES-ECB-PKCS7(明文))
"""
import base64
import binascii
import secrets
import time
from dataclasses import dataclass

from Crypto.Cipher import AES, PKCS1_v1_5
from Crypto.Hash import SHA1
from Crypto.PublicKey import RSA
from Crypto.Util.Padding import pad, unpad

from .errors import BykcDecodeError

# 1024 位 RSA 公钥 (Base64 编码的 DER)，从 app.js 中提取
RSA_PUBLIC_KEY_BASE64 = (
    "MIGfMA0GCSqGSIb3DQEBAQUAA4GNADCBiQKBgQDlHMQ3B5GsWnCe7Nlo1YiG/YmHdlOiKOST5aRm4iaqYSvhvWmwcigo"
    "yWTM+8bv2+sf6nQBRDWTY4KmNV7DBk1eDnTIQo6ENA31k5/tYCLEXgjPbEjCK9spiyB62fCT6cqOhbamJB0lcDJRO6Vo"
    "1m3dy+fD0jbxfDVBBNtyltIsDQIDAQAB"
)
# 随机 AES 密钥的字符集
KEY_CHARS = "ABCDEFGHJKMNPQRSTWXYZabcdefhijkmnprstwxyz2345678"
AES_KEY_LENGTH = 16

_public_key = RSA.import_key(base64.b64decode(RSA_PUBLIC_KEY_BASE64))


@dataclass
class Envelope:
    """
    一次请求的加密信封。

    aes_key 只用于解密与之配对的响应，用完即弃，不得复用。
    """
    encrypted_data: str
    ak: str
    sk: str
    ts: str
    aes_key: bytes


def generate_aes_key() -> bytes:
    """从固定字符集中随机生成 16 字节的 AES 密钥"""
    return "".join(secrets.choice(KEY_CHARS) for _ in range(AES_KEY_LENGTH)).encode("utf-8")


def aes_encrypt(data: bytes, key: bytes) -> bytes:
    cipher = AES.new(key, AES.MODE_ECB)
    return cipher.encrypt(pad(data, AES.block_size, style='pkcs7'))


def aes_decrypt(data: bytes, key: bytes) -> bytes:
    cipher = AES.new(key, AES.MODE_ECB)
    return unpad(cipher.decrypt(data), AES.block_size, style='pkcs7')


def rsa_encrypt(data: bytes) -> str:
    """RSA/ECB/PKCS1Padding 加密，输出 Base64"""
    cipher = PKCS1_v1_5.new(_public_key)
    return base64.b64encode(cipher.encrypt(data)).decode("ascii")


def sha1_sign(data: bytes) -> str:
    """SHA1 摘要，小写十六进制"""
    return SHA1.new(data).hexdigest()


def encrypt_request(json_data: str) -> Envelope:
    """
    加密请求数据并生成所需的请求头参数。

    参数:
        json_data (str): JSON 格式的请求数据

    返回:
        Envelope: 加密后的请求体、ak/sk/ts 请求头，以及用于解密响应的 AES 密钥
    """
    data = json_data.encode("utf-8")
    aes_key = generate_aes_key()
    return Envelope(
        encrypted_data=base64.b64encode(aes_encrypt(data, aes_key)).decode("ascii"),
        ak=rsa_encrypt(aes_key),
        sk=rsa_encrypt(sha1_sign(data).encode("utf-8")),
        ts=str(int(time.time() * 1000)),
        aes_key=aes_key,
    )


def decrypt_response(response_base64: str, aes_key: bytes) -> str:
    """
    解密响应数据。

    Base64 非法、长度不是块大小的整数倍、填充错误 (通常意味着密钥不对) 或
    解密结果不是合法 UTF-8 时，抛出 BykcDecodeError。
    """
    try:
        raw = base64.b64decode(response_base64.strip(), validate=True)
        return aes_decrypt(raw, aes_key).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise BykcDecodeError(f"博雅响应解密失败: {e}", body=response_base64) from e
