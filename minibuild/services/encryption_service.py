"""凭证加密服务（AES-256-GCM）

密文格式: enc::<base64(nonce + ciphertext)>
"""
import base64
import binascii
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from minibuild.errors import DecryptionFailure

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = 'enc::'
NONCE_SIZE = 12


class EncryptionService:
    """敏感字段加解密"""

    def __init__(self, key):
        if not key:
            raise ValueError('ENCRYPTION_KEY 未配置')
        self._aesgcm = AESGCM(self._derive_key(key))

    @staticmethod
    def _derive_key(raw):
        """base64 编码的 32 字节密钥直接使用，否则取口令的 SHA-256"""
        try:
            decoded = base64.b64decode(raw, validate=True)
            if len(decoded) == 32:
                return decoded
        except (binascii.Error, ValueError):
            pass
        return hashlib.sha256(raw.encode('utf-8')).digest()

    @staticmethod
    def is_encrypted(value):
        return bool(value) and value.startswith(ENCRYPTED_PREFIX)

    def encrypt(self, plaintext):
        """加密字符串，空值原样返回"""
        if not plaintext:
            return plaintext
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
        payload = base64.b64encode(nonce + ciphertext).decode('ascii')
        return f'{ENCRYPTED_PREFIX}{payload}'

    def decrypt(self, value):
        """解密字符串

        Raises:
            DecryptionFailure: 非本服务生成的密文、密钥不匹配或数据损坏
        """
        if not value:
            return value
        if not self.is_encrypted(value):
            raise DecryptionFailure('凭证数据未加密或格式无法识别')

        try:
            payload = base64.b64decode(value[len(ENCRYPTED_PREFIX):], validate=True)
            if len(payload) <= NONCE_SIZE:
                raise DecryptionFailure()
            nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
            return self._aesgcm.decrypt(nonce, ciphertext, None).decode('utf-8')
        except (binascii.Error, ValueError, InvalidTag, UnicodeDecodeError) as e:
            logger.error(f"凭证解密失败: {type(e).__name__}")
            raise DecryptionFailure() from e

    def encrypt_sensitive_fields(self, data, fields):
        """加密字典中的敏感字段，返回新字典"""
        result = dict(data)
        for field in fields:
            if result.get(field):
                result[field] = self.encrypt(result[field])
        return result

    def decrypt_sensitive_fields(self, data, fields):
        """解密字典中的敏感字段，返回新字典"""
        result = dict(data)
        for field in fields:
            if result.get(field):
                result[field] = self.decrypt(result[field])
        return result
