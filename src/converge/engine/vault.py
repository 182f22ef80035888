# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Vault Support

Encrypt and decrypt vault envelopes (Ansible Vault 1.1/1.2 compatible) and
load YAML that carries encrypted values.

Encrypted scalars are kept as EncryptedValue objects after loading; they are
only decrypted when the template engine dereferences them, so a secret that
nothing uses never needs a working password.
"""

from __future__ import annotations

import binascii
import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.hmac import HMAC
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from converge.engine.errors import VaultBadKeyError, VaultCorruptError, VaultError

logger = logging.getLogger(__name__)

# Vault file header
VAULT_HEADER = "$ANSIBLE_VAULT"
VAULT_HEADER_REGEX = re.compile(r'^\$ANSIBLE_VAULT;(\d+\.\d+);(\w+)(?:;(\S+))?$')
DEFAULT_VAULT_ID = "default"
SUPPORTED_VERSIONS = ("1.1", "1.2")
LINE_WIDTH = 80


class VaultSecret:
    """Represents a vault password/secret."""

    def __init__(self, password: Union[str, bytes], vault_id: str = DEFAULT_VAULT_ID):
        if isinstance(password, str):
            self.password = password.encode('utf-8')
        else:
            self.password = password
        self.vault_id = vault_id

    def __repr__(self) -> str:
        return f"VaultSecret(vault_id={self.vault_id!r})"

    @classmethod
    def from_file(
        cls,
        password_file: Union[str, Path],
        vault_id: str = DEFAULT_VAULT_ID,
    ) -> 'VaultSecret':
        """Load vault password from a file, or from the stdout of an executable file."""
        path = Path(password_file)
        if not path.exists():
            raise VaultError(f"Vault password file not found: {path}")

        is_executable = os.access(path, os.X_OK) and sys.platform != 'win32'

        if is_executable:
            try:
                result = subprocess.run(
                    [str(path)],
                    capture_output=True,
                    text=True,
                    timeout=30,
                )
            except subprocess.TimeoutExpired:
                raise VaultError("Vault password script timed out")
            if result.returncode != 0:
                raise VaultError(f"Vault password script failed: {result.stderr}")
            password = result.stdout.strip()
        else:
            password = path.read_text(encoding='utf-8').strip()

        if not password:
            raise VaultError(f"Vault password file is empty: {path}")

        return cls(password, vault_id=vault_id)


class AES256Cipher:
    """
    AES-256-CTR with an HMAC-SHA256 signature over the ciphertext.

    The envelope body is hexlify(hexlify(salt) + b"\\n" + hexlify(hmac) + b"\\n"
    + hexlify(ciphertext)); keys and IV come from PBKDF2-HMAC-SHA256.
    """

    name = "AES256"
    iterations = 10000
    key_length = 32
    iv_length = 16
    salt_length = 32

    def _derive(self, password: bytes, salt: bytes) -> Tuple[bytes, bytes, bytes]:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=2 * self.key_length + self.iv_length,
            salt=salt,
            iterations=self.iterations,
        )
        derived = kdf.derive(password)
        key = derived[:self.key_length]
        hmac_key = derived[self.key_length:2 * self.key_length]
        iv = derived[2 * self.key_length:]
        return key, hmac_key, iv

    def encrypt(self, plaintext: bytes, password: bytes, salt: Optional[bytes] = None) -> bytes:
        salt = salt or os.urandom(self.salt_length)
        key, hmac_key, iv = self._derive(password, salt)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        signer = HMAC(hmac_key, hashes.SHA256())
        signer.update(ciphertext)
        signature = signer.finalize()

        body = b"\n".join([
            binascii.hexlify(salt),
            binascii.hexlify(signature),
            binascii.hexlify(ciphertext),
        ])
        return binascii.hexlify(body)

    def decrypt(self, body: bytes, password: bytes) -> bytes:
        """Decrypt an envelope body; VaultBadKeyError means the password is wrong."""
        salt, signature, ciphertext = self._split(body)
        key, hmac_key, iv = self._derive(password, salt)

        verifier = HMAC(hmac_key, hashes.SHA256())
        verifier.update(ciphertext)
        try:
            verifier.verify(signature)
        except InvalidSignature:
            raise VaultBadKeyError("HMAC verification failed - wrong vault password?")

        decryptor = Cipher(algorithms.AES(key), modes.CTR(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            raise VaultCorruptError("Invalid padding in decrypted vault data")

    def _split(self, body: bytes) -> Tuple[bytes, bytes, bytes]:
        try:
            inner = binascii.unhexlify(body)
            parts = inner.split(b"\n", 2)
            if len(parts) != 3:
                raise VaultCorruptError("Vault payload must contain salt, hmac and ciphertext")
            salt, signature, ciphertext = (binascii.unhexlify(p) for p in parts)
        except (binascii.Error, ValueError) as e:
            raise VaultCorruptError(f"Invalid vault payload: {e}")
        if not ciphertext:
            raise VaultCorruptError("Vault payload has no ciphertext")
        return salt, signature, ciphertext


# Cipher implementations by header tag; new algorithms register here so old
# envelopes keep decrypting.
CIPHERS: Dict[str, Callable[[], AES256Cipher]] = {
    'AES256': AES256Cipher,
}


def parse_envelope(data: Union[str, bytes]) -> Tuple[str, str, Optional[str], bytes]:
    """
    Split a vault envelope into (version, cipher, vault_id, body).

    Raises:
        VaultCorruptError: If the header or format tag is not recognised
    """
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError:
            raise VaultCorruptError("Vault data is not valid UTF-8")

    lines = data.strip().splitlines()
    if not lines:
        raise VaultCorruptError("Empty vault data")

    header = lines[0].strip()
    match = VAULT_HEADER_REGEX.match(header)
    if not match:
        raise VaultCorruptError(f"Invalid vault header: {header}")

    version, cipher, vault_id = match.group(1), match.group(2), match.group(3)
    if version not in SUPPORTED_VERSIONS:
        raise VaultCorruptError(f"Unsupported vault format version: {version}")
    if cipher not in CIPHERS:
        raise VaultCorruptError(f"Unsupported vault cipher: {cipher}")

    body = ''.join(line.strip() for line in lines[1:]).encode('ascii', errors='replace')
    if not body:
        raise VaultCorruptError("Vault envelope has no payload")
    return version, cipher, vault_id, body


def is_encrypted(data: Any) -> bool:
    """Check if data is a vault envelope."""
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError:
            return False

    if not isinstance(data, str):
        return False

    return data.lstrip().startswith(VAULT_HEADER)


class VaultLib:
    """
    Vault encryption library.

    Holds the secrets available to a run. Decryption tries the secret whose
    vault id matches the envelope first, then every other secret.
    """

    def __init__(self, secrets: Optional[List[VaultSecret]] = None):
        self.secrets: List[VaultSecret] = list(secrets or [])

    def add_secret(self, secret: VaultSecret) -> None:
        """Add a vault secret."""
        self.secrets.append(secret)

    def is_encrypted(self, data: Union[str, bytes]) -> bool:
        """Check if data is vault encrypted."""
        return is_encrypted(data)

    def encrypt(
        self,
        plaintext: Union[str, bytes],
        secret: Optional[VaultSecret] = None,
        vault_id: Optional[str] = None,
    ) -> str:
        """
        Encrypt plaintext into a vault envelope.

        Args:
            plaintext: Data to encrypt
            secret: Secret to use (defaults to the first configured secret)
            vault_id: Label to record in a 1.2 header

        Returns:
            The envelope text, header line first, body wrapped at 80 columns
        """
        if secret is None:
            if not self.secrets:
                raise VaultError("No vault secret available to encrypt with")
            secret = self.secrets[0]

        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        cipher = CIPHERS['AES256']()
        body = cipher.encrypt(plaintext, secret.password).decode('ascii')

        label = vault_id or (secret.vault_id if secret.vault_id != DEFAULT_VAULT_ID else None)
        if label:
            header = f"{VAULT_HEADER};1.2;{cipher.name};{label}"
        else:
            header = f"{VAULT_HEADER};1.1;{cipher.name}"

        lines = [body[i:i + LINE_WIDTH] for i in range(0, len(body), LINE_WIDTH)]
        return "\n".join([header] + lines) + "\n"

    def decrypt(self, data: Union[str, bytes]) -> bytes:
        """
        Decrypt vault-encrypted data.

        Raises:
            VaultCorruptError: The envelope is malformed
            VaultBadKeyError: No configured secret decrypts it
        """
        _version, cipher_name, vault_id, body = parse_envelope(data)
        cipher = CIPHERS[cipher_name]()

        if not self.secrets:
            raise VaultBadKeyError("Vault decryption failed: no vault secrets configured")

        for secret in self._candidates(vault_id):
            try:
                return cipher.decrypt(body, secret.password)
            except VaultBadKeyError:
                logger.debug("Vault secret %r did not match", secret.vault_id)
                continue

        raise VaultBadKeyError("Vault decryption failed: no valid password found")

    def decrypt_file(self, file_path: Union[str, Path]) -> bytes:
        """Decrypt a vault-encrypted file."""
        path = Path(file_path)
        if not path.exists():
            raise VaultError(f"Vault file not found: {path}")

        content = path.read_text(encoding='utf-8')
        return self.decrypt(content)

    def _candidates(self, vault_id: Optional[str]) -> List[VaultSecret]:
        if not vault_id:
            return list(self.secrets)
        matching = [s for s in self.secrets if s.vault_id == vault_id]
        others = [s for s in self.secrets if s.vault_id != vault_id]
        return matching + others


def decode_plaintext(plaintext: bytes) -> str:
    """
    Decode decrypted plaintext as UTF-8 text.

    Raises:
        VaultCorruptError: The plaintext is binary, not text
    """
    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError as e:
        raise VaultCorruptError(f"Decrypted vault data is not UTF-8 text: {e.reason}") from e


class EncryptedValue:
    """
    An encrypted scalar as loaded from YAML (`!vault |` or a bare envelope string).

    Holds only the ciphertext; the password is supplied by whoever decrypts
    it, so loading never needs one.
    """

    __slots__ = ('ciphertext',)

    def __init__(self, ciphertext: str):
        self.ciphertext = ciphertext

    def decrypt(self, vault: VaultLib) -> str:
        return decode_plaintext(vault.decrypt(self.ciphertext))

    def __repr__(self) -> str:
        return "EncryptedValue(<redacted>)"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EncryptedValue):
            return NotImplemented
        return self.ciphertext == other.ciphertext

    def __hash__(self) -> int:
        return hash(self.ciphertext)


class VaultLoader(yaml.SafeLoader):
    """SafeLoader that understands the !vault tag."""


def _construct_vault(loader: yaml.SafeLoader, node: yaml.Node) -> EncryptedValue:
    return EncryptedValue(loader.construct_scalar(node))


VaultLoader.add_constructor('!vault', _construct_vault)


def wrap_encrypted(data: Any) -> Any:
    """Replace bare envelope strings in loaded data with EncryptedValue objects."""
    if isinstance(data, str) and is_encrypted(data):
        return EncryptedValue(data)
    if isinstance(data, dict):
        return {k: wrap_encrypted(v) for k, v in data.items()}
    if isinstance(data, list):
        return [wrap_encrypted(v) for v in data]
    return data


def load_yaml(content: str) -> Any:
    """Load a YAML document, keeping encrypted scalars encrypted."""
    return wrap_encrypted(yaml.load(content, Loader=VaultLoader))


def load_yaml_all(content: str) -> List[Any]:
    """Load every document in a YAML stream."""
    return [wrap_encrypted(doc) for doc in yaml.load_all(content, Loader=VaultLoader)]


def load_vars_file(path: Union[str, Path], vault: Optional[VaultLib] = None) -> Any:
    """
    Load a YAML vars file.

    A fully encrypted file has to be decrypted up front because its structure
    is needed; that needs a vault with a matching secret.
    """
    path = Path(path)
    content = path.read_text(encoding='utf-8')
    if is_encrypted(content):
        if vault is None:
            raise VaultBadKeyError(f"Encrypted vars file {path} requires a vault password")
        logger.debug("Decrypting vars file %s", path)
        content = decode_plaintext(vault.decrypt(content))
    return load_yaml(content)


def encrypt(plaintext: Union[str, bytes], password: Union[str, bytes]) -> str:
    """Convenience function to encrypt data with a single password."""
    return VaultLib([VaultSecret(password)]).encrypt(plaintext)


def decrypt(ciphertext: Union[str, bytes], password: Union[str, bytes]) -> str:
    """Convenience function to decrypt a vault string holding text."""
    return decode_plaintext(decrypt_bytes(ciphertext, password))


def decrypt_bytes(ciphertext: Union[str, bytes], password: Union[str, bytes]) -> bytes:
    """Decrypt a vault string to the exact bytes that were encrypted."""
    return VaultLib([VaultSecret(password)]).decrypt(ciphertext)
