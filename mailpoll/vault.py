"""Credential vault: AES-256-CBC encryption of mailbox secrets at rest.

Ciphertext is stored as ``ivHex:cipherHex`` with a random IV per call.
The key is the configured secret's UTF-8 bytes, right-padded with ``"0"``
or truncated to 32 bytes, so values written by earlier deployments that
used the same key material remain readable.

``decrypt`` returns its input unchanged when the input is not valid
ciphertext (no separator, bad hex, bad padding, wrong key) unless the
vault is configured to fail closed.  That fallback keeps legacy plaintext
rows usable; it is not a confidentiality guarantee.
"""

from __future__ import annotations

import os

import structlog
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from mailpoll_schema import MailboxAccount, SecretKind

from .config import VaultConfig
from .errors import CredentialError

logger = structlog.get_logger()

KEY_BYTES = 32
IV_BYTES = 16
SEPARATOR = ":"


def derive_key(secret: str) -> bytes:
    """Pad with ASCII zeros or truncate *secret* to the AES-256 key length."""
    raw = secret.encode("utf-8")
    return raw.ljust(KEY_BYTES, b"0")[:KEY_BYTES]


class CredentialVault:
    """Symmetric encrypt/decrypt pair plus the account accessors.

    Every credential read or write goes through :meth:`read_secret` /
    :meth:`write_secret`; the account models only ever hold ciphertext.
    """

    def __init__(self, config: VaultConfig) -> None:
        self._key = derive_key(config.secret_key.get_secret_value())
        self._fail_closed = config.fail_closed

    # ------------------------------------------------------------------
    # Cipher primitives
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return plaintext

        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        body = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}{SEPARATOR}{body.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ciphertext
        if SEPARATOR not in ciphertext:
            return self._fallback(ciphertext, reason="no_separator")

        iv_hex, _, body_hex = ciphertext.partition(SEPARATOR)
        try:
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
            if len(iv) != IV_BYTES:
                raise ValueError(f"IV must be {IV_BYTES} bytes, got {len(iv)}")

            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()

            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            raw = unpadder.update(padded) + unpadder.finalize()
            return raw.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            return self._fallback(ciphertext, reason=type(exc).__name__)

    def _fallback(self, value: str, *, reason: str) -> str:
        if self._fail_closed:
            raise CredentialError(f"stored credential is not valid ciphertext ({reason})")
        logger.warning("credential_decrypt_fallback", reason=reason)
        return value

    # ------------------------------------------------------------------
    # Account accessors
    # ------------------------------------------------------------------

    def read_secret(self, account: MailboxAccount, which: SecretKind) -> str:
        """Return the plaintext secret of *which* side of *account*."""
        if which is SecretKind.PROTOCOL:
            stored = account.protocol_config.encrypted_secret
        else:
            if account.outbound_config is None:
                raise CredentialError(f"account {account.account_id} has no outbound config")
            stored = account.outbound_config.encrypted_secret

        if not stored:
            raise CredentialError(f"account {account.account_id} has no {which.value} secret")
        return self.decrypt(stored)

    def write_secret(
        self,
        account: MailboxAccount,
        which: SecretKind,
        plaintext: str,
    ) -> MailboxAccount:
        """Return a copy of *account* holding the encrypted *plaintext*."""
        ciphertext = self.encrypt(plaintext)
        if which is SecretKind.PROTOCOL:
            protocol = account.protocol_config.model_copy(update={"encrypted_secret": ciphertext})
            return account.model_copy(update={"protocol_config": protocol})

        if account.outbound_config is None:
            raise CredentialError(f"account {account.account_id} has no outbound config")
        outbound = account.outbound_config.model_copy(update={"encrypted_secret": ciphertext})
        return account.model_copy(update={"outbound_config": outbound})
