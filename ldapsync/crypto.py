#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Encryption of the stored bind credential.

The directory password is kept in `DirectorySettings.password_bytes` as a
Fernet token, so the settings record can be persisted without exposing it.
"""
from cryptography.fernet import Fernet, InvalidToken


class CredentialError(Exception):
    pass


def generate_key():
    return Fernet.generate_key().decode()


class CredentialCipher:
    """Encrypts and decrypts credentials with a Fernet key.

    - `key`: a url-safe base64-encoded 32-byte key, as returned by `generate_key`
    """

    def __init__(self, key):
        if isinstance(key, str):
            key = key.encode()
        try:
            self._fernet = Fernet(key)
        except (TypeError, ValueError) as e:
            msg = f"Invalid secret key: {e}"
            raise CredentialError(msg) from e

    def encrypt(self, password):
        return self._fernet.encrypt(password.encode("utf-8"))

    def decrypt(self, token):
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            msg = "Cannot decrypt the stored credential, was the secret key changed?"
            raise CredentialError(msg) from e
